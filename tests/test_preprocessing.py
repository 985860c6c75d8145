import numpy as np
import pytest

from scipy.sparse import issparse

import swnepy as sw
from swnepy._utils import _adjust_variance


class TestPreprocessing:
    @staticmethod
    def assert_non_negative(X):
        X = X.toarray() if issparse(X) else np.asarray(X)
        assert (X >= 0).all()

    def test_select_variable_genes_lp(self, adata):
        adata.var["lp"] = -np.arange(adata.n_vars, dtype=float)
        var_genes = sw.pp.select_variable_genes(adata, n_top_genes=10)

        assert var_genes == [f"gene_{i}" for i in range(99, 89, -1)]
        assert adata.var["highly_variable"].sum() == 10
        assert adata.var.loc["gene_99", "highly_variable"]
        assert not adata.var.loc["gene_0", "highly_variable"]

    def test_select_variable_genes_seurat_v3(self, adata):
        pytest.importorskip("skmisc")
        var_genes = sw.pp.select_variable_genes(adata, n_top_genes=30, lp_key="missing")

        assert len(var_genes) == 30
        assert adata.var["highly_variable"].sum() == 30

    def test_scale_counts(self, adata):
        sw.pp.scale_counts(adata, method="log", adj_var=True)

        assert "swne_norm" in adata.layers
        assert adata.layers["swne_norm"].shape == adata.shape
        self.assert_non_negative(adata.layers["swne_norm"])
        assert "lp" in adata.var
        assert "swne_gsf" in adata.var
        assert adata.uns["swne_norm"]["params"]["method"] == "log"

    def test_scale_counts_keeps_pagoda2_lp(self, adata):
        adata.var["lp"] = 0.5
        sw.pp.scale_counts(adata)

        assert (adata.var["lp"] == 0.5).all()

    def test_scale_counts_without_variance_adjustment(self, adata):
        sw.pp.scale_counts(adata, method="log", adj_var=False)

        X = adata.layers["swne_norm"].toarray()
        counts = adata.X.toarray()
        lib_size = counts.sum(axis=1)
        expected = np.log1p(counts / lib_size[:, np.newaxis] * np.median(lib_size))
        assert np.allclose(X, expected, atol=1e-5)

    def test_scale_counts_batch(self, adata):
        sw.pp.scale_counts(adata, method="none", adj_var=False, batch_key="batch")

        X = adata.layers["swne_norm"]
        X = X.toarray() if issparse(X) else X
        lib_size = adata.X.toarray().sum(axis=1)
        for batch in ("a", "b"):
            mask = (adata.obs["batch"] == batch).to_numpy()
            assert np.allclose(X[mask].sum(axis=1), np.median(lib_size[mask]))

    def test_scale_counts_ft(self, adata):
        sw.pp.scale_counts(adata, method="ft", adj_var=False)
        # sqrt(0) + sqrt(1)
        assert np.asarray(adata.layers["swne_norm"]).min() >= 1 - 1e-9

    def test_scale_counts_wrong_method(self, adata):
        with pytest.raises(ValueError):
            sw.pp.scale_counts(adata, method="sqrt")

    def test_calc_snn(self, adata):
        sw.pp.calc_snn(adata, k=10, prune_snn=1 / 15)

        snn = adata.obsp["swne_snn"]
        assert snn.shape == (adata.n_obs, adata.n_obs)
        assert np.allclose(snn.diagonal(), 1)
        assert (snn.data >= 1 / 15).all() and (snn.data <= 1).all()
        assert abs(snn - snn.T).max() < 1e-12
        assert adata.uns["swne_snn"]["params"]["k"] == 10

    def test_calc_snn_connects_clusters_internally(self, adata):
        sw.pp.calc_snn(adata, k=10, prune_snn=0.2)

        snn = adata.obsp["swne_snn"].tocoo()
        clusters = adata.obs["clusters"].to_numpy()
        same = clusters[snn.row] == clusters[snn.col]
        assert same.mean() > 0.95

    def test_calc_snn_missing_rep(self, adata):
        with pytest.raises(AssertionError):
            sw.pp.calc_snn(adata, use_rep="X_umap")


class TestAdjustVariance:
    n_cells = 3000

    def counts(self):
        """Poisson background genes plus genes of mean 1 with growing variance."""
        rng = np.random.default_rng(0)
        background = rng.poisson(np.geomspace(0.2, 5, 200), size=(self.n_cells, 200))

        fractions = [0.5, 0.2, 0.1, 0.05, 0.02]
        overdispersed = np.zeros((self.n_cells, len(fractions)))
        for j, fraction in enumerate(fractions):
            n_expressing = int(self.n_cells * fraction)
            cells = rng.choice(self.n_cells, n_expressing, replace=False)
            overdispersed[cells, j] = self.n_cells / n_expressing
        return np.hstack([background, overdispersed]).astype(float)

    def test_adjusted_variance_grows_with_overdispersion(self):
        X_adj, var_stats = _adjust_variance(self.counts())

        assert np.isfinite(var_stats["lp"]).all()
        assert np.isfinite(var_stats["qv"]).all()

        # the most overdispersed genes are far in the F-test tail
        top = var_stats.iloc[-5:]
        assert top["res"].is_monotonic_increasing
        assert top["lp"].iloc[-1] < -745
        assert (top["qv"] < 100).all()

        by_res = var_stats.sort_values("res")
        assert (np.diff(by_res["qv"].to_numpy()) >= -1e-8 * by_res["qv"].to_numpy()[1:]).all()

        assert np.allclose(X_adj.var(axis=0, ddof=1), var_stats["qv"])
