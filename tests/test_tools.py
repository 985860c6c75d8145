import numpy as np
import pandas as pd
import pytest

from scipy.spatial.distance import pdist, squareform

import swnepy as sw
from swnepy._utils import _sammon, _weighted_coords


class TestTools:
    k = 4

    @staticmethod
    def assert_within_unit_square(coords, eps=1e-9):
        coords = np.asarray(coords, dtype=float)
        assert (coords >= -eps).all() and (coords <= 1 + eps).all()

    def test_run_nmf(self, adata_nmf):
        H = adata_nmf.obsm["X_nmf"]
        W = adata_nmf.varm["NMF"]
        hvg = adata_nmf.var["highly_variable"].to_numpy()

        assert H.shape == (adata_nmf.n_obs, self.k)
        assert W.shape == (adata_nmf.n_vars, self.k)
        assert (H >= 0).all() and (W >= 0).all()
        assert (W[~hvg] == 0).all()
        assert adata_nmf.uns["nmf"]["factors"] == [f"factor_{i}" for i in range(1, 5)]
        assert not adata_nmf.uns["nmf"]["projected"]

    @pytest.mark.parametrize("init", ["ica", "nnsvd", "random"])
    @pytest.mark.parametrize("loss", ["mse", "mkl"])
    def test_run_nmf_options(self, adata_hvg, init, loss):
        sw.pp.scale_counts(adata_hvg)
        sw.tl.run_nmf(adata_hvg, k=3, init=init, loss=loss, max_iter=200, n_cores=1)

        assert adata_hvg.obsm["X_nmf"].shape == (adata_hvg.n_obs, 3)
        assert (adata_hvg.obsm["X_nmf"] >= 0).all()

    def test_run_nmf_wrong_init(self, adata_hvg):
        sw.pp.scale_counts(adata_hvg)
        with pytest.raises(ValueError):
            sw.tl.run_nmf(adata_hvg, k=3, init="pca")

    def test_run_nmf_requires_scaled_counts(self, adata_hvg):
        with pytest.raises(AssertionError):
            sw.tl.run_nmf(adata_hvg, k=3)

    def test_find_num_factors(self, adata_hvg):
        sw.pp.scale_counts(adata_hvg)
        df = sw.tl.find_num_factors(
            adata_hvg, k_range=[2, 3, 4, 6], n_cores=1, max_iter=200
        )

        assert list(df["k"]) == [2, 3, 4, 6]
        assert {"err", "err_null", "err_del", "err_null_del"} <= set(df.columns)
        assert np.isnan(df["err_del"].iloc[0])
        # structured data is explained better than the permuted one
        assert (df["err"] < df["err_null"]).all()
        assert adata_hvg.uns["swne_num_factors"]["k"] in [2, 3, 4, 6]

    def test_project_features(self, adata_nmf):
        sw.tl.project_features(adata_nmf, n_cores=1, chunk_size=30)

        W = adata_nmf.varm["NMF"]
        hvg = adata_nmf.var["highly_variable"].to_numpy()
        assert W.shape == (adata_nmf.n_vars, self.k)
        assert (W >= 0).all()
        assert (W[~hvg].sum(axis=1) > 0).any()
        assert adata_nmf.uns["nmf"]["projected"]

    def test_embed_swne(self, adata_swne):
        coords = adata_swne.obsm["X_swne"]
        H_coords = adata_swne.uns["swne"]["H_coords"]

        assert coords.shape == (adata_swne.n_obs, 2)
        self.assert_within_unit_square(coords)
        self.assert_within_unit_square(H_coords[["x", "y"]])
        assert np.allclose(H_coords[["x", "y"]].min(), 0)
        assert np.allclose(H_coords[["x", "y"]].max(), 1)
        assert list(H_coords["name"]) == adata_swne.uns["nmf"]["factors"]
        assert adata_swne.uns["swne"]["params"]["alpha_exp"] == 1.25

    def test_embed_swne_separates_clusters(self, adata_swne):
        coords = pd.DataFrame(adata_swne.obsm["X_swne"], index=adata_swne.obs_names)
        clusters = adata_swne.obs["clusters"]
        centroids = coords.groupby(clusters.to_numpy()).mean()

        spread = coords.groupby(clusters.to_numpy()).std().mean().mean()
        assert pdist(centroids.to_numpy()).min() > spread

    def test_embed_swne_mds_without_snn(self, adata_nmf):
        del adata_nmf.obsp["swne_snn"]
        with pytest.warns(UserWarning):
            sw.tl.embed_swne(adata_nmf, proj_method="mds")
        self.assert_within_unit_square(adata_nmf.obsm["X_swne"])

    def test_embed_swne_wrong_method(self, adata_nmf):
        with pytest.raises(ValueError):
            sw.tl.embed_swne(adata_nmf, proj_method="umap")

    def test_embed_features(self, adata_swne):
        sw.tl.project_features(adata_swne, n_cores=1)
        sw.tl.embed_features(adata_swne, ["gene_0", "gene_25"])
        feature_coords = adata_swne.uns["swne"]["feature_coords"]

        assert list(feature_coords.index) == ["gene_0", "gene_25"]
        self.assert_within_unit_square(feature_coords[["x", "y"]])

        sw.tl.embed_features(adata_swne, ["gene_45", "gene_0"], overwrite=False)
        assert sorted(adata_swne.uns["swne"]["feature_coords"].index) == [
            "gene_0",
            "gene_25",
            "gene_45",
        ]

        sw.tl.embed_features(adata_swne, ["gene_45"])
        assert list(adata_swne.uns["swne"]["feature_coords"].index) == ["gene_45"]

    def test_embed_features_missing_gene(self, adata_swne):
        with pytest.warns(UserWarning):
            sw.tl.embed_features(adata_swne, ["gene_0", "CD3E"])
        assert list(adata_swne.uns["swne"]["feature_coords"].index) == ["gene_0"]

    def test_rename_factors(self, adata_swne):
        sw.tl.rename_factors(adata_swne, {"factor_1": "T cells"})
        assert adata_swne.uns["swne"]["H_coords"]["name"].iloc[0] == "T cells"
        assert adata_swne.uns["swne"]["H_coords"]["name"].iloc[1] == "factor_2"

        sw.tl.rename_factors(adata_swne, "")
        assert (adata_swne.uns["swne"]["H_coords"]["name"] == "").all()

    def test_summarize_assoc_features(self, adata_nmf):
        df = sw.tl.summarize_assoc_features(adata_nmf, features_return=3)

        assert df.shape == (self.k * 3, 3)
        assert list(df.columns) == ["factor", "feature", "assoc_score"]
        for _, top in df.groupby("factor"):
            assert top["assoc_score"].is_monotonic_decreasing

    def test_summarize_assoc_features_array_names(self, adata_nmf):
        names = np.array(["a", "b", "c", "d"])
        df = sw.tl.summarize_assoc_features(adata_nmf, features_return=2, factor_names=names)

        assert list(df["factor"].unique()) == list(names)

    def test_run_swne_genes_array(self, adata):
        sw.tl.run_swne(
            adata,
            k=3,
            var_genes=[f"gene_{i}" for i in range(60)],
            genes_embed=np.array(["gene_0", "gene_10"]),
            n_cores=1,
            max_iter=200,
        )

        assert list(adata.uns["swne"]["feature_coords"].index) == ["gene_0", "gene_10"]

    def test_run_swne(self, adata):
        sw.tl.run_swne(
            adata,
            k=3,
            var_genes=[f"gene_{i}" for i in range(60)],
            genes_embed=["gene_0", "gene_90"],
            n_cores=1,
            max_iter=200,
        )

        assert adata.obsm["X_swne"].shape == (adata.n_obs, 2)
        assert adata.var["highly_variable"].sum() == 60
        assert "swne_snn" in adata.obsp
        assert list(adata.uns["swne"]["feature_coords"].index) == ["gene_0", "gene_90"]

    def test_run_swne_picks_k(self, adata):
        del adata.obsm["X_pca"]
        adata.var["highly_variable"] = np.arange(adata.n_vars) < 80
        sw.tl.run_swne(adata, k_range=[2, 3, 4], n_cores=1, max_iter=200)

        k = adata.uns["swne_num_factors"]["k"]
        assert adata.obsm["X_nmf"].shape[1] == k
        assert "X_pca" in adata.obsm

    def test_tsne(self, adata):
        pytest.importorskip("openTSNE")
        sw.tl.tsne(adata, use_rep="X_pca", perplexity=10)

        assert adata.obsm["X_tsne"].shape == (adata.n_obs, 2)


class TestSammon:
    def test_recovers_planar_distances(self):
        points = np.array([[0, 0], [1, 0], [0, 2], [3, 1], [2, 2]], dtype=float)
        D = squareform(pdist(points))

        coords, stress = _sammon(D)

        assert stress < 1e-6
        assert np.allclose(squareform(pdist(coords)), D, atol=1e-3)

    def test_identical_points(self):
        D = np.array([[0, 0, 1], [0, 0, 1], [1, 1, 0]], dtype=float)
        coords, _ = _sammon(D, seed=0)
        assert np.isfinite(coords).all()


class TestWeightedCoords:
    def test_n_pull(self):
        coords = np.array([[0, 0], [1, 0], [0, 1]], dtype=float)
        weights = np.array([[1.0, 1.0, 0.1], [0, 0, 0]])

        out = _weighted_coords(weights, coords, alpha_exp=1, n_pull=2)

        assert np.allclose(out[0], [0.5, 0])
        # no weight, center of factors
        assert np.allclose(out[1], coords.mean(axis=0))
