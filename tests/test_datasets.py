import shutil

import numpy as np
import pytest

import swnepy as sw


class TestDatasets:
    def test_read_h5ad(self, adata, tmp_path):
        file_path = tmp_path / "adata.h5ad"
        adata.write(file_path)

        adata_read = sw.datasets.read(file_path)

        assert adata_read.shape == adata.shape
        assert (adata_read.obs["clusters"] == adata.obs["clusters"]).all()

    def test_read_swne_result(self, adata_swne, tmp_path):
        sw.tl.embed_features(adata_swne, ["gene_0"])
        file_path = tmp_path / "swne.h5ad"
        adata_swne.write(file_path)

        adata_read = sw.datasets.read(file_path)

        assert np.allclose(adata_read.obsm["X_swne"], adata_swne.obsm["X_swne"])
        assert list(adata_read.uns["swne"]["H_coords"]["name"]) == list(
            adata_swne.uns["swne"]["H_coords"]["name"]
        )

    @pytest.mark.parametrize(
        "file_name, save_call",
        [
            ("pagoda2.rds", "saveRDS(r, file_path)"),
            ("pagoda2.Robj", "saveRDS(r, file_path)"),
            ("pagoda2.RData", "save(r, file = file_path)"),
        ],
    )
    def test_read_pagoda2(self, tmp_path, file_name, save_call):
        pytest.importorskip("rpy2")
        if not shutil.which("R"):
            pytest.skip("R is not installed")

        from rpy2 import robjects
        from rpy2.robjects.packages import isinstalled

        if not isinstalled("Matrix"):
            pytest.skip("R package Matrix is not installed")

        file_path = tmp_path / file_name
        # pagoda2 objects keep their results in nested lists
        robjects.r(
            f"""
            library(Matrix)
            counts <- Matrix(c(1, 0, 3, 0, 2, 0, 4, 1, 0, 5, 0, 2), nrow = 4, sparse = TRUE,
                             dimnames = list(paste0("cell", 1:4), paste0("gene", 1:3)))
            varinfo <- data.frame(m = c(0.1, 0.2, 0.3), lp = c(-5, -1, -10),
                                  row.names = paste0("gene", 1:3))
            clusters <- factor(c("1", "2", "1", "2"))
            names(clusters) <- paste0("cell", 1:4)
            pca <- matrix(1:8, nrow = 4, dimnames = list(paste0("cell", 1:4), c("PC1", "PC2")))
            r <- list(misc = list(rawCounts = counts, varinfo = varinfo),
                      clusters = list(PCA = list(multilevel = clusters)),
                      reductions = list(PCA = pca),
                      embeddings = list(PCA = list(tSNE = pca)))
            file_path <- "{file_path.as_posix()}"
            {save_call}
            """
        )

        adata = sw.datasets.read(file_path)

        assert adata.shape == (4, 3)
        assert list(adata.obs_names) == ["cell1", "cell2", "cell3", "cell4"]
        assert adata.X[0, 0] == 1 and adata.X[2, 0] == 3
        assert list(adata.var["lp"]) == [-5, -1, -10]
        assert list(adata.obs["clusters"]) == ["1", "2", "1", "2"]
        assert adata.obsm["X_pca"].shape == (4, 2)
        assert "X_tsne" in adata.obsm

        assert sw.pp.select_variable_genes(adata, n_top_genes=2) == ["gene3", "gene1"]
