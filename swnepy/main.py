# pylint: disable=E1123, W0621, C0116, W0511, E1121

from __future__ import annotations

import logging

import scanpy as sc
from anndata import AnnData

import swnepy as sw


def run_swne_pagoda2(
    adata: AnnData,
    clusters_key: str,
    genes_embed: list[str],
    n_var_genes: int,
    k: int,
    k_range: range,
    snn_k: int,
    prune_snn: float,
    alpha_exp: float,
    snn_exp: float,
    n_pull: int,
    n_cores: int,
    seed: int,
    run_tsne: bool = True,
) -> AnnData:
    """
    Walks through SWNE on top of a pagoda2 analysis, mostly for debugging
    1. variable genes, clusters
    2. one-shot embedding
        - run_swne(adata_wrapper) -> adata_wrapper.obsm["X_swne"]
    3. the same step by step
        - scale counts, pick k, NMF, SNN, embedding, gene projection
    4. plots
        - SWNE, t-SNE with SWNE colors, factor loadings
    Returns the step by step result.
    """
    # variable genes, clusters
    var_genes = sw.pp.select_variable_genes(adata, n_top_genes=n_var_genes)
    assert clusters_key in adata.obs, f"`{clusters_key}` not found in adata.obs"

    # wrapper
    adata_wrapper = adata.copy()
    sw.tl.run_swne(
        adata_wrapper,
        k=k,
        var_genes=var_genes,
        genes_embed=genes_embed,
        snn_k=snn_k,
        prune_snn=prune_snn,
        n_cores=n_cores,
        random_seed=seed,
    )
    sw.pl.swne(
        adata_wrapper,
        groupby=clusters_key,
        alpha_plot=0.4,
        do_label=True,
        label_size=10,
        pt_size=4,
        show_legend=False,
        seed=seed,
    )

    # step by step
    sw.pp.scale_counts(adata, method="log", adj_var=True)
    sw.tl.find_num_factors(adata, k_range=k_range, n_cores=n_cores, random_seed=seed)
    sw.pl.num_factors(adata)

    sw.tl.run_nmf(adata, k=k, init="ica", n_cores=n_cores, random_seed=seed)
    sw.pp.calc_snn(adata, k=snn_k, prune_snn=prune_snn, use_rep="X_pca")
    sw.tl.embed_swne(
        adata,
        alpha_exp=alpha_exp,
        snn_exp=snn_exp,
        n_pull=n_pull,
        proj_method="sammon",
        random_seed=seed,
    )
    sw.tl.rename_factors(adata, "")

    sw.tl.project_features(adata, n_cores=n_cores)
    sw.tl.embed_features(adata, genes_embed, n_pull=n_pull)

    sw.pl.swne(
        adata,
        groupby=clusters_key,
        alpha_plot=0.4,
        do_label=True,
        label_size=10,
        pt_size=4,
        show_legend=False,
        seed=seed,
    )
    sw.pl.feature_swne(adata, genes_embed[0], alpha_plot=0.4, pt_size=4)

    # t-SNE for comparison
    if run_tsne and "X_tsne" not in adata.obsm:
        sw.tl.tsne(adata, use_rep="X_pca", random_seed=seed)
    if "X_tsne" in adata.obsm:
        sw.pl.dims(
            adata,
            basis="X_tsne",
            groupby=clusters_key,
            pt_size=0.75,
            label_size=10,
            alpha_plot=0.3,
            seed=seed,
        )

    # factors interpretation
    top_factor_genes = sw.tl.summarize_assoc_features(adata, features_return=1)
    logging.getLogger("swnepy").info("Top factor genes:\n%s", top_factor_genes)
    sw.pl.factor_heatmap(adata, features=top_factor_genes["feature"].unique(), clustering="col")

    # colors for other tools
    sw.pl.extract_colors(adata, groupby=clusters_key, seed=seed)

    return adata


if __name__ == "__main__":

    logging.basicConfig(level=logging.INFO)
    sc.settings.verbosity = 2

    # adata = sw.datasets.read("data/pbmc3k_pagoda2.Robj")  # pagoda2 object, needs R
    # clusters_key = "clusters"

    adata = sw.datasets.pbmc3k()
    clusters_key = "clusters"

    genes_embed = ["MS4A1", "GNLY", "CD3E", "CD14", "FCER1A", "FCGR3A", "LYZ", "PPBP", "CD8A"]

    adata = run_swne_pagoda2(
        adata,
        clusters_key=clusters_key,
        genes_embed=genes_embed,
        n_var_genes=1500,
        k=16,
        k_range=range(2, 21, 2),
        snn_k=20,
        prune_snn=1 / 20,
        alpha_exp=1.25,
        snn_exp=0.25,
        n_pull=3,
        n_cores=8,
        seed=42,
    )
    adata.write("data/swne/pbmc3k.swne.h5ad")
