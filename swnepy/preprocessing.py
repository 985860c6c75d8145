# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from scipy.sparse import csr_matrix, issparse

from ._utils import _adjust_variance, _compute_snn, _n_cores, _params, _to_dense


logger = logging.getLogger("swnepy")

SCALE_METHODS = ("log", "ft", "none")


def select_variable_genes(
    adata: AnnData,
    n_top_genes: int = 1500,
    lp_key: str = "lp",
    layer: str | None = None,
    key_added: str = "highly_variable",
) -> list[str]:
    """
    Marks overdispersed genes in ``adata.var[key_added]``.
    If pagoda2 variance info is present (``adata.var[lp_key]``, log p-values of overdispersion),
    the ``n_top_genes`` genes with the lowest ``lp`` are taken,
    otherwise scanpy's ``seurat_v3`` flavor is run on raw counts.

    :param adata: AnnData object with raw counts
    :type adata: AnnData
    :param n_top_genes: number of genes to select, defaults to 1500
    :type n_top_genes: int, optional
    :param lp_key: column of ``adata.var`` with overdispersion log p-values, defaults to "lp"
    :type lp_key: str, optional
    :param layer: layer with raw counts for the scanpy fallback, defaults to None (``adata.X``)
    :type layer: str | None, optional
    :param key_added: boolean column of ``adata.var`` to write, defaults to "highly_variable"
    :type key_added: str, optional
    :return: names of the selected genes, most overdispersed first
    """
    n_top_genes = min(n_top_genes, adata.n_vars)

    if lp_key in adata.var:
        lp = adata.var[lp_key].astype(float).fillna(np.inf)
        var_genes = lp.sort_values(ascending=True, kind="stable").index[:n_top_genes]
    else:
        logger.info(
            "'%s' not found in adata.var, selecting variable genes with scanpy's seurat_v3 flavor",
            lp_key,
        )
        hvg = sc.pp.highly_variable_genes(
            adata,
            n_top_genes=n_top_genes,
            flavor="seurat_v3",
            layer=layer,
            inplace=False,
        )
        hvg.index = adata.var_names
        var_genes = hvg.sort_values("highly_variable_rank").index[:n_top_genes]

    adata.var[key_added] = adata.var_names.isin(var_genes)
    return list(var_genes)


def scale_counts(
    adata: AnnData,
    method: str = "log",
    adj_var: bool = True,
    batch_key: str | None = None,
    layer: str | None = None,
    key_added: str = "swne_norm",
    min_adjusted_variance: float = 1e-3,
    max_adjusted_variance: float = 1e3,
) -> None:
    """
    Normalizes raw counts for the non-negative factorization:
    library size scaling to the median library size (of each batch if ``batch_key`` is given),
    ``log`` (log1p) or ``ft`` (Freeman-Tukey) transform,
    and optional pagoda-like adjustment of gene variances.
    Result goes to ``adata.layers[key_added]``, gene statistics of the
    variance adjustment go to ``adata.var`` (``lp`` only if not present yet).

    :param adata: AnnData object with raw counts
    :type adata: AnnData
    :param method: "log", "ft" or "none", defaults to "log"
    :type method: str, optional
    :param adj_var: if to adjust gene variances, defaults to True
    :type adj_var: bool, optional
    :param batch_key: ``adata.obs`` column with batches for library size scaling, defaults to None
    :type batch_key: str | None, optional
    :param layer: layer with raw counts, defaults to None (``adata.X``)
    :type layer: str | None, optional
    :param key_added: layer to save normalized values, defaults to "swne_norm"
    :type key_added: str, optional
    """
    if method not in SCALE_METHODS:
        raise ValueError(f"`method` should be one of {SCALE_METHODS}, got '{method}'.")

    counts = adata.X if layer is None else adata.layers[layer]
    if issparse(counts):
        assert counts.min() >= 0, "Expected non-negative raw counts"
    else:
        assert np.min(counts) >= 0, "Expected non-negative raw counts"

    norm = AnnData(
        X=(
            csr_matrix(counts, dtype=np.float64)
            if issparse(counts)
            else np.array(counts, dtype=np.float64)
        )
    )

    if batch_key is None:
        sc.pp.normalize_total(norm, target_sum=None)
    else:
        batches = adata.obs[batch_key].astype(str).to_numpy()
        lib_size = np.asarray(norm.X.sum(axis=1)).ravel()
        target = pd.Series(lib_size).groupby(batches).transform("median").to_numpy()
        sc.pp.normalize_total(norm, target_sum=1)
        # per-batch median library size
        if issparse(norm.X):
            norm.X = csr_matrix(norm.X.multiply(target[:, np.newaxis]))
        else:
            norm.X *= target[:, np.newaxis]

    if method == "log":
        sc.pp.log1p(norm)
    elif method == "ft":
        X = _to_dense(norm.X)
        norm.X = np.sqrt(X) + np.sqrt(X + 1)

    if adj_var:
        norm.X, var_stats = _adjust_variance(
            norm.X,
            min_adjusted_variance=min_adjusted_variance,
            max_adjusted_variance=max_adjusted_variance,
        )
        var_stats.index = adata.var_names
        if "lp" not in adata.var:
            adata.var["lp"] = var_stats["lp"].to_numpy()
        adata.var["swne_gsf"] = var_stats["gsf"].to_numpy()
        adata.var["swne_qv"] = var_stats["qv"].to_numpy()

    adata.layers[key_added] = norm.X
    adata.uns["swne_norm"] = {
        "params": _params(method=method, adj_var=adj_var, batch_key=batch_key, layer=layer)
    }


def calc_snn(
    adata: AnnData,
    k: int = 10,
    prune_snn: float = 1 / 15,
    use_rep: str = "X_pca",
    n_pcs: int | None = None,
    key_added: str = "swne_snn",
    n_cores: int | None = None,
) -> None:
    """
    Shared nearest neighbors graph used by SWNE to smooth cell coordinates.
    Each cell's k nearest neighbors (the cell itself included) are found in ``adata.obsm[use_rep]``,
    similarity of two cells is the Jaccard index of their neighborhoods,
    similarities below ``prune_snn`` are set to zero.
    Saved to ``adata.obsp[key_added]``.

    :param adata: AnnData object
    :type adata: AnnData
    :param k: number of nearest neighbors, defaults to 10
    :type k: int, optional
    :param prune_snn: minimal Jaccard index to keep an edge, defaults to 1/15
    :type prune_snn: float, optional
    :param use_rep: ``adata.obsm[use_rep]`` is used to search neighbors, "X" for ``adata.X``, defaults to "X_pca"
    :type use_rep: str, optional
    :param n_pcs: use only the first ``n_pcs`` columns of the representation, defaults to None
    :type n_pcs: int | None, optional
    :param key_added: defaults to "swne_snn"
    :type key_added: str, optional
    :param n_cores: number of jobs for neighbors search, defaults to ``scanpy.settings.n_jobs``
    :type n_cores: int | None, optional
    """
    assert k >= 2, "`k` should be at least 2"
    if use_rep == "X":
        X = _to_dense(adata.X)
    else:
        assert (
            use_rep in adata.obsm
        ), f"Representation `{use_rep}` not found in adata.obsm. Run PCA first or set `use_rep` properly"
        X = np.asarray(adata.obsm[use_rep])
    if n_pcs is not None:
        X = X[:, :n_pcs]

    if k > adata.n_obs:
        warnings.warn(f"`k`={k} is larger than the number of cells, using {adata.n_obs}")

    adata.obsp[key_added] = _compute_snn(
        X, k=k, prune_snn=prune_snn, n_jobs=_n_cores(n_cores)
    )
    adata.uns[key_added] = {
        "params": _params(k=k, prune_snn=prune_snn, use_rep=use_rep, n_pcs=n_pcs)
    }
    logger.info(
        "SNN graph with %i edges saved to adata.obsp['%s']",
        adata.obsp[key_added].nnz,
        key_added,
    )
