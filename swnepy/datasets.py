from __future__ import annotations

import logging

from pathlib import Path

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData

from ._utils import _dgcmatrix_to_csr


logger = logging.getLogger("swnepy")


def read(file_path: str | Path, **kwargs) -> AnnData:
    """
    Reads a precomputed analysis: a serialized pagoda2 object (``.rds``, ``.Robj``, ``.RData``)
    via ``read_pagoda2``, anything else with ``scanpy.read``.
    """
    if Path(file_path).suffix.lower() in (".rds", ".robj", ".rdata"):
        return read_pagoda2(file_path, **kwargs)
    return sc.read(file_path, **kwargs)


def read_pagoda2(
    file_path: str | Path,
    clustering: str = "multilevel",
    reduction: str = "PCA",
    embedding: str = "tSNE",
) -> AnnData:
    """
    Converts a saved pagoda2 object to AnnData:

    - ``misc$rawCounts`` -> ``adata.X`` (cells x genes, sparse)
    - ``misc$varinfo`` -> ``adata.var`` (``lp`` column holds overdispersion log p-values)
    - ``clusters[[reduction]][[clustering]]`` -> ``adata.obs["clusters"]``
    - ``reductions[[reduction]]`` -> ``adata.obsm["X_pca"]``
    - ``embeddings[[reduction]][[embedding]]`` -> ``adata.obsm["X_tsne"]``

    Requires R and rpy2.

    :param file_path: path to ``saveRDS`` or ``save`` output
    :type file_path: str | Path
    :param clustering: community detection result to use as clusters, defaults to "multilevel"
    :type clustering: str, optional
    :param reduction: reduction the clusters and embeddings were computed on, defaults to "PCA"
    :type reduction: str, optional
    :param embedding: 2D embedding to import, defaults to "tSNE"
    :type embedding: str, optional
    """

    import shutil

    if not shutil.which("R"):
        raise Exception("R installation is necessary.")
    try:
        from rpy2 import robjects
        from rpy2.robjects.packages import importr
    except ImportError as e:
        raise ImportError("\nPlease install rpy2:\n\n\tpip install rpy2") from e
    try:
        importr("Matrix")
    except Exception as e:
        raise Exception('R package "Matrix" is necessary.') from e

    from rpy2.robjects import default_converter, pandas2ri
    from rpy2.rinterface_lib.embedded import RRuntimeError
    from rpy2.robjects.conversion import localconverter

    base = importr("base")
    file_path = str(file_path)
    # saveRDS output is often named .Robj, save() output is .RData
    try:
        r = base.readRDS(file_path)
    except RRuntimeError:
        logger.info("%s is not a saveRDS file, reading it with load()", file_path)
        env = robjects.Environment()
        names = base.load(file_path, envir=env)
        r = env[names[0]]

    dollar = base.__dict__["$"]

    def _field(obj, *keys):
        for key in keys:
            if obj is robjects.NULL:
                return obj
            obj = dollar(obj, key)
        return obj

    X, cells, genes = _dgcmatrix_to_csr(_field(r, "misc", "rawCounts"))
    adata = AnnData(X=X)
    if cells is not None:
        adata.obs_names = cells
    if genes is not None:
        adata.var_names = genes

    varinfo = _field(r, "misc", "varinfo")
    if varinfo is not robjects.NULL:
        with localconverter(default_converter + pandas2ri.converter):
            varinfo = robjects.conversion.get_conversion().rpy2py(varinfo)
        varinfo.index = varinfo.index.astype(str)
        adata.var = adata.var.join(varinfo, how="left")

    clusters = _field(r, "clusters", reduction, clustering)
    if clusters is not robjects.NULL:
        labels = pd.Series(
            [str(x) for x in base.as_character(clusters)],
            index=[str(x) for x in base.names(clusters)],
        )
        adata.obs["clusters"] = pd.Categorical(labels.reindex(adata.obs_names))

    for obj, slot in (
        (_field(r, "reductions", reduction), "X_pca"),
        (_field(r, "embeddings", reduction, embedding), "X_tsne"),
    ):
        if obj is robjects.NULL:
            logger.info("`%s` not found in the pagoda2 object", slot)
            continue
        coords = pd.DataFrame(
            np.asarray(obj), index=[str(x) for x in base.rownames(obj)]
        )
        adata.obsm[slot] = coords.reindex(adata.obs_names).to_numpy()

    return adata


def pbmc3k(
    file_path: str | Path = "data/swne/pbmc3k.h5ad",
) -> AnnData:
    """
    3k PBMCs from 10x Genomics: raw counts of the cells kept in scanpy's processed version,
    with its louvain clusters (``adata.obs["clusters"]``), PCA and t-SNE.
    Cached to ``file_path``.
    """
    file_path = Path(file_path)
    if file_path.is_file():
        return sc.read(file_path)

    raw = sc.datasets.pbmc3k()
    raw.var_names_make_unique()
    processed = sc.datasets.pbmc3k_processed()

    adata = raw[processed.obs_names].copy()
    sc.pp.filter_genes(adata, min_cells=3)
    adata.obs["clusters"] = processed.obs["louvain"].to_numpy()
    adata.obsm["X_pca"] = processed.obsm["X_pca"]
    adata.obsm["X_tsne"] = processed.obsm["X_tsne"]

    file_path.parent.mkdir(parents=True, exist_ok=True)
    adata.write(file_path)
    return adata
