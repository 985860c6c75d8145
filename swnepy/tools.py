# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from typing import Iterable, Mapping, Sequence

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from joblib import Parallel, delayed
from threadpoolctl import threadpool_limits

from ._utils import (
    _factor_names,
    _n_cores,
    _normalize_bounded,
    _num_factors_worker,
    _params,
    _project_factors,
    _project_genes,
    _randomize_rows,
    _run_nmf,
    _smooth_with_snn,
    _to_dense,
    _weighted_coords,
)
from .preprocessing import calc_snn, scale_counts, select_variable_genes


logger = logging.getLogger("swnepy")


def _get_norm_matrix(
    adata: AnnData,
    layer: str | None = "swne_norm",
    use_genes_column: str | None = "highly_variable",
):
    """Returns [genes, cells] matrix of the genes to factorize and their names."""
    if layer is not None:
        assert (
            layer in adata.layers
        ), f"Layer `{layer}` not found in adata.layers. First, run swnepy.pp.scale_counts"
        X = adata.layers[layer]
    else:
        X = adata.X

    if use_genes_column is None:
        genes = adata.var_names
    else:
        assert (
            use_genes_column in adata.var
        ), f"Column `{use_genes_column}` not found in adata.var. Run swnepy.pp.select_variable_genes or set `use_genes_column` properly"
        mask = adata.var[use_genes_column].to_numpy().astype(bool)
        X = X[:, mask]
        genes = adata.var_names[mask]

    return X.T, genes


def find_num_factors(
    adata: AnnData,
    k_range: Iterable[int] = range(2, 21, 2),
    layer: str | None = "swne_norm",
    use_genes_column: str | None = "highly_variable",
    n_cores: int | None = None,
    loss: str = "mse",
    init: str = "nnsvd",
    max_iter: int = 500,
    random_seed: int = 42,
    key_added: str = "swne_num_factors",
) -> pd.DataFrame:
    """
    Helps to pick the number of NMF factors.
    For each k the reconstruction error of the data is compared with the one of a null matrix
    where the values of each gene are randomly permuted across cells.
    Adding factors is worth it while the error reduction from the previous k
    is larger on the real data than on the null data.

    The table is saved to ``adata.uns[key_added]["errors"]``,
    the suggested k to ``adata.uns[key_added]["k"]``.

    :param adata: AnnData object normalized with ``pp.scale_counts``
    :type adata: AnnData
    :param k_range: numbers of factors to try, defaults to range(2, 21, 2)
    :type k_range: Iterable[int], optional
    :param layer: layer with normalized data, defaults to "swne_norm"
    :type layer: str | None, optional
    :param use_genes_column: boolean ``adata.var`` column with genes to factorize, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param n_cores: number of parallel NMF runs, defaults to ``scanpy.settings.n_jobs``
    :type n_cores: int | None, optional
    :param loss: "mse" or "mkl", defaults to "mse"
    :type loss: str, optional
    :param init: NMF initialization, defaults to "nnsvd"
    :type init: str, optional
    :param max_iter: max NMF iterations, defaults to 500
    :type max_iter: int, optional
    :param random_seed: seed for the null matrix and NMF, defaults to 42
    :type random_seed: int, optional
    :return: table with ``k``, ``err``, ``err_null``, ``err_del``, ``err_null_del`` columns
    """
    k_range = sorted(set(int(k) for k in k_range))
    assert len(k_range) > 1, "At least two values of k are needed"

    A, _ = _get_norm_matrix(adata, layer, use_genes_column)
    A = _to_dense(A)
    A_null = _randomize_rows(A, random_seed)

    logger.info("Running NMF for k in %s", k_range)
    results = Parallel(n_jobs=_n_cores(n_cores))(
        delayed(_num_factors_worker)(
            A, A_null, k, loss=loss, init=init, max_iter=max_iter, seed=random_seed
        )
        for k in k_range
    )

    df = pd.DataFrame(results, columns=["k", "err", "err_null"]).sort_values("k")
    df["err_del"] = -df["err"].diff()
    df["err_null_del"] = -df["err_null"].diff()
    df = df.reset_index(drop=True)

    # first k where adding factors stops beating the null
    stops = df.index[(df.index > 0) & (df["err_del"] <= df["err_null_del"])]
    k_best = int(df.loc[stops[0] - 1, "k"]) if len(stops) else int(df["k"].iloc[-1])

    adata.uns[key_added] = {
        "errors": df,
        "k": k_best,
        "params": _params(loss=loss, init=init, max_iter=max_iter, random_seed=random_seed),
    }
    logger.info("Suggested number of factors: %i", k_best)
    return df


def run_nmf(
    adata: AnnData,
    k: int,
    alpha: float = 0.0,
    init: str = "ica",
    layer: str | None = "swne_norm",
    use_genes_column: str | None = "highly_variable",
    n_cores: int | None = None,
    loss: str = "mse",
    max_iter: int = 500,
    random_seed: int = 42,
    basis_added: str = "X_nmf",
    loadings_added: str = "NMF",
) -> None:
    """
    Non-negative matrix factorization of the normalized expression
    of the selected genes: A [genes, cells] ~ W [genes, k] x H [k, cells].

    Cell scores H.T are saved to ``adata.obsm[basis_added]``, gene loadings W to
    ``adata.varm[loadings_added]`` (zero for genes not used in factorization,
    see ``project_features``).

    :param adata: AnnData object normalized with ``pp.scale_counts``
    :type adata: AnnData
    :param k: number of factors
    :type k: int
    :param alpha: L1 regularization of both W and H, defaults to 0.0
    :type alpha: float, optional
    :param init: "ica" (absolute FastICA components), "nnsvd" or "random", defaults to "ica"
    :type init: str, optional
    :param layer: layer with normalized data, defaults to "swne_norm"
    :type layer: str | None, optional
    :param use_genes_column: boolean ``adata.var`` column with genes to factorize, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param n_cores: threads for the BLAS, defaults to ``scanpy.settings.n_jobs``
    :type n_cores: int | None, optional
    :param loss: "mse" (Frobenius) or "mkl" (Kullback-Leibler), defaults to "mse"
    :type loss: str, optional
    :param max_iter: defaults to 500
    :type max_iter: int, optional
    :param random_seed: defaults to 42
    :type random_seed: int, optional
    """
    A, genes = _get_norm_matrix(adata, layer, use_genes_column)
    assert k <= min(A.shape), f"`k` should not exceed min(n_genes, n_cells) = {min(A.shape)}"

    logger.info("Running NMF with k=%i on %i genes x %i cells", k, *A.shape)
    n_cores = _n_cores(n_cores)
    with threadpool_limits(limits=n_cores if n_cores > 0 else None):
        W, H, err, n_iter = _run_nmf(
            A,
            k,
            alpha=alpha,
            init=init,
            loss=loss,
            max_iter=max_iter,
            seed=random_seed,
        )

    W_full = np.zeros((adata.n_vars, k))
    W_full[adata.var_names.get_indexer(genes)] = W

    adata.obsm[basis_added] = H.T
    adata.varm[loadings_added] = W_full
    adata.uns["nmf"] = {
        "factors": _factor_names(k),
        "genes": np.asarray(genes),
        "reconstruction_err": err,
        "n_iter": n_iter,
        "projected": False,
        "params": _params(
            k=k,
            alpha=alpha,
            init=init,
            loss=loss,
            layer=layer,
            use_genes_column=use_genes_column,
            random_seed=random_seed,
        ),
    }


def project_features(
    adata: AnnData,
    layer: str | None = "swne_norm",
    n_cores: int | None = None,
    loss: str = "mse",
    max_iter: int = 500,
    basis: str = "X_nmf",
    loadings: str = "NMF",
    chunk_size: int = 1000,
) -> None:
    """
    Projects all the genes onto the NMF cell scores: for fixed H, solves for the non-negative
    gene loadings W that best reconstruct each gene.
    Overwrites ``adata.varm[loadings]``.

    :param adata: AnnData object after ``run_nmf``
    :type adata: AnnData
    :param layer: layer with normalized data, defaults to "swne_norm"
    :type layer: str | None, optional
    :param n_cores: number of parallel jobs over gene chunks, defaults to ``scanpy.settings.n_jobs``
    :type n_cores: int | None, optional
    :param loss: "mse" or "mkl", defaults to "mse"
    :type loss: str, optional
    :param chunk_size: genes per job, defaults to 1000
    :type chunk_size: int, optional
    """
    assert basis in adata.obsm, f"`{basis}` not found in adata.obsm. First, run swnepy.tl.run_nmf"

    A, _ = _get_norm_matrix(adata, layer, use_genes_column=None)
    A = A.tocsr() if hasattr(A, "tocsr") else np.asarray(A)
    H = np.asarray(adata.obsm[basis]).T

    chunks = [
        slice(start, min(start + chunk_size, adata.n_vars))
        for start in range(0, adata.n_vars, chunk_size)
    ]
    logger.info("Projecting %i genes onto %i factors", adata.n_vars, H.shape[0])
    results = Parallel(n_jobs=_n_cores(n_cores))(
        delayed(_project_genes)(_to_dense(A[chunk]), H, loss=loss, max_iter=max_iter)
        for chunk in chunks
    )

    adata.varm[loadings] = np.vstack(results)
    if "nmf" in adata.uns:
        adata.uns["nmf"]["projected"] = True


def embed_swne(
    adata: AnnData,
    alpha_exp: float = 1.0,
    snn_exp: float = 1.0,
    n_pull: int | None = 3,
    proj_method: str = "sammon",
    dist_use: str = "cosine",
    basis: str = "X_nmf",
    snn_key: str | None = "swne_snn",
    factor_names: Sequence[str] | None = None,
    random_seed: int = 42,
    key_added: str = "swne",
) -> None:
    """
    Similarity Weighted Nonnegative Embedding.

    1. Pairwise distances between factors (rows of H) are projected to 2D
       (Sammon mapping or metric MDS) and rescaled to [0, 1].
    2. Each factor's scores are min-max scaled, each cell is placed at the average
       of the factor coordinates weighted by its ``n_pull`` largest scaled scores
       raised to ``alpha_exp``.
    3. If SNN graph is available, cell coordinates are averaged over
       SNN neighbors with weights ``snn ** snn_exp``, normalized by row.

    Cell coordinates are saved to ``adata.obsm[f"X_{key_added}"]``, factor coordinates to
    ``adata.uns[key_added]["H_coords"]``.

    :param adata: AnnData object after ``run_nmf``
    :type adata: AnnData
    :param alpha_exp: increasing it pulls cells closer to their factors, defaults to 1.0
    :type alpha_exp: float, optional
    :param snn_exp: decreasing it makes SNN smoothing stronger, defaults to 1.0
    :type snn_exp: float, optional
    :param n_pull: number of factors pulling each cell, None for all, defaults to 3
    :type n_pull: int | None, optional
    :param proj_method: "sammon" or "mds", defaults to "sammon"
    :type proj_method: str, optional
    :param dist_use: distance between factors, "cosine", "euclidean" or "pearson", defaults to "cosine"
    :type dist_use: str, optional
    :param basis: ``adata.obsm[basis]`` holds NMF cell scores, defaults to "X_nmf"
    :type basis: str, optional
    :param snn_key: ``adata.obsp[snn_key]`` holds SNN graph, None to skip smoothing, defaults to "swne_snn"
    :type snn_key: str | None, optional
    :param factor_names: names of factors, defaults to the ones from ``adata.uns["nmf"]``
    :type factor_names: Sequence[str] | None, optional
    :param random_seed: defaults to 42
    :type random_seed: int, optional
    :param key_added: defaults to "swne"
    :type key_added: str, optional
    """
    assert basis in adata.obsm, f"`{basis}` not found in adata.obsm. First, run swnepy.tl.run_nmf"

    # [k, cells]
    H = np.asarray(adata.obsm[basis]).T
    k = H.shape[0]
    assert k >= 2, "At least two factors are needed for the embedding"

    if factor_names is None:
        factor_names = adata.uns.get("nmf", {}).get("factors", _factor_names(k))
    factor_names = [str(name) for name in factor_names]
    assert len(factor_names) == k, "`factor_names` should have a name for each factor"

    # [k, 2]
    H_coords = _project_factors(
        H, dist_use=dist_use, proj_method=proj_method, seed=random_seed
    )

    # [cells, 2]
    sample_coords = _weighted_coords(
        _normalize_bounded(H, axis=1).T, H_coords, alpha_exp, n_pull
    )

    if snn_key is not None:
        if snn_key in adata.obsp:
            sample_coords = _smooth_with_snn(adata.obsp[snn_key], sample_coords, snn_exp)
        else:
            warnings.warn(
                f"SNN graph `{snn_key}` not found in adata.obsp, cell coordinates are not smoothed. "
                f"Run swnepy.pp.calc_snn first or set `snn_key=None`"
            )

    adata.obsm[f"X_{key_added}"] = sample_coords
    adata.uns[key_added] = {
        "H_coords": pd.DataFrame(
            {"x": H_coords[:, 0], "y": H_coords[:, 1], "name": factor_names},
            index=factor_names,
        ),
        "feature_coords": pd.DataFrame(columns=["x", "y", "name"]),
        "params": _params(
            alpha_exp=alpha_exp,
            snn_exp=snn_exp,
            n_pull=n_pull,
            proj_method=proj_method,
            dist_use=dist_use,
            basis=basis,
            snn_key=snn_key,
        ),
    }


def embed_features(
    adata: AnnData,
    features: Sequence[str],
    alpha_exp: float = 1.0,
    n_pull: int | None = 3,
    scale_cols: bool = True,
    overwrite: bool = True,
    loadings: str = "NMF",
    key: str = "swne",
) -> None:
    """
    Places genes on the SWNE embedding: each gene goes to the average of factor coordinates
    weighted by its gene loadings.

    :param adata: AnnData object after ``embed_swne``
    :type adata: AnnData
    :param features: genes to embed
    :type features: Sequence[str]
    :param alpha_exp: defaults to 1.0
    :type alpha_exp: float, optional
    :param n_pull: number of factors pulling each gene, defaults to 3
    :type n_pull: int | None, optional
    :param scale_cols: if to min-max scale loadings of each factor first, defaults to True
    :type scale_cols: bool, optional
    :param overwrite: replace previously embedded features, otherwise append, defaults to True
    :type overwrite: bool, optional
    :param loadings: ``adata.varm[loadings]`` holds gene loadings, defaults to "NMF"
    :type loadings: str, optional
    :param key: ``adata.uns[key]`` holds SWNE embedding, defaults to "swne"
    :type key: str, optional
    """
    assert key in adata.uns, f"SWNE embedding not found in adata.uns['{key}']. First, run swnepy.tl.embed_swne"
    assert loadings in adata.varm, f"`{loadings}` not found in adata.varm. First, run swnepy.tl.run_nmf"

    if isinstance(features, str):
        features = [features]
    features = list(dict.fromkeys(features))

    missing = [f for f in features if f not in adata.var_names]
    if missing:
        warnings.warn(f"Features not found in adata.var_names are skipped: {missing}")
    features = [f for f in features if f in adata.var_names]

    W = np.asarray(adata.varm[loadings])
    if scale_cols:
        W = _normalize_bounded(W, axis=0)
    W = W[adata.var_names.get_indexer(features)]

    not_loaded = W.sum(axis=1) == 0
    if not_loaded.any():
        logger.warning(
            "%i features have zero loadings on all factors, "
            "consider running swnepy.tl.project_features",
            not_loaded.sum(),
        )

    H_coords = adata.uns[key]["H_coords"][["x", "y"]].to_numpy(dtype=float)
    coords = _weighted_coords(W, H_coords, alpha_exp, n_pull)

    feature_coords = pd.DataFrame(
        {"x": coords[:, 0], "y": coords[:, 1], "name": features}, index=features
    )
    if not overwrite:
        previous = adata.uns[key]["feature_coords"]
        feature_coords = pd.concat(
            [previous[~previous.index.isin(feature_coords.index)], feature_coords]
        )

    adata.uns[key]["feature_coords"] = feature_coords


def rename_factors(
    adata: AnnData,
    names: str | Sequence[str] | Mapping[str, str],
    key: str = "swne",
) -> None:
    """
    Sets factor labels shown on the SWNE plot.
    ``""`` hides all factor labels, a mapping renames only some factors.

    :param adata: AnnData object after ``embed_swne``
    :type adata: AnnData
    :param names: one label for all factors, a label per factor or a mapping from old to new names
    :type names: str | Sequence[str] | Mapping[str, str]
    """
    H_coords = adata.uns[key]["H_coords"]
    if isinstance(names, str):
        H_coords["name"] = names
    elif isinstance(names, Mapping):
        H_coords["name"] = [names.get(i, name) for i, name in H_coords["name"].items()]
    else:
        assert len(names) == H_coords.shape[0], "Provide a name for each factor"
        H_coords["name"] = list(names)


def summarize_assoc_features(
    adata: AnnData,
    features_return: int = 8,
    loadings: str = "NMF",
    factor_names: Sequence[str] | None = None,
) -> pd.DataFrame:
    """
    Top genes of each factor by gene loading, helps to interpret factors.

    :param adata: AnnData object after ``run_nmf``
    :type adata: AnnData
    :param features_return: number of genes for each factor, defaults to 8
    :type features_return: int, optional
    :return: table with ``factor``, ``feature`` and ``assoc_score`` columns
    """
    W = pd.DataFrame(
        np.asarray(adata.varm[loadings]),
        index=adata.var_names,
        columns=(
            adata.uns.get("nmf", {}).get("factors", _factor_names(adata.varm[loadings].shape[1]))
            if factor_names is None
            else list(factor_names)
        ),
    )

    top = []
    for factor in W.columns:
        scores = W[factor].nlargest(features_return)
        top.append(
            pd.DataFrame(
                {"factor": factor, "feature": scores.index, "assoc_score": scores.to_numpy()}
            )
        )
    return pd.concat(top, ignore_index=True)


def run_swne(
    adata: AnnData,
    k: int | None = None,
    var_genes: Sequence[str] | None = None,
    genes_embed: Sequence[str] | None = None,
    n_var_genes: int = 3000,
    k_range: Iterable[int] = range(2, 21, 2),
    layer: str | None = None,
    batch_key: str | None = None,
    use_rep: str = "X_pca",
    n_pcs: int | None = None,
    snn_k: int = 10,
    prune_snn: float = 1 / 15,
    alpha_exp: float = 1.25,
    snn_exp: float = 1.0,
    n_pull: int | None = 3,
    proj_method: str = "sammon",
    dist_use: str = "cosine",
    init: str = "ica",
    loss: str = "mse",
    max_iter: int = 500,
    n_cores: int | None = None,
    random_seed: int = 42,
) -> None:
    """
    Runs the whole SWNE pipeline on raw counts:
    ``pp.scale_counts`` -> (``find_num_factors``) -> ``run_nmf`` -> ``pp.calc_snn``
    -> ``embed_swne`` -> (``project_features`` -> ``embed_features``).

    :param adata: AnnData object with raw counts in ``adata.X`` or ``adata.layers[layer]``
    :type adata: AnnData
    :param k: number of factors, if None it is picked with ``find_num_factors``, defaults to None
    :type k: int | None, optional
    :param var_genes: genes to factorize, if None ``adata.var["highly_variable"]`` is used
        or selected with ``pp.select_variable_genes``, defaults to None
    :type var_genes: Sequence[str] | None, optional
    :param genes_embed: genes to place on the embedding, defaults to None
    :type genes_embed: Sequence[str] | None, optional
    :param n_var_genes: number of variable genes to select if none given, defaults to 3000
    :type n_var_genes: int, optional
    :param use_rep: representation for the SNN graph, computed with PCA if absent, defaults to "X_pca"
    :type use_rep: str, optional

    Other parameters are passed to the corresponding steps.
    """
    n_cores = _n_cores(n_cores)

    if var_genes is not None:
        adata.var["highly_variable"] = adata.var_names.isin(var_genes)
    elif "highly_variable" not in adata.var:
        select_variable_genes(adata, n_top_genes=n_var_genes, layer=layer)
    logger.info("Using %i variable genes", adata.var["highly_variable"].sum())

    scale_counts(adata, method="log", adj_var=True, batch_key=batch_key, layer=layer)

    if k is None:
        find_num_factors(
            adata, k_range=k_range, n_cores=n_cores, loss=loss, random_seed=random_seed
        )
        k = adata.uns["swne_num_factors"]["k"]

    run_nmf(
        adata,
        k,
        init=init,
        n_cores=n_cores,
        loss=loss,
        max_iter=max_iter,
        random_seed=random_seed,
    )

    if use_rep not in adata.obsm:
        logger.info("`%s` not found in adata.obsm, running PCA on variable genes", use_rep)
        adata_hvg = AnnData(
            X=_to_dense(adata.layers["swne_norm"][:, adata.var["highly_variable"].to_numpy()])
        )
        sc.pp.scale(adata_hvg, max_value=10)
        sc.tl.pca(
            adata_hvg,
            n_comps=min(n_pcs or 30, min(adata_hvg.shape) - 1),
            random_state=random_seed,
        )
        adata.obsm[use_rep] = adata_hvg.obsm["X_pca"]

    calc_snn(
        adata, k=snn_k, prune_snn=prune_snn, use_rep=use_rep, n_pcs=n_pcs, n_cores=n_cores
    )

    embed_swne(
        adata,
        alpha_exp=alpha_exp,
        snn_exp=snn_exp,
        n_pull=n_pull,
        proj_method=proj_method,
        dist_use=dist_use,
        random_seed=random_seed,
    )

    if genes_embed is not None and len(genes_embed) > 0:
        if not set(genes_embed).issubset(adata.var_names[adata.var["highly_variable"].to_numpy()]):
            project_features(adata, n_cores=n_cores, loss=loss, max_iter=max_iter)
        embed_features(adata, genes_embed, n_pull=n_pull)


def tsne(
    adata: AnnData,
    use_rep: str = "X_pca",
    n_pcs: int | None = None,
    key_added: str = "X_tsne",
    random_seed: int = 42,
    n_cores: int | None = None,
    use_model: "openTSNE.TSNEEmbedding" | str | None = None,
    save_path: str | None = None,
    return_model: bool = False,
    **kwargs,
):
    """Runs openTSNE on ``adata.obsm[use_rep]`` to compare SWNE with t-SNE,
    or adds cells to an existing embedding passed in ``use_model``.

    :param adata: AnnData object
    :type adata: AnnData
    :param use_rep: ``adata.obsm[use_rep]`` will be used as features, defaults to "X_pca"
    :type use_rep: str, optional
    :param n_pcs: use only the first ``n_pcs`` columns of the representation, defaults to None
    :type n_pcs: int | None, optional
    :param key_added: to ``adata.obsm[key_added]`` embedding will be saved, defaults to "X_tsne"
    :type key_added: str, optional
    :param random_seed: defaults to 42
    :type random_seed: int, optional
    :param use_model: openTSNE embedding or path to its pickle, defaults to None
    :type use_model: openTSNE.TSNEEmbedding | str | None, optional
    :param save_path: Filepath to save pickle of the openTSNE embedding, defaults to None
    :type save_path: str | None, optional
    :param return_model: If to return openTSNE embedding, defaults to False
    :type return_model: bool, optional
    """
    import pickle

    try:
        from openTSNE import TSNE
        from openTSNE import TSNEEmbedding
    except ImportError as exc:
        raise ImportError(
            "\nPlease install openTSNE:\n\n\tpip install openTSNE"
        ) from exc

    X = np.asarray(adata.obsm[use_rep]) if use_rep != "X" else _to_dense(adata.X)
    if n_pcs is not None:
        X = X[:, :n_pcs]

    if use_model is None:
        model = TSNE(
            random_state=random_seed, n_jobs=_n_cores(n_cores), **kwargs
        ).fit(X)
    else:
        if isinstance(use_model, str):
            with open(use_model, "rb") as model_file:
                use_model = pickle.load(model_file)
        if not isinstance(use_model, TSNEEmbedding):
            raise TypeError(
                "`use_model` should be a path to the model or the model itself."
            )
        logger.warning("Cells are added to the existing embedding, the result is a `PartialTSNEEmbedding`")
        model = use_model.transform(X)

    adata.obsm[key_added] = np.array(model)

    if save_path:
        with open(save_path, "wb") as model_file:
            pickle.dump(model, model_file, protocol=pickle.HIGHEST_PROTOCOL)
            logger.info("Model is saved in %s", save_path)

    if return_model:
        return model
