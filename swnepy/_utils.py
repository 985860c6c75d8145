# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd

from scipy import special, stats
from scipy.sparse import csr_matrix, diags, issparse
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import NMF, FastICA, non_negative_factorization
from sklearn.exceptions import ConvergenceWarning
from sklearn.neighbors import NearestNeighbors

import scanpy as sc

logger = logging.getLogger("swnepy")


NMF_INITS = ("ica", "nnsvd", "random")
NMF_LOSSES = {"mse": "frobenius", "mkl": "kullback-leibler"}
FACTOR_DISTS = {"cosine": "cosine", "euclidean": "euclidean", "pearson": "correlation"}
LOG_TINY = np.log(np.finfo(float).tiny)


def _n_cores(n_cores: int | None) -> int:
    return sc.settings.n_jobs if n_cores is None else n_cores


def _to_dense(X) -> np.ndarray:
    return X.toarray() if issparse(X) else np.asarray(X)


def _mean_var(X) -> tuple[np.ndarray, np.ndarray]:
    """Per-column mean and population variance for dense or sparse ``X``."""
    if issparse(X):
        mean = np.asarray(X.mean(axis=0)).ravel()
        mean_sq = np.asarray(X.multiply(X).mean(axis=0)).ravel()
    else:
        X = np.asarray(X)
        mean = X.mean(axis=0)
        mean_sq = (X**2).mean(axis=0)
    return mean, np.maximum(mean_sq - mean**2, 0)


def _factor_names(k: int) -> list[str]:
    return [f"factor_{i + 1}" for i in range(k)]


def _params(**kwargs) -> dict:
    # None can not be written to h5ad
    return {key: value for key, value in kwargs.items() if value is not None}


def _normalize_bounded(X: np.ndarray, axis: int = 0) -> np.ndarray:
    """Min-max scales ``X`` to [0, 1] along ``axis``, constant slices become 0."""
    X_min = X.min(axis=axis, keepdims=True)
    X_range = X.max(axis=axis, keepdims=True) - X_min
    X_range[X_range == 0] = 1
    return (X - X_min) / X_range


def _fit_loess(x: np.ndarray, y: np.ndarray, span: float = 0.3, degree: int = 2) -> np.ndarray:
    """
    Loess fit of ``y`` on ``x``, the span is widened until skmisc manages to fit it.

    :return: fitted values at ``x``
    """
    try:
        from skmisc.loess import loess
    except ImportError as e:
        raise ImportError("\nPlease install scikit-misc:\n\n\tpip install scikit-misc") from e

    span_value = span
    while True:
        try:
            model = loess(x, y, span=span_value, degree=degree)
            model.fit()
            break
        except ValueError:
            if span_value >= 1:
                raise
            span_value = min(span_value + 0.1, 1.0)
    if span_value > span:
        logger.info("Loess span is adjusted from %.2f to %.2f to avoid fitting errors", span, span_value)
    return np.asarray(model.outputs.fitted_values)


def _f_logsf(x: np.ndarray, df: int) -> np.ndarray:
    """
    Log survival function of F(df, df) that stays finite far in the tail:
    where the exact value underflows, Paulson's normal approximation is used.
    """
    with np.errstate(divide="ignore"):
        lp = stats.f.logsf(x, df, df)
    tail = ~(lp > LOG_TINY)
    if tail.any():
        a = 2 / (9 * df)
        xt = np.cbrt(x[tail])
        z = (1 - a) * (xt - 1) / np.sqrt(a * (xt**2 + 1))
        # exact values above LOG_TINY are always less extreme
        lp[tail] = np.minimum(special.log_ndtr(-z), LOG_TINY)
    return lp


def _chi2_isf_log(lp: np.ndarray, df: int) -> np.ndarray:
    """
    Upper chi-squared quantile for log p-values ``lp``.
    Below LOG_TINY the Wilson-Hilferty approximation is used.
    """
    q = np.empty_like(lp)
    exact = lp > LOG_TINY
    q[exact] = stats.chi2.isf(np.exp(lp[exact]), df)
    if (~exact).any():
        a = 2 / (9 * df)
        z = -special.ndtri_exp(lp[~exact])
        q[~exact] = np.maximum(
            df * (1 - a + z * np.sqrt(a)) ** 3, stats.chi2.isf(np.finfo(float).tiny, df)
        )
    return q


def _adjust_variance(
    X,
    span: float = 0.3,
    min_adjusted_variance: float = 1e-3,
    max_adjusted_variance: float = 1e3,
) -> tuple[np.ndarray, pd.DataFrame]:
    """
    Pagoda-like gene variance normalization.

    The log-variance of each gene is compared with the expected log-variance
    for its log-mean (loess fit over genes). The residual overdispersion is
    tested with an F-test and each gene is rescaled so that its variance equals
    the corresponding chi-squared quantile. Both are computed on the log scale,
    so strongly overdispersed genes keep finite ``lp`` and ``qv``.

    :return: rescaled matrix and per-gene statistics
        (``m``, ``v``, ``res``, ``lp``, ``qv``, ``gsf``), indexed as columns of ``X``
    """
    n_cells = X.shape[0]

    mean, var = _mean_var(X)
    var = var * n_cells / max(n_cells - 1, 1)
    expressed = (mean > 0) & (var > 0)

    m = np.full(X.shape[1], np.nan)
    v = np.full(X.shape[1], np.nan)
    m[expressed] = np.log(mean[expressed])
    v[expressed] = np.log(var[expressed])

    # expected log-variance given log-mean
    if expressed.sum() >= 10:
        fitted = _fit_loess(m[expressed], v[expressed], span=span)
    else:
        fitted = np.full(expressed.sum(), np.median(v[expressed]) if expressed.any() else 0.0)

    res = np.full(X.shape[1], np.nan)
    res[expressed] = v[expressed] - fitted

    # log p-value of overdispersion, F-test against the expected variance
    lp = np.zeros(X.shape[1])
    lp[expressed] = _f_logsf(np.exp(res[expressed]), n_cells)

    qv = np.zeros(X.shape[1])
    qv[expressed] = _chi2_isf_log(lp[expressed], max(n_cells - 1, 1)) / n_cells
    qv = np.clip(qv, min_adjusted_variance, max_adjusted_variance)

    gsf = np.zeros(X.shape[1])
    gsf[expressed] = np.sqrt(qv[expressed] / var[expressed])

    if issparse(X):
        X_adj = csr_matrix(X @ diags(gsf))
    else:
        X_adj = np.asarray(X) * gsf[np.newaxis]

    stats_df = pd.DataFrame(
        {"m": m, "v": v, "res": res, "lp": lp, "qv": qv, "gsf": gsf}
    )
    return X_adj, stats_df


def _nmf_init_ica(A: np.ndarray, k: int, seed: int | None):
    """Absolute ICA sources and mixing matrix as NMF starting point."""
    ica = FastICA(n_components=k, random_state=seed, whiten="unit-variance")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        # [cells, k]
        S = ica.fit_transform(A.T)
    # [genes, k], [k, cells]
    W = np.abs(ica.mixing_)
    H = np.abs(S.T)

    # rescale so that W @ H is on the scale of A
    scale = np.sqrt(A.mean() / max((W @ H).mean(), np.finfo(float).tiny))
    return W * scale, H * scale


def _run_nmf(
    A,
    k: int,
    alpha: float = 0.0,
    init: str = "ica",
    loss: str = "mse",
    max_iter: int = 500,
    tol: float = 1e-4,
    seed: int | None = None,
):
    """
    Factorizes A [genes, cells] into W [genes, k] and H [k, cells].

    :return: W, H, reconstruction error, number of iterations
    """
    if init not in NMF_INITS:
        raise ValueError(f"`init` should be one of {NMF_INITS}, got '{init}'.")
    if loss not in NMF_LOSSES:
        raise ValueError(f"`loss` should be one of {tuple(NMF_LOSSES)}, got '{loss}'.")

    beta_loss = NMF_LOSSES[loss]
    nmf_kwargs = dict(
        n_components=k,
        alpha_W=alpha,
        alpha_H="same",
        l1_ratio=1.0,
        beta_loss=beta_loss,
        # coordinate descent only works for frobenius
        solver="cd" if beta_loss == "frobenius" else "mu",
        max_iter=max_iter,
        tol=tol,
        random_state=seed,
    )

    A = A.astype(np.float64)
    if init == "ica":
        W0, H0 = _nmf_init_ica(_to_dense(A), k, seed)
        if beta_loss != "frobenius":
            # multiplicative updates never leave zero
            W0 += np.finfo(np.float64).eps
            H0 += np.finfo(np.float64).eps
        model = NMF(init="custom", **nmf_kwargs)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ConvergenceWarning)
            W = model.fit_transform(A, W=W0, H=H0)
    else:
        model = NMF(init="nndsvd" if init == "nnsvd" else "random", **nmf_kwargs)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ConvergenceWarning)
            W = model.fit_transform(A)

    if any(issubclass(w.category, ConvergenceWarning) for w in caught):
        logger.warning(
            "NMF with k=%i didn't converge in %i iterations. "
            "Consider increasing max_iter parameter value",
            k,
            max_iter,
        )

    return W, model.components_, model.reconstruction_err_, model.n_iter_


def _reconstruction_mse(A, W: np.ndarray, H: np.ndarray) -> float:
    return float(np.mean((_to_dense(A) - W @ H) ** 2))


def _randomize_rows(A, seed: int | None) -> np.ndarray:
    """Independently permutes every row of A (genes across cells)."""
    rng = np.random.default_rng(seed)
    return rng.permuted(_to_dense(A), axis=1)


def _num_factors_worker(A, A_null, k, loss, init, max_iter, seed):
    W, H, _, _ = _run_nmf(A, k, init=init, loss=loss, max_iter=max_iter, seed=seed)
    W_null, H_null, _, _ = _run_nmf(
        A_null, k, init=init, loss=loss, max_iter=max_iter, seed=seed
    )
    return k, _reconstruction_mse(A, W, H), _reconstruction_mse(A_null, W_null, H_null)


def _project_genes(X, H: np.ndarray, loss: str = "mse", max_iter: int = 500):
    """Solves X [genes, cells] ~ W @ H for non-negative W with H held fixed."""
    beta_loss = NMF_LOSSES[loss]
    X = X.astype(np.float64)
    H = np.ascontiguousarray(H, dtype=np.float64)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        W, _, _ = non_negative_factorization(
            X,
            H=H,
            n_components=H.shape[0],
            update_H=False,
            beta_loss=beta_loss,
            solver="cd" if beta_loss == "frobenius" else "mu",
            max_iter=max_iter,
        )
    return W


def _classical_mds(D: np.ndarray, n_components: int = 2) -> np.ndarray:
    N = D.shape[0]
    J = np.eye(N) - np.ones((N, N)) / N
    B = -0.5 * J @ (D**2) @ J
    evals, evecs = np.linalg.eigh(B)
    idx = np.argsort(evals)[::-1][:n_components]
    return evecs[:, idx] * np.sqrt(np.maximum(evals[idx], 0))


def _sammon(
    D: np.ndarray,
    n_components: int = 2,
    max_iter: int = 100,
    max_halves: int = 20,
    tol: float = 1e-9,
    seed: int | None = None,
) -> tuple[np.ndarray, float]:
    """
    Sammon's non-linear mapping, pseudo-Newton optimization of Sammon's stress
    started from classical scaling.

    :param D: [N, N] symmetric distance matrix
    :return: [N, n_components] coordinates and final stress
    """
    N = D.shape[0]
    D = np.array(D, dtype=np.float64)

    # identical points would give infinite stress
    off_diagonal = ~np.eye(N, dtype=bool)
    if (D[off_diagonal] <= 0).any():
        eps = D[off_diagonal & (D > 0)].min() * 1e-3 if (D > 0).any() else 1e-6
        D[off_diagonal & (D <= 0)] = eps

    scale = 0.5 / D[off_diagonal].sum()
    D = D + np.eye(N)
    Dinv = 1 / D

    y = _classical_mds(D - np.eye(N), n_components)
    if np.allclose(y, 0) or np.linalg.matrix_rank(y) < n_components:
        rng = np.random.default_rng(seed)
        y = y + rng.normal(scale=1e-2, size=y.shape)

    one = np.ones((N, n_components))
    d = squareform(pdist(y)) + np.eye(N)
    dinv = 1 / d
    E = np.sum(((D - d) ** 2) * Dinv)

    for _ in range(max_iter):
        if E == 0:
            break
        delta = dinv - Dinv
        deltaone = delta @ one
        g = delta @ y - y * deltaone
        dinv3 = dinv**3
        y2 = y**2
        H = dinv3 @ y2 - deltaone - 2 * y * (dinv3 @ y) + y2 * (dinv3 @ one)
        s = -g / np.abs(H)
        y_old = y

        for _ in range(max_halves):
            y = y_old + s
            d = squareform(pdist(y)) + np.eye(N)
            dinv = 1 / d
            E_new = np.sum(((D - d) ** 2) * Dinv)
            if E_new < E:
                break
            s = s * 0.5
        else:
            y = y_old
            break

        if abs((E - E_new) / E) < tol:
            E = E_new
            break
        E = E_new

    return y, float(E * scale)


def _factor_distances(H: np.ndarray, dist_use: str = "cosine") -> np.ndarray:
    if dist_use not in FACTOR_DISTS:
        raise ValueError(
            f"`dist_use` should be one of {tuple(FACTOR_DISTS)}, got '{dist_use}'."
        )
    return squareform(pdist(H, metric=FACTOR_DISTS[dist_use]))


def _project_factors(
    H: np.ndarray,
    dist_use: str = "cosine",
    proj_method: str = "sammon",
    seed: int | None = None,
) -> np.ndarray:
    """[k, cells] factor scores -> [k, 2] factor coordinates within [0, 1]."""
    D = _factor_distances(H, dist_use)

    if proj_method == "sammon":
        H_coords, stress = _sammon(D, n_components=2, seed=seed)
        logger.info("Sammon mapping stress: %.4f", stress)
    elif proj_method == "mds":
        from sklearn.manifold import MDS

        mds = MDS(n_components=2, dissimilarity="precomputed", random_state=seed)
        H_coords = mds.fit_transform(D)
    else:
        raise ValueError("`proj_method` should be `sammon` or `mds`.")

    return _normalize_bounded(H_coords, axis=0)


def _weighted_coords(
    weights: np.ndarray, coords: np.ndarray, alpha_exp: float, n_pull: int | None
) -> np.ndarray:
    """
    Places every row of ``weights`` [N, k] at the weighted average of ``coords`` [k, 2],
    keeping only the ``n_pull`` largest weights of each row.
    """
    weights = np.array(weights, dtype=np.float64)
    k = weights.shape[1]

    if n_pull is not None and n_pull < k:
        drop = np.argsort(-weights, axis=1)[:, n_pull:]
        np.put_along_axis(weights, drop, 0, axis=1)

    weights = weights**alpha_exp
    total = weights.sum(axis=1, keepdims=True)

    # [N, 2] = [N, k] x [k, 2]
    out = np.divide(
        weights @ coords, total, out=np.empty((weights.shape[0], 2)), where=total > 0
    )
    # rows without any weight go to the center of the factors
    out[total[:, 0] == 0] = coords.mean(axis=0)
    return out


def _smooth_with_snn(
    snn: csr_matrix, coords: np.ndarray, snn_exp: float = 1.0
) -> np.ndarray:
    snn = csr_matrix(snn, dtype=np.float64, copy=True)
    snn.data **= snn_exp
    row_sums = np.asarray(snn.sum(axis=1)).ravel()
    row_sums[row_sums == 0] = 1
    # [N, 2] = [N, N] x [N, 2]
    return np.asarray(diags(1 / row_sums) @ snn @ coords)


def _compute_snn(X: np.ndarray, k: int = 10, prune_snn: float = 1 / 15, n_jobs=None):
    """Shared nearest neighbors Jaccard similarity, each cell counts as its own neighbor."""
    N = X.shape[0]
    k = min(k, N)

    nn = NearestNeighbors(n_neighbors=k, n_jobs=n_jobs)
    nn.fit(X)
    _, knn_idx = nn.kneighbors(X)

    # [N, N] with k ones in each row
    knn = csr_matrix(
        (np.ones(N * k), knn_idx.ravel(), np.arange(0, N * k + 1, k)), shape=(N, N)
    )

    n_shared = csr_matrix(knn @ knn.T, dtype=np.float64)
    n_shared.data = n_shared.data / (2 * k - n_shared.data)
    n_shared.data[n_shared.data < prune_snn] = 0
    n_shared.eliminate_zeros()
    return n_shared


def _dgcmatrix_to_csr(mat) -> tuple[csr_matrix, list | None, list | None]:
    """Converts an R Matrix::dgCMatrix (rpy2 RS4) to a scipy CSR matrix."""
    from scipy.sparse import csc_matrix

    slots = mat.slots
    shape = tuple(int(x) for x in slots["Dim"])
    X = csc_matrix(
        (
            np.asarray(slots["x"], dtype=np.float64),
            np.asarray(slots["i"], dtype=np.int64),
            np.asarray(slots["p"], dtype=np.int64),
        ),
        shape=shape,
    )

    dimnames = slots["Dimnames"]
    names = []
    for i in range(2):
        try:
            names.append([str(x) for x in dimnames[i]] or None)
        except TypeError:
            # NULL dimnames
            names.append(None)
    return X.tocsr(), names[0], names[1]
