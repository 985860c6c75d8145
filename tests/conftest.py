import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from anndata import AnnData
from scipy.sparse import csr_matrix
from sklearn.decomposition import PCA

import swnepy as sw


N_CLUSTERS = 3
CELLS_PER_CLUSTER = 50
N_GENES = 100
MARKERS_PER_CLUSTER = 20


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture
def adata():
    """Poisson counts of 3 clusters, each with its own 20 up-regulated marker genes."""
    rng = np.random.default_rng(0)
    base = rng.gamma(2.0, 1.0, N_GENES) + 0.2

    X = []
    for c in range(N_CLUSTERS):
        mu = base.copy()
        mu[c * MARKERS_PER_CLUSTER : (c + 1) * MARKERS_PER_CLUSTER] *= 8
        X.append(rng.poisson(mu, size=(CELLS_PER_CLUSTER, N_GENES)))
    X = np.vstack(X).astype(np.float32)

    adata = AnnData(X=csr_matrix(X))
    adata.var_names = [f"gene_{i}" for i in range(N_GENES)]
    adata.obs_names = [f"cell_{i}" for i in range(X.shape[0])]
    adata.obs["clusters"] = pd.Categorical(
        np.repeat([f"c{c}" for c in range(N_CLUSTERS)], CELLS_PER_CLUSTER)
    )
    adata.obs["batch"] = np.tile(["a", "b"], X.shape[0] // 2)

    log_norm = np.log1p(X / X.sum(axis=1, keepdims=True) * 1e4)
    adata.obsm["X_pca"] = PCA(n_components=10, random_state=0).fit_transform(log_norm)
    return adata


@pytest.fixture
def adata_hvg(adata):
    adata.var["highly_variable"] = np.arange(N_GENES) < 80
    return adata


@pytest.fixture
def adata_nmf(adata_hvg):
    sw.pp.scale_counts(adata_hvg)
    sw.tl.run_nmf(adata_hvg, k=4, n_cores=1, random_seed=0)
    sw.pp.calc_snn(adata_hvg, k=10, prune_snn=1 / 15)
    return adata_hvg


@pytest.fixture
def adata_swne(adata_nmf):
    sw.tl.embed_swne(adata_nmf, alpha_exp=1.25, snn_exp=1.0, n_pull=3)
    return adata_nmf
