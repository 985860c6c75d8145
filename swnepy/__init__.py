"""
SWNE (Similarity Weighted Nonnegative Embedding) algorithm:

1. Normalization
    - library size scaling to the median library size
    - log(x + 1) (or Freeman-Tukey) transform
    - pagoda-like adjustment of gene variances by their overdispersion
        over the expected mean-variance trend

2. Non-negative matrix factorization of the overdispersed genes
    - A [genes, cells] ~ W [genes, k] x H [k, cells]
    - k picked by comparing the reconstruction error reduction per added factor
        with the one of a matrix with genes permuted across cells
    - initialization with absolute ICA components (default), nndsvd or random
    savings:
        - cell scores H (``obsm["X_nmf"]``)
        - gene loadings W (``varm["NMF"]``), all genes after projection

3. Shared nearest neighbors graph
    - k nearest neighbors in PCA space (a cell is its own neighbor)
    - Jaccard index of neighborhoods, pruned below a threshold

4. Embedding
    - pairwise (cosine) distances between factors projected to 2D with Sammon mapping
    - each cell at the average of factor coordinates weighted by its
        scaled scores of the top n_pull factors, raised to alpha_exp
    - cell coordinates smoothed over SNN neighbors (weights snn ** snn_exp)

5. Interpretation
    - genes embedded with their loadings the same way as cells
    - top genes per factor, loadings heatmap
"""

from . import preprocessing as pp
from . import tools as tl
from . import plotting as pl
from . import datasets

__version__ = "0.1.0"
