"""
Resampling test for the significance of principal components (JackStraw).

A small fraction of the genes used for PCA is permuted across cells, PCA
is rerun, and the loadings of the permuted genes give a null distribution.
Genes whose observed loadings exceed the null are taken as evidence that a
component carries real structure. PCs are then scored by comparing how many
genes have tiny empirical p-values with how many a uniform distribution
would give.

```python
sc.tl.pca(adata)
jackstraw(adata, dims=20, num_replicate=100)
score_jackstraw(adata)
significant_pcs(adata)
```
"""

import numpy as np
import scipy.sparse
import scipy.stats
from sklearn.decomposition import PCA


def _pca_features(adata):
    """Boolean mask of genes that were used for the PCA."""
    params = adata.uns.get("pca", {}).get("params", {})
    mask_var = params.get("mask_var", params.get("use_highly_variable"))
    if mask_var is True:
        mask_var = "highly_variable"
    if isinstance(mask_var, str) and mask_var in adata.var.columns:
        return adata.var[mask_var].to_numpy().astype(bool)
    # genes not used get zero loadings
    return np.any(adata.varm["PCs"] != 0, axis=1)


def jackstraw(adata, dims=20, num_replicate=100, prop_freq=0.01, random_state=0):
    """Empirical p-values of gene loadings from permuted PCA replicates.

    Parameters
    ----------
    adata : AnnData
        Scaled data with PCA already run (`obsm['X_pca']`, `varm['PCs']`).
    dims : int, optional
        Number of PCs to test, clamped to the number computed.
    num_replicate : int, optional
        Number of permutation replicates.
    prop_freq : float, optional
        Proportion of genes permuted in each replicate, at least 3 genes are used.
    random_state : int, optional
        Seed for gene choice, permutation and PCA.

    Returns
    -------
    np.ndarray
        Empirical p-values, genes x dims, also stored in
        `adata.uns['jackstraw']['empirical_pvalues']`.
    """
    if "X_pca" not in adata.obsm or "PCs" not in adata.varm:
        raise ValueError("no PCA results in adata, run PCA first")
    if num_replicate < 1:
        raise ValueError(f"num_replicate must be positive, got {num_replicate}")
    if not 0 < prop_freq <= 1:
        raise ValueError(f"prop_freq must be in (0, 1], got {prop_freq}")

    dims = int(min(dims, adata.varm["PCs"].shape[1]))
    features = _pca_features(adata)
    loadings = np.abs(adata.varm["PCs"][features, :dims])

    data = adata.X[:, features]
    if scipy.sparse.issparse(data):
        data = data.toarray()
    data = np.asarray(data, dtype=np.float64)
    n_features = data.shape[1]
    if n_features < 3:
        raise ValueError(f"need at least 3 genes for jackstraw, got {n_features}")
    n_rand = max(3, int(n_features * prop_freq))

    rng = np.random.default_rng(random_state)
    null = np.zeros((num_replicate * n_rand, dims))
    for i in range(num_replicate):
        rand_genes = rng.choice(n_features, size=n_rand, replace=False)
        data_mod = data.copy()
        data_mod[:, rand_genes] = rng.permuted(data[:, rand_genes], axis=0)

        pca = PCA(
            n_components=dims,
            svd_solver="arpack",
            random_state=int(rng.integers(2**31 - 1)),
        )
        pca.fit(data_mod)
        null[i * n_rand : (i + 1) * n_rand] = np.abs(pca.components_[:, rand_genes].T)

    # fraction of null loadings above each observed loading, per PC
    empirical = np.zeros((n_features, dims))
    for pc in range(dims):
        null_pc = np.sort(null[:, pc])
        n_below = np.searchsorted(null_pc, loadings[:, pc], side="right")
        empirical[:, pc] = (len(null_pc) - n_below) / len(null_pc)

    adata.uns["jackstraw"] = {
        "empirical_pvalues": empirical,
        "features": adata.var_names[features].to_numpy().astype(str),
        "params": {
            "dims": dims,
            "num_replicate": num_replicate,
            "prop_freq": prop_freq,
            "n_permuted": n_rand,
            "random_state": random_state,
        },
    }
    return empirical


def score_pvalues(pvalues, score_thresh=1e-5):
    """Score each column of gene p-values against a uniform distribution.

    The number of genes with p <= score_thresh is compared with the number
    expected, floor(n * score_thresh), by a two-sample test of proportions
    (chi-square with continuity correction). Columns with no passing genes
    score 1.
    """
    pvalues = np.asarray(pvalues)
    n = pvalues.shape[0]
    expected = int(np.floor(n * score_thresh))
    scores = np.ones(pvalues.shape[1])
    for pc in range(pvalues.shape[1]):
        observed = int(np.sum(pvalues[:, pc] <= score_thresh))
        if observed == 0:
            continue
        table = np.array([[observed, n - observed], [expected, n - expected]])
        _, p, _, _ = scipy.stats.chi2_contingency(table, correction=True)
        scores[pc] = p
    return scores


def score_jackstraw(adata, score_thresh=1e-5):
    """Score PCs from `jackstraw` results, stored in `adata.uns['jackstraw']['pc_scores']`."""
    if "jackstraw" not in adata.uns:
        raise ValueError("no jackstraw results in adata.uns, run jackstraw first")

    js = adata.uns["jackstraw"]
    scores = score_pvalues(js["empirical_pvalues"], score_thresh=score_thresh)
    js["pc_scores"] = scores
    js["params"]["score_thresh"] = score_thresh
    return scores


def significant_pcs(adata, alpha=0.05):
    """Number of leading PCs with jackstraw scores below alpha."""
    js = adata.uns.get("jackstraw", {})
    if "pc_scores" not in js:
        raise ValueError("no jackstraw scores in adata.uns, run score_jackstraw first")

    n = 0
    for s in js["pc_scores"]:
        if s >= alpha:
            break
        n += 1
    return n
