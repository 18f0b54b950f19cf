import numpy as np
import pytest
import scexplore.functions as scfunc
import scexplore.jackstraw as scjs
from conftest import make_counts


@pytest.fixture(scope="module")
def rna():
    adata = make_counts()
    scfunc.normalise(adata)
    scfunc.find_variable_features(adata, n_top_genes=100, flavor="seurat")
    scfunc.scale_data(adata)
    scfunc.run_pca(adata, n_comps=10)
    scjs.jackstraw(adata, dims=5, num_replicate=10, prop_freq=0.01)
    scjs.score_jackstraw(adata)
    return adata


def test_jackstraw_results(rna):
    js = rna.uns["jackstraw"]
    pvals = js["empirical_pvalues"]
    assert pvals.shape == (100, 5)
    assert len(js["features"]) == 100
    assert set(js["features"]) == set(rna.var_names[rna.var["highly_variable"]])
    assert np.all((pvals >= 0) & (pvals <= 1))


def test_jackstraw_min_permuted(rna):
    # 1% of 100 genes is 1, at least 3 are used
    assert rna.uns["jackstraw"]["params"]["n_permuted"] == 3


def test_jackstraw_planted_structure(rna):
    scores = rna.uns["jackstraw"]["pc_scores"]
    assert scores.shape == (5,)
    assert scores[0] < 0.05
    assert scjs.significant_pcs(rna) >= 1


def test_jackstraw_reproducible(rna):
    tmp = rna.copy()
    again = scjs.jackstraw(tmp, dims=5, num_replicate=10, prop_freq=0.01)
    np.testing.assert_array_equal(again, rna.uns["jackstraw"]["empirical_pvalues"])


def test_jackstraw_dims_clamped(rna):
    tmp = rna.copy()
    pvals = scjs.jackstraw(tmp, dims=50, num_replicate=2)
    assert pvals.shape[1] == 10


def test_jackstraw_needs_pca():
    adata = make_counts()
    with pytest.raises(ValueError):
        scjs.jackstraw(adata)


def test_jackstraw_bad_params(rna):
    tmp = rna.copy()
    with pytest.raises(ValueError):
        scjs.jackstraw(tmp, num_replicate=0)
    with pytest.raises(ValueError):
        scjs.jackstraw(tmp, prop_freq=0)


def test_score_pvalues():
    pvals = np.ones((1000, 3))
    pvals[:100, 0] = 0
    pvals[:1, 1] = 0
    scores = scjs.score_pvalues(pvals, score_thresh=1e-5)
    assert scores[0] < 1e-10
    assert 0 < scores[1] <= 1
    # no gene passes
    assert scores[2] == 1


def test_score_needs_jackstraw():
    adata = make_counts()
    with pytest.raises(ValueError):
        scjs.score_jackstraw(adata)
    with pytest.raises(ValueError):
        scjs.significant_pcs(adata)


def test_significant_pcs_stops_at_first():
    adata = make_counts()
    adata.uns["jackstraw"] = {"pc_scores": np.array([1e-10, 1e-3, 0.5, 1e-8])}
    assert scjs.significant_pcs(adata) == 2
    assert scjs.significant_pcs(adata, alpha=1e-5) == 1
