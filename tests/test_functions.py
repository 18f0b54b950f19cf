import numpy as np
import pandas as pd
import pytest
import scanpy as sc
import scipy.sparse
import scexplore.functions as scfunc
from scexplore.celltypemarkers import CellTypeMarkers
from conftest import make_counts


@pytest.fixture(scope="module")
def pbmc():
    adata = sc.datasets.pbmc68k_reduced()
    # add some random sample group annotations for testing
    adata.obs["sample"] = ["A"] * (adata.n_obs // 2) + ["B"] * (
        adata.n_obs - adata.n_obs // 2
    )
    return adata


@pytest.fixture(scope="module")
def rna():
    """Planted counts taken through QC, normalisation and PCA."""
    adata = make_counts()
    scfunc.compute_qc_metrics(adata)
    scfunc.normalise(adata)
    scfunc.find_variable_features(adata, n_top_genes=100, flavor="seurat")
    scfunc.scale_data(adata)
    scfunc.run_pca(adata, n_comps=20)
    return adata


def test_plot_nxy():
    assert scfunc.plot_nxy(1) == (1, 1)
    assert scfunc.plot_nxy(5) == (3, 2)
    x, y = scfunc.plot_nxy(20)
    assert x * y >= 20


def test_guess_human_or_mouse(pbmc):
    assert scfunc.guess_human_or_mouse(pbmc) == "human"


def test_guess_mouse():
    adata = make_counts()
    adata.var_names = [g.capitalize() for g in adata.var_names]
    assert scfunc.guess_human_or_mouse(adata) == "mouse"


def test_find_sample_dirs(tenx_dir):
    dirs = scfunc.find_sample_dirs(tenx_dir)
    assert list(dirs.keys()) == ["A", "B"]
    # a single matrix directory is one sample
    assert list(scfunc.find_sample_dirs(tenx_dir / "A").keys()) == ["A"]


def test_find_sample_dirs_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        scfunc.find_sample_dirs(tmp_path / "nothing_here")
    with pytest.raises(FileNotFoundError):
        scfunc.find_sample_dirs(tmp_path)


def test_read_samples(tenx_dir):
    adata = scfunc.read_samples(tenx_dir)
    assert adata.n_obs == 300
    assert adata.n_vars == 200
    assert adata.obs_names.is_unique
    assert list(adata.obs["sample"].cat.categories) == ["A", "B"]
    assert (adata.obs["sample"] == "A").sum() == 150
    assert adata.obs_names[0].startswith("A_")
    assert scipy.sparse.issparse(adata.X)
    assert adata.uns["sample_order"] == ["A", "B"]
    assert "MT-CO1" in adata.var_names


def test_read_samples_legacy(legacy_dir):
    assert list(scfunc.find_sample_dirs(legacy_dir).keys()) == ["A", "B"]
    adata = scfunc.read_samples(legacy_dir)
    assert adata.n_obs == 300
    assert adata.n_vars == 200
    assert (adata.obs["sample"] == "B").sum() == 150
    assert adata.obs_names[-1].startswith("B_")
    assert "MT-CO1" in adata.var_names


def test_read_samples_cellranger(cellranger_dir):
    dirs = scfunc.find_sample_dirs(cellranger_dir)
    assert list(dirs.keys()) == ["A", "B"]
    assert dirs["A"].name == "filtered_feature_bc_matrix"
    adata = scfunc.read_samples(cellranger_dir)
    assert adata.n_obs == 300
    assert list(adata.obs["sample"].cat.categories) == ["A", "B"]
    assert (adata.obs["sample"] == "A").sum() == 150


def test_read_samples_subset(tenx_dir):
    adata = scfunc.read_samples(tenx_dir, samples=["B"])
    assert adata.n_obs == 150
    assert set(adata.obs["sample"]) == {"B"}
    with pytest.raises(ValueError):
        scfunc.read_samples(tenx_dir, samples=["C"])


def test_get_plot_list(pbmc):
    result = scfunc.get_plot_list(pbmc)
    assert isinstance(result, list)
    assert len(scfunc.get_plot_list()) == 2


def test_compute_qc_metrics(counts):
    scfunc.compute_qc_metrics(counts)
    assert "pct_counts" in counts.uns
    for col in ["n_genes_by_counts", "total_counts", "pct_counts_mt",
                "pct_counts_ribosomal", "pct_counts_in_top_1_genes"]:
        assert col in counts.obs.columns
    assert counts.var["mt"].sum() == 3
    assert counts.var["ribosomal"].sum() == 2
    assert scfunc.get_plot_list(counts)[1] == ["pct_counts_ribosomal", "pct_counts_malat", "pct_counts_mt"]


def test_filter_cells_genes(counts):
    counts.X[:, 10] = 0
    counts.X.eliminate_zeros()
    scfunc.filter_cells_genes(counts, min_genes=10, min_cells=3)
    assert "meta_filter_cells_genes" in counts.uns
    assert "GENE5" not in counts.var_names
    assert counts.n_vars < 200
    assert counts.n_obs == 300


def test_qc_filter(counts):
    scfunc.compute_qc_metrics(counts)
    n_genes = counts.obs["n_genes_by_counts"]
    lo, hi = np.percentile(n_genes, [10, 90])
    expected = ((n_genes > lo) & (n_genes < hi) & (counts.obs["pct_counts_mt"] < 50)).sum()

    filtered = scfunc.qc_filter(counts, min_genes=lo, max_genes=hi, max_pct_mt=50)
    assert filtered.n_obs == expected
    assert filtered.obs["n_genes_by_counts"].min() > lo
    assert filtered.obs["n_genes_by_counts"].max() < hi
    meta = filtered.uns["meta_qc_filter"]
    assert meta["n_cells_before"] == counts.n_obs
    assert meta["n_cells_after"] == expected
    assert meta["kept_per_sample"]["after"].sum() == expected
    # input is not changed
    assert counts.n_obs == 300


def test_qc_filter_no_cells(counts):
    scfunc.compute_qc_metrics(counts)
    with pytest.raises(ValueError):
        scfunc.qc_filter(counts, min_genes=1000, max_genes=2000)


def test_qc_mask_needs_metrics(counts):
    with pytest.raises(ValueError):
        scfunc.qc_mask(counts)


def test_trim_outliers(counts):
    scfunc.compute_qc_metrics(counts)
    mask = scfunc.trim_outliers(counts, pct=95)
    assert len(mask) == counts.n_obs
    assert 0 < mask.sum() < counts.n_obs

    mask = scfunc.trim_outliers(counts, groupby="sample", pct=100)
    assert mask.all()


def test_trim_outliers_extra_mask(counts):
    scfunc.compute_qc_metrics(counts)
    mask = scfunc.trim_outliers(counts, extra_mask={"pct_counts_mt": [100, "max"]})
    assert mask.all()
    mask = scfunc.trim_outliers(counts, extra_mask={"pct_counts_mt": [0, "min"]})
    assert mask.sum() == (counts.obs["pct_counts_mt"] > 0).sum()
    with pytest.raises(ValueError):
        scfunc.trim_outliers(counts, extra_mask={"pct_counts_mt": [0, "below"]})


def test_normalise(counts):
    raw = counts.X.copy()
    scfunc.normalise(counts, target_sum=1e4)
    assert (counts.layers["counts"] != raw).nnz == 0
    totals = np.asarray(counts.layers["log1p_1e4"].expm1().sum(axis=1)).flatten()
    np.testing.assert_allclose(totals, 1e4, rtol=1e-3)


def test_find_variable_features(counts):
    scfunc.normalise(counts)
    scfunc.find_variable_features(counts, n_top_genes=50, flavor="seurat")
    assert counts.var["highly_variable"].sum() == 50


def test_find_variable_features_needs_counts(counts):
    with pytest.raises(ValueError):
        scfunc.find_variable_features(counts, flavor="seurat_v3")


def test_run_pca(rna):
    assert rna.obsm["X_pca"].shape == (300, 20)
    assert rna.varm["PCs"].shape == (200, 20)
    # non-variable genes are not used
    assert np.all(rna.varm["PCs"][~rna.var["highly_variable"].to_numpy()] == 0)


def test_run_pca_clamps(rna):
    tmp = rna[:15].copy()
    n_comps = scfunc.run_pca(tmp, n_comps=50)
    assert n_comps == 14


def test_cluster_cells_and_umap(rna):
    scfunc.cluster_cells(rna, n_neighbors=15, n_pcs=5, resolution=0.5)
    categories = list(rna.obs["leiden"].cat.categories)
    assert categories == [str(i) for i in range(len(categories))]
    sizes = rna.obs["leiden"].value_counts().reindex(categories).to_numpy()
    assert np.all(np.diff(sizes) <= 0)
    assert rna.uns["meta_cluster_cells"]["n_pcs"] == 5

    scfunc.run_umap(rna)
    assert rna.obsm["X_umap"].shape == (300, 2)


def test_write_h5ad(rna, tmp_path):
    path = scfunc.write_h5ad(rna, tmp_path / "results", "test")
    assert path.is_file()
    back = sc.read_h5ad(path)
    assert back.shape == rna.shape


def test_plot_qc_violins(counts):
    scfunc.compute_qc_metrics(counts)
    fig = scfunc.plot_qc_violins(counts, groupby="sample")
    titles = [a.get_title() for a in fig.axes if a.axison]
    assert titles == [k for row in scfunc.get_plot_list(counts) for k in row]

    fig = scfunc.plot_qc_violins(counts, keys=["total_counts", "not_a_column"], groupby="sample")
    assert [a.get_title() for a in fig.axes if a.axison] == ["total_counts"]


def test_plot_qc_scatter(counts):
    scfunc.compute_qc_metrics(counts)
    fig = scfunc.plot_qc_scatter(counts, max_pct_mt=5, min_genes=50, max_genes=150)
    assert fig is not None


def test_plot_gene_counts(counts):
    scfunc.compute_qc_metrics(counts)
    mask = scfunc.qc_mask(counts, min_genes=100, max_genes=150, max_pct_mt=50)
    fig = scfunc.plot_gene_counts(counts, mask=mask)
    assert fig is not None


def test_plot_top_genes(counts):
    fig = scfunc.plot_top_genes(counts)
    assert fig is not None


def test_plot_umaps(pbmc):
    fig = scfunc.plot_umaps(pbmc)
    assert fig is not None


def test_plot_cell_counts(pbmc):
    fig = scfunc.plot_cell_counts(pbmc, y="bulk_labels")
    assert fig is not None


def test_get_highest_expr_cluster(rna):
    cluster = scfunc.get_highest_expr_cluster(rna, "GENE15", groupby="group")
    assert cluster == "1"
    with pytest.raises(ValueError):
        scfunc.get_highest_expr_cluster(rna, "NOTAGENE", groupby="group")


def test_get_vmax(pbmc):
    markers = CellTypeMarkers("human")
    markers.filter_genes(gene_names=pbmc.var_names.tolist())
    for k in markers.keys():
        vmax = scfunc.get_vmax(pbmc, markers=markers[k])
        assert isinstance(vmax, list)
        assert len(vmax) == len(markers[k])
        assert all(v >= 0.1 for v in vmax)
