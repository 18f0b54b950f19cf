import gzip
import shutil

import matplotlib

matplotlib.use("Agg")

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.io
import scipy.sparse


def make_counts(n_per_group=100, n_groups=3, n_genes=200, n_markers=10, seed=0):
    """Poisson counts with n_groups planted clusters.

    Group g has raised expression of GENE{g * n_markers} to
    GENE{(g + 1) * n_markers - 1}. Cells alternate between samples A and B.
    """
    rng = np.random.default_rng(seed)
    genes = ["MT-CO1", "MT-ND1", "MT-ATP6", "RPL3", "RPS6"]
    genes += [f"GENE{i}" for i in range(n_genes - len(genes))]
    base = rng.gamma(2.0, 0.5, size=n_genes)

    counts = []
    groups = []
    for g in range(n_groups):
        lam = np.tile(base, (n_per_group, 1))
        lam[:, 5 + g * n_markers : 5 + (g + 1) * n_markers] *= 10
        counts.append(rng.poisson(lam))
        groups += [str(g)] * n_per_group

    n_cells = n_per_group * n_groups
    adata = ad.AnnData(
        X=scipy.sparse.csr_matrix(np.vstack(counts).astype(np.float32)),
        obs=pd.DataFrame(
            {
                "group": pd.Categorical(groups),
                "sample": pd.Categorical(np.where(np.arange(n_cells) % 2 == 0, "A", "B")),
            },
            index=[f"cell{i}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(index=genes),
    )
    return adata


def write_10x(adata, path, legacy=False):
    """Write counts in adata as a 10x matrix directory.

    v3 is gzipped with features.tsv, legacy is plain with a two column genes.tsv.
    """
    path.mkdir(parents=True, exist_ok=True)
    mtx = scipy.sparse.coo_matrix(adata.X.T).astype(np.int64)
    scipy.io.mmwrite(str(path / "matrix.mtx"), mtx)

    features = pd.DataFrame(
        {
            "id": [f"ENSG{i:011d}" for i in range(adata.n_vars)],
            "name": adata.var_names,
            "type": "Gene Expression",
        }
    )
    barcodes = pd.Series(adata.obs_names)
    if legacy:
        features[["id", "name"]].to_csv(path / "genes.tsv", sep="\t", header=False, index=False)
        barcodes.to_csv(path / "barcodes.tsv", sep="\t", header=False, index=False)
        return

    with open(path / "matrix.mtx", "rb") as f_in, gzip.open(path / "matrix.mtx.gz", "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    (path / "matrix.mtx").unlink()
    features.to_csv(path / "features.tsv.gz", sep="\t", header=False, index=False, compression="gzip")
    barcodes.to_csv(path / "barcodes.tsv.gz", sep="\t", header=False, index=False, compression="gzip")


def write_samples(path, legacy=False, subdir=None):
    """Split the planted counts into samples A and B, one 10x directory each."""
    adata = make_counts()
    for s in ["A", "B"]:
        tmp = adata[adata.obs["sample"] == s]
        tmp = ad.AnnData(X=tmp.X, var=tmp.var)
        tmp.obs_names = [f"AAAC{i:06d}-1" for i in range(tmp.n_obs)]
        out = path / s if subdir is None else path / s / subdir
        write_10x(tmp, out, legacy=legacy)
    return path


@pytest.fixture
def counts():
    return make_counts()


@pytest.fixture
def tenx_dir(tmp_path):
    """Two sample 10x directories made from the planted counts."""
    return write_samples(tmp_path / "data")


@pytest.fixture
def legacy_dir(tmp_path):
    """As tenx_dir, in the plain matrix.mtx/genes.tsv layout."""
    return write_samples(tmp_path / "legacy", legacy=True)


@pytest.fixture
def cellranger_dir(tmp_path):
    """As tenx_dir, with each matrix in sample/filtered_feature_bc_matrix."""
    return write_samples(tmp_path / "cellranger", subdir="filtered_feature_bc_matrix")
