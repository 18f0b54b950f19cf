import os
from pathlib import Path
import numpy as np
import scipy.stats
import matplotlib.pyplot as plt
import pandas as pd
import scipy.sparse
import seaborn as sns
import anndata as ad
import scanpy as sc


# files that make up one 10x Matrix Market sample, either v3 (gzipped,
# features.tsv) or legacy (plain, genes.tsv)
MTX_FILES = ["matrix.mtx.gz", "matrix.mtx"]


def plot_nxy(n):
    """Return no of x, y panels for plotting approx square panels."""
    if n < 4:
        y = 1
    elif n < 9:
        y = 2
    elif n < 16:
        y = 3
    else:
        y = 4  # ok up to n=24
    x = int(np.ceil(n / y))
    return x, y


def guess_human_or_mouse(adata):
    """Guess if data is human or mouse based on gene name case.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix containing RNA expression data.
    """
    # pick n random var_names and see if mostly uppercase (else assume capitalized)
    pick_n = min(50, adata.n_vars)
    var_names_sample = np.random.choice(adata.var_names, size=pick_n, replace=False)
    n_caps = 0
    for g in var_names_sample:
        if g.isupper():
            n_caps += 1

    if n_caps > pick_n / 2:
        return "human"
    else:
        return "mouse"


def _is_mtx_dir(path):
    """True if path directly holds a 10x matrix."""
    return any((Path(path) / f).is_file() for f in MTX_FILES)


def find_sample_dirs(data_dir):
    """Return {sample name: directory} for 10x matrices below data_dir.

    Parameters
    ----------
    data_dir : str or Path
        Either a single 10x matrix directory, or a directory with one
        sub-directory per sample.
    """
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise FileNotFoundError(f"data directory not found: {data_dir}")

    if _is_mtx_dir(data_dir):
        return {data_dir.name: data_dir}

    samples = {}
    for d in sorted(data_dir.iterdir()):
        if not d.is_dir():
            continue
        if _is_mtx_dir(d):
            samples[d.name] = d
        # cellranger layout, sample/filtered_feature_bc_matrix
        elif _is_mtx_dir(d / "filtered_feature_bc_matrix"):
            samples[d.name] = d / "filtered_feature_bc_matrix"

    if len(samples) == 0:
        raise FileNotFoundError(f"no 10x matrix directories found in {data_dir}")
    return samples


def read_samples(data_dir, samples=None, sample_col="sample", var_names="gene_symbols"):
    """Read per-sample 10x matrices and combine them into one AnnData.

    Cell barcodes are prefixed with the sample name so they stay unique
    after concatenation, e.g. `sample1_AAACCCAAGGATGGCT-1`.

    Parameters
    ----------
    data_dir : str or Path
        Directory containing the samples, see `find_sample_dirs`.
    samples : list, optional
        Sample names to read, in order. If None, reads all found, sorted by name.
    sample_col : str, optional
        Column name in `adata.obs` for the sample name.
    var_names : str, optional
        Passed to `sc.read_10x_mtx`, 'gene_symbols' or 'gene_ids'.

    Returns
    -------
    AnnData
        Combined counts, with the sample order in `adata.uns['sample_order']`.
    """
    sample_dirs = find_sample_dirs(data_dir)
    if samples is None:
        samples = list(sample_dirs.keys())
    else:
        missing = [s for s in samples if s not in sample_dirs]
        if missing:
            raise ValueError(
                f"samples {missing} not found in {data_dir}, available: {list(sample_dirs.keys())}"
            )

    adatas = {}
    for s in samples:
        print(f"reading: {sample_dirs[s]}")
        tmp = sc.read_10x_mtx(sample_dirs[s], var_names=var_names, cache=False)
        tmp.var_names_make_unique()
        adatas[s] = tmp

    adata = ad.concat(adatas, label=sample_col, index_unique=None, join="outer", merge="same")
    adata.obs_names = [f"{s}_{b}" for s, b in zip(adata.obs[sample_col], adata.obs_names)]
    adata.obs[sample_col] = pd.Categorical(adata.obs[sample_col], categories=samples)
    adata.obs_names_make_unique()

    # outer join leaves NaN for genes missing in a sample, these are zero counts
    if not scipy.sparse.issparse(adata.X):
        adata.X = scipy.sparse.csr_matrix(np.nan_to_num(adata.X))

    adata.uns["sample_order"] = samples
    return adata


def get_plot_list(adata=None):
    """Get list of QC quantities based on available columns in adata.obs.

    Parameters
    ----------
    adata : AnnData, optional
        Annotated data matrix containing RNA expression data. If None, returns all possible plots.
    """

    plot_list = [
        ["n_genes_by_counts", "total_counts", "pct_counts_in_top_1_genes"],
        ["pct_counts_ribosomal", "pct_counts_malat", "pct_counts_mt"],
    ]

    if adata is None:
        return plot_list

    tmp = []
    for p in plot_list:
        tmp.append([pp for pp in p if pp in adata.obs.columns.tolist()])
    return tmp


def compute_qc_metrics(adata, extra_genes=[]):
    """Calculate QC metrics for RNA data.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix containing RNA expression data.
    extra_genes : list, optional
        List of extra gene prefixes to calculate percent counts for.
    """

    pct_counts = {
        "mt": ["MT-"],
        "ribosomal": ["RPL", "RPS"],
        "malat": ["MALAT"],
    }
    for g in extra_genes:
        pct_counts[g] = [g]

    # convert everthing to lower case for matching
    for k, v in pct_counts.items():
        pct_counts[k] = [s.lower() for s in v]

    lower_names = adata.var_names.str.lower()
    for k, prefixes in pct_counts.items():
        mask = np.zeros(adata.n_vars, dtype=bool)
        for s in prefixes:
            mask = np.logical_or(mask, lower_names.str.startswith(s))
        adata.var[k] = mask

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=list(pct_counts.keys()), percent_top=[1], log1p=False, inplace=True
    )

    # add meta to adata.uns
    adata.uns["pct_counts"] = pct_counts


def filter_cells_genes(adata, min_genes=200, min_cells=3):
    """Filter cells and genes based on minimum counts, inplace.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix containing RNA expression data.
    min_genes : int, optional
        Minimum number of genes expressed for a cell to be kept.
    min_cells : int, optional
        Minimum number of cells a gene must be expressed in to be kept.
    """
    mask1, _ = sc.pp.filter_cells(adata, min_genes=min_genes, inplace=False)
    sc.pp.filter_cells(adata, min_genes=min_genes, inplace=True)
    mask2, _ = sc.pp.filter_genes(adata, min_cells=min_cells, inplace=False)
    sc.pp.filter_genes(adata, min_cells=min_cells, inplace=True)
    adata.uns["meta_filter_cells_genes"] = {
        "min_genes": min_genes,
        "min_cells": min_cells,
    }
    return mask1, mask2


def qc_mask(adata, min_genes=200, max_genes=2500, max_pct_mt=5.0):
    """Boolean mask of cells inside the QC thresholds.

    Kept cells have `min_genes < n_genes_by_counts < max_genes` and
    `pct_counts_mt < max_pct_mt`. Needs `compute_qc_metrics` first.
    """
    for col in ["n_genes_by_counts", "pct_counts_mt"]:
        if col not in adata.obs.columns:
            raise ValueError(f"{col} not in adata.obs, run compute_qc_metrics first")

    n_genes = adata.obs["n_genes_by_counts"].to_numpy()
    mask = (n_genes > min_genes) & (n_genes < max_genes)
    mask &= adata.obs["pct_counts_mt"].to_numpy() < max_pct_mt
    return mask


def qc_filter(adata, min_genes=200, max_genes=2500, max_pct_mt=5.0, sample_col="sample"):
    """Subset cells to those passing the QC thresholds.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with QC metrics in `adata.obs`.
    min_genes, max_genes : int, optional
        Cells must express more than `min_genes` and fewer than `max_genes` genes.
    max_pct_mt : float, optional
        Cells must have less than this percentage of mitochondrial counts.
    sample_col : str, optional
        Column in `adata.obs` used to report cells kept per sample.

    Returns
    -------
    AnnData
        Filtered copy, thresholds and per-sample counts in `uns['meta_qc_filter']`.
    """
    mask = qc_mask(adata, min_genes=min_genes, max_genes=max_genes, max_pct_mt=max_pct_mt)
    if mask.sum() == 0:
        raise ValueError(
            f"no cells pass QC (min_genes={min_genes}, max_genes={max_genes}, max_pct_mt={max_pct_mt})"
        )

    meta = {
        "min_genes": min_genes,
        "max_genes": max_genes,
        "max_pct_mt": max_pct_mt,
        "n_cells_before": int(adata.n_obs),
        "n_cells_after": int(mask.sum()),
    }
    if sample_col in adata.obs.columns:
        before = adata.obs[sample_col].value_counts(sort=False)
        after = adata.obs.loc[mask, sample_col].value_counts(sort=False)
        after = after.reindex(before.index, fill_value=0)
        meta["kept_per_sample"] = pd.DataFrame(
            {"before": before.to_numpy(), "after": after.to_numpy()},
            index=before.index.astype(str),
        )
        for s in before.index:
            print(f"{s}: kept {after[s]} of {before[s]} cells")

    print(f"cells removed by QC: {adata.n_obs - mask.sum()} of {adata.n_obs}")
    adata = adata[mask].copy()
    adata.uns["meta_qc_filter"] = meta
    return adata


def trim_outliers(
    adata,
    x="total_counts",
    y="n_genes_by_counts",
    groupby=None,
    extra_mask=None,
    extra_mask_boolean=None,
    pct=100.0,
):
    """Function to fit a line in log space, trim outliers, and return boolean mask.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with QC metrics in `adata.obs`.
    x : str
        Column in `adata.obs` for the independent variable.
    y : str
        Column in `adata.obs` for the dependent variable.
    groupby : str, optional
        Column in `adata.obs` with group names, to trim outliers per-group.
    extra_mask : dict, optional
        Dictionary specifying additional masks to apply before trimming outliers.
        Format is {column_name: (threshold, 'min' or 'max')}.
    extra_mask_boolean : array-like, optional
        Boolean mask to apply before trimming outliers.
    pct : int, optional
        Percentile to use for trimming outliers, default is 100 (no trimming).
    """

    mask = np.ones(adata.shape[0], dtype=bool)

    if groupby is not None:
        for g in np.unique(adata.obs[groupby]):
            mask_g = (adata.obs[groupby] == g).to_numpy()
            mask[mask_g] = trim_outliers(
                adata[mask_g, :],
                x=x,
                y=y,
                extra_mask=extra_mask,
                extra_mask_boolean=(
                    None if extra_mask_boolean is None else np.asarray(extra_mask_boolean)[mask_g]
                ),
                pct=pct,
            )

        adata.uns["trim_outliers_mask"] = mask
        return mask

    extra_mask_ = np.ones(adata.shape[0], dtype=bool)
    if extra_mask is not None:
        for k, v in extra_mask.items():
            if v[1] == "max":
                extra_mask_ = np.logical_and(extra_mask_, adata.obs[k] < v[0])
            elif v[1] == "min":
                extra_mask_ = np.logical_and(extra_mask_, adata.obs[k] > v[0])
            else:
                raise ValueError(
                    f'unknown key {k} in extra_mask, must contain "min" or "max"'
                )

    if extra_mask_boolean is not None:
        extra_mask_ = np.logical_and(extra_mask_, extra_mask_boolean)
    extra_mask_ = np.asarray(extra_mask_)

    x_ = np.log10(adata.obs[x].to_numpy().astype(float))
    y_ = np.log10(adata.obs[y].to_numpy().astype(float))
    fit = scipy.stats.linregress(x_[extra_mask_], y_[extra_mask_])
    y_fit = fit.intercept + fit.slope * x_
    resid = y_ - y_fit
    thresh = np.percentile(resid, [100 - pct, pct])
    mask = np.logical_and(resid >= thresh[0], resid <= thresh[1])
    adata.uns["trim_outliers_mask"] = mask
    return np.logical_and(mask, extra_mask_)


def normalise(adata, target_sum=1e4):
    """Log-normalise counts in place, keeping the counts in a layer.

    After this `adata.X` and `adata.layers['log1p_1e4']` hold
    log1p(counts / total * target_sum), and `adata.layers['counts']` the
    original counts.
    """
    adata.layers["counts"] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    adata.layers["log1p_1e4"] = adata.X.copy()
    adata.uns["meta_normalise"] = {"target_sum": target_sum}


def find_variable_features(adata, n_top_genes=2000, flavor="seurat_v3", batch_key=None):
    """Flag highly variable genes in `adata.var['highly_variable']`.

    The 'seurat_v3' flavor expects counts, so uses `adata.layers['counts']`;
    other flavors use the log-normalised `adata.X`.
    """
    n_top_genes = min(n_top_genes, adata.n_vars)
    if flavor == "seurat_v3":
        if "counts" not in adata.layers:
            raise ValueError("flavor 'seurat_v3' needs counts in adata.layers['counts']")
        sc.pp.highly_variable_genes(
            adata, n_top_genes=n_top_genes, flavor=flavor, layer="counts", batch_key=batch_key
        )
    else:
        sc.pp.highly_variable_genes(
            adata, n_top_genes=n_top_genes, flavor=flavor, batch_key=batch_key
        )
    print(f"highly variable genes: {adata.var['highly_variable'].sum()}")


def scale_data(adata, max_value=10, regress_out=None):
    """Scale each gene to unit variance and zero mean, optionally regressing out obs keys first."""
    if regress_out:
        sc.pp.regress_out(adata, keys=list(regress_out))
    sc.pp.scale(adata, max_value=max_value)


def run_pca(adata, n_comps=50, random_state=0):
    """PCA on the highly variable genes (if flagged), results in obsm/varm/uns."""
    if "highly_variable" in adata.var.columns:
        n_features = int(adata.var["highly_variable"].sum())
        mask_var = "highly_variable"
    else:
        n_features = adata.n_vars
        mask_var = None
    n_comps = int(min(n_comps, adata.n_obs - 1, n_features - 1))
    sc.tl.pca(
        adata,
        n_comps=n_comps,
        mask_var=mask_var,
        svd_solver="arpack",
        random_state=random_state,
    )
    return n_comps


def cluster_cells(adata, n_neighbors=10, n_pcs=10, resolution=0.5, random_state=0, key_added="leiden"):
    """Build the neighbour graph on the first n_pcs and Leiden cluster.

    Clusters are renamed '0', '1', ... in order of decreasing size.
    """
    n_pcs = min(n_pcs, adata.obsm["X_pca"].shape[1])
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, random_state=random_state)
    sc.tl.leiden(
        adata,
        resolution=resolution,
        random_state=random_state,
        key_added=key_added,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )

    # order by size, as Seurat does
    sizes = adata.obs[key_added].value_counts()
    new_names = {old: str(i) for i, old in enumerate(sizes.index)}
    adata.obs[key_added] = pd.Categorical(
        adata.obs[key_added].map(new_names).astype(str),
        categories=[str(i) for i in range(len(sizes))],
    )
    # colours were made for the old names
    adata.uns.pop(f"{key_added}_colors", None)
    adata.uns["meta_cluster_cells"] = {
        "n_neighbors": n_neighbors,
        "n_pcs": n_pcs,
        "resolution": resolution,
    }
    print(f"clusters found: {len(sizes)}")


def run_umap(adata, min_dist=0.5, random_state=42):
    """UMAP embedding from the neighbour graph, in `adata.obsm['X_umap']`."""
    sc.tl.umap(adata, min_dist=min_dist, random_state=random_state)


def write_h5ad(adata, results_dir, name):
    """Write adata to results_dir/name.h5ad, returning the path."""
    results_dir = Path(results_dir)
    os.makedirs(results_dir, exist_ok=True)
    path = results_dir / f"{name}.h5ad"
    adata.write_h5ad(path, compression="gzip")
    print(f"saved: {path}")
    return path


def plot_qc_violins(adata, keys=None, groupby="sample"):
    """Violin plots of the QC metrics, one panel per metric.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with QC metrics in `adata.obs`.
    keys : list, optional
        Columns in `adata.obs` to plot, one row. Defaults to the rows from `get_plot_list`.
    groupby : str, optional
        Column in `adata.obs` to split violins by, ignored if not present.
    """
    if keys is None:
        rows = [r for r in get_plot_list(adata) if len(r) > 0]
    else:
        rows = [[k for k in keys if k in adata.obs.columns]]
    if groupby not in adata.obs.columns:
        groupby = None

    ny = len(rows)
    nx = max(len(r) for r in rows)
    fig, ax = plt.subplots(ny, nx, figsize=(4 * nx, 4 * ny), squeeze=False)
    for i, r in enumerate(rows):
        for j in range(nx):
            a = ax[i, j]
            if j >= len(r):
                a.axis("off")
                continue
            sc.pl.violin(adata, keys=r[j], groupby=groupby, jitter=0.4, size=1, ax=a, show=False)
            a.set_title(r[j])
            if groupby is not None:
                a.tick_params(axis="x", labelrotation=45)

    fig.tight_layout()
    return fig


def plot_qc_scatter(adata, max_pct_mt=None, max_genes=None, min_genes=None, hue="sample"):
    """Counts vs mitochondrial percentage and counts vs genes, with thresholds marked."""
    if hue not in adata.obs.columns:
        hue = None
    fig, ax = plt.subplots(1, 2, figsize=(10, 4))
    sns.scatterplot(
        adata.obs, x="total_counts", y="pct_counts_mt", hue=hue, s=4, linewidth=0, ax=ax[0]
    )
    sns.scatterplot(
        adata.obs, x="total_counts", y="n_genes_by_counts", hue=hue, s=4, linewidth=0, ax=ax[1],
        legend=False,
    )
    if max_pct_mt is not None:
        ax[0].axhline(max_pct_mt, color="grey", linestyle="--")
    for v in [min_genes, max_genes]:
        if v is not None:
            ax[1].axhline(v, color="grey", linestyle="--")

    r = np.corrcoef(adata.obs["total_counts"], adata.obs["n_genes_by_counts"])[0, 1]
    ax[1].set_title(f"r = {r:.2f}")
    fig.tight_layout()
    return fig


def plot_gene_counts(
    adata,
    hue="sample",
    mask=None,
    order=None,
    show_masked=True,
    colour_by="pct_counts_in_top_1_genes",
    size_by="pct_counts_mt",
):
    """Plot gene counts and mitochondrial fraction for each sample.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix containing RNA expression data.
    hue : str, optional
        Column name in `adata.obs` to use for multiple panels.
    mask : array-like, optional
        Boolean mask to filter the data before plotting.
        This could come from `qc_mask` or `trim_outliers`.
    colour_by : str, optional
        Column name in `adata.obs` to use for coloring the points.
    size_by : str, optional
        Column name in `adata.obs` to use for the size of the points.
    """

    if mask is None:
        mask = np.ones(adata.shape[0], dtype=bool)
    mask = np.asarray(mask)

    if order is None:
        order = adata.obs[hue].unique()

    vmax = (
        np.max(adata[mask].obs[colour_by]) if colour_by in adata.obs.columns else None
    )

    nx, ny = plot_nxy(len(order))
    fig, ax = plt.subplots(
        ny, nx, sharey=True, sharex=True, figsize=(10, 7), squeeze=False
    )

    # check on size_by, and rescale between 1 and 5
    sizes = adata.obs[size_by].to_numpy() / 4
    if sizes.min() == sizes.max():
        sizes = 2 * np.ones(adata.shape[0])
    else:
        sizes = 1 + 4 * (sizes - sizes.min()) / (sizes.max() - sizes.min())

    for i, s in enumerate(order):
        a = ax.flatten()[i]
        ok = (adata.obs[hue] == s).to_numpy() & mask
        tmp = adata[ok, :]
        _ = a.scatter(
            tmp.obs["total_counts"],
            tmp.obs["n_genes_by_counts"],
            s=sizes[ok],
            c=tmp.obs[colour_by],
            vmin=0,
            vmax=vmax,
            cmap="viridis",
        )
        if show_masked:
            ok = (adata.obs[hue] == s).to_numpy() & np.invert(mask)
            tmp = adata[ok, :]
            a.scatter(
                tmp.obs["total_counts"],
                tmp.obs["n_genes_by_counts"],
                s=sizes[ok],
                c="lightgrey",
                alpha=0.5,
                zorder=-1,
            )

        a.set_title(s)

    [a.set_visible(False) for a in ax.flatten()[i + 1 :]]
    ax[ny - 1, 0].set_ylabel("n_genes_by_counts")
    ax[ny - 1, 0].set_xlabel("total_counts")
    ax[0, 0].set_xscale("log")
    ax[0, 0].set_yscale("log")

    # colorbar to the right of all axes, spanning full height
    fig.tight_layout()
    fig.subplots_adjust(right=0.88)
    cbar_ax = fig.add_axes((0.9, 0.15, 0.02, 0.7))
    cb = fig.colorbar(_, cax=cbar_ax, aspect=30)
    cb.set_label(colour_by)
    # turn grid on for all axes
    for a in ax.flatten():
        a.grid(True, which="both", linestyle="-", linewidth=0.5, alpha=0.5)
        a.set_axisbelow(True)
    return fig


def plot_top_genes(adata, hue="sample", n_top=10, order=None):
    """Plot the top 10 most highly expressed genes for each sample.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix containing RNA expression data.
    hue : str, optional
        Column name in `adata.obs` to use for multiple panels.
    order : list, optional
        List of group names in the order to plot. If None, uses the order in `adata.obs[hue].unique()`.
    """
    if order is None:
        order = adata.obs[hue].unique()
    nx, ny = plot_nxy(len(order))
    fig, ax = plt.subplots(
        ny, nx, figsize=(6 * nx, 5 * ny), sharex=True, sharey=True, squeeze=False
    )
    for i, s in enumerate(order):
        a = ax.flatten()[i]
        sc.pl.highest_expr_genes(
            adata[adata.obs[hue] == s].copy(), n_top=n_top, log=True, ax=a, show=False
        )
        a.axvline(x=1, alpha=0.5)
        a.set_title(s)

    [a.set_visible(False) for a in ax.flatten()[i + 1 :]]
    fig.tight_layout()
    return fig


def plot_umaps(adata, hue="sample", order=None, color=None):
    """Plot UMAPs for each sample and for all samples combined.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix containing RNA expression data.
    hue : str, optional
        Column name in `adata.obs` to use for multiple panels.
    order : list, optional
        List of group names in the order to plot. If None, uses the order in `adata.obs[hue].unique()`.
    color : str, optional
        Column name in `adata.obs` to colour points by, e.g. 'leiden'.
    """
    if order is None:
        order = adata.obs[hue].unique()
    nx, ny = plot_nxy(len(order) + 1)
    fig, ax = plt.subplots(
        ny, nx, figsize=(5 * nx, 4 * ny), sharex=True, sharey=True, squeeze=False
    )
    for i, s in enumerate(order):
        a = ax.flatten()[i]
        sc.pl.umap(adata[adata.obs[hue] == s], color=color, ax=a, show=False, size=10,
                   legend_loc="none")
        a.set_title(s)

    a = ax.flatten()[len(order)]
    sc.pl.umap(adata, color=color, ax=a, show=False, size=10, legend_loc="on data")
    a.set_title("all")
    [a.set_visible(False) for a in ax.flatten()[len(order) + 1 :]]
    fig.tight_layout()
    return fig


def plot_cell_counts(adata, x="sample", y="celltype", x_order=None, y_order=None):
    """Plot heatmap of cell numbers per x (e.g. sample) and y (e.g. cell type).

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix containing RNA expression data.
    x : str, optional
        Column name in `adata.obs` to use for x-axis.
    y : str, optional
        Column name in `adata.obs` to use for y-axis.
    x_order : list, optional
        List of group names in the order to plot for x. If None, uses the order in `adata.obs[x].unique()`.
    y_order : list, optional
        List of group names in the order to plot for y. If None, uses the order in `adata.obs[y].unique()`.
    """

    if x_order is None:
        x_order = adata.obs[x].unique()
    if y_order is None:
        y_order = adata.obs[y].unique()

    ct = pd.crosstab(adata.obs[x], adata.obs[y])
    ct = ct[list(y_order)].transpose()
    ct = ct[list(x_order)]
    ct["total"] = ct.sum(axis=1)
    ct.loc["total"] = ct.sum(axis=0)

    fig, ax = plt.subplots(figsize=(12, 8))
    sns.heatmap(
        ct,
        annot=True,
        cmap="viridis",
        cbar_kws={"label": "Number of cells"},
        ax=ax,
        fmt="g",
        norm="log",
    )
    fig.tight_layout()
    return fig


def get_highest_expr_cluster(adata, gene, groupby="leiden", layer="log1p_1e4"):
    """Return cluster with highest mean gene expression

    Parameters
    ----------
    adata : AnnData
        The RNA data.
    gene : str
        The gene to check.
    groupby : str, optional
        The column in `adata.obs` to use for grouping (default is 'leiden').
    layer : str, optional
        Layer with the expression values, `adata.X` if None or not present.
    """
    if gene not in adata.var_names:
        raise ValueError(f"gene {gene} not in adata.var_names")
    if layer not in adata.layers:
        layer = None

    x = sc.get.obs_df(adata, keys=[gene, groupby], layer=layer)
    means = x.groupby(groupby, observed=True)[gene].mean()
    highest_cluster = means.idxmax()
    emax = means.max()

    # test whether highest is significantly higher than rest
    rest = means[means < emax].to_numpy()
    if len(rest) < 2:
        print("WARNING: only one cluster")
        return highest_cluster

    res = scipy.stats.ttest_1samp(rest, emax)
    if res.pvalue > 0.05:
        print(
            f"WARNING: highest cluster {highest_cluster} not significantly higher than rest (p={res.pvalue:.3f})"
        )
    else:
        print(
            f"Highest cluster {highest_cluster} significantly higher than rest (p={res.pvalue:.3f})"
        )

    return highest_cluster


def get_vmax(adata, markers, percentile=95, min_vmax=0.1, layer=None):
    """Get vmax values for a list of marker genes.

    Parameters
    ----------
    adata : AnnData
        The RNA data.
    markers : list
        List of marker genes.
    """
    vmax = []
    for g in markers:
        x = adata[:, g].layers[layer] if layer is not None else adata[:, g].X
        if scipy.sparse.issparse(x):
            x = x.toarray()
        v = float(np.percentile(np.asarray(x), percentile))
        vmax.append(v if v > min_vmax else min_vmax)
    return vmax
