"""
Plotting utilities for the dimensionality reduction steps.

Diagnostics to choose the number of principal components (loadings,
heatmaps, elbow and jackstraw plots), the variable feature plot, and a
heatmap of cluster markers.
"""

from __future__ import annotations

from typing import Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scipy.sparse
import scipy.stats
import seaborn as sns
import scanpy as sc


def format_pvalue(p: float, style: str = "p", stars: bool = False) -> str:
    """Format a p-value as text or significance stars."""

    if stars:
        if p < 1e-4:
            return "****"
        if p < 1e-3:
            return "***"
        if p < 1e-2:
            return "**"
        if p < 5e-2:
            return "*"
        return "ns"

    if style == "p<":
        if p < 1e-3:
            return "p < 0.001"
        if p < 1e-2:
            return "p < 0.01"
        if p < 5e-2:
            return "p < 0.05"
        return f"p = {p:.2f}"

    if style == "numeric":
        if p < 1e-3:
            return f"{p:.1e}"
        return f"{p:.3f}".rstrip("0").rstrip(".")

    if p < 1e-3:
        return f"p = {p:.1e}"

    return f"p = {p:.3f}".rstrip("0").rstrip(".")


def plot_variable_features(adata, n_label: int = 10) -> plt.Figure:
    """Mean expression vs normalised variability, top variable genes labelled."""

    if "highly_variable" not in adata.var.columns:
        raise ValueError("no highly variable genes in adata.var, run find_variable_features first")

    var = adata.var
    if "variances_norm" in var.columns:
        y_col, x_col = "variances_norm", "means"
    else:
        y_col, x_col = "dispersions_norm", "means"

    hv = var["highly_variable"].to_numpy().astype(bool)
    fig, ax = plt.subplots(figsize=(6, 5))
    ax.scatter(var.loc[~hv, x_col], var.loc[~hv, y_col], s=3, c="lightgrey", label="other")
    ax.scatter(var.loc[hv, x_col], var.loc[hv, y_col], s=3, c="firebrick", label="variable")

    top = var.loc[hv, y_col].sort_values(ascending=False).index[:n_label]
    for g in top:
        ax.annotate(
            g,
            (var.loc[g, x_col], var.loc[g, y_col]),
            fontsize=8,
            xytext=(3, 3),
            textcoords="offset points",
        )

    ax.set_xscale("log")
    ax.set_xlabel("mean expression")
    ax.set_ylabel(y_col)
    ax.set_title(f"{hv.sum()} variable genes")
    ax.legend(loc="upper right", markerscale=3)
    fig.tight_layout()
    return fig


def plot_pca_loadings(
    adata, components: Sequence[int] = (0, 1), n_genes: int = 30
) -> plt.Figure:
    """Bar charts of the genes with largest absolute loading for each component."""

    fig, ax = plt.subplots(
        1, len(components), figsize=(4 * len(components), 0.2 * n_genes + 1.5), squeeze=False
    )
    for a, c in zip(ax.flatten(), components):
        loadings = pd.Series(adata.varm["PCs"][:, c], index=adata.var_names)
        top = loadings.loc[loadings.abs().sort_values(ascending=False).index[:n_genes]]
        top = top.sort_values()
        a.barh(top.index, top.values, color=np.where(top.values > 0, "firebrick", "steelblue"))
        a.tick_params(axis="y", labelsize=7)
        a.set_title(f"PC{c + 1}")
        a.set_xlabel("loading")

    fig.tight_layout()
    return fig


def pca_heatmap(
    adata, component: int, n_genes: int = 30, n_cells: Optional[int] = 500, layer=None
) -> plt.Figure:
    """Plot heatmap of scaled expression for the top genes of one component.

    Top N genes by absolute loading, cells ordered by PC score. With
    `n_cells`, only the cells with the most extreme scores are shown, half
    from each end.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix containing PCA results in `varm['PCs']`.
    component : int
        The PCA component to visualize, zero-based.
    layer : str, optional
        The layer of the AnnData object to use for the heatmap. If None, uses the main data layer.
    """

    pc_loadings = adata.varm["PCs"][:, component]
    top_idx = np.argsort(np.abs(pc_loadings))[::-1][:n_genes]
    # order genes by signed loading
    top_idx = top_idx[np.argsort(pc_loadings[top_idx])[::-1]]
    top_genes = adata.var_names[top_idx]

    cell_scores = adata.obsm["X_pca"][:, component]
    cell_order = np.argsort(cell_scores)[::-1]
    if n_cells is not None and n_cells < len(cell_order):
        cell_order = np.concatenate(
            [cell_order[: n_cells // 2], cell_order[-(n_cells - n_cells // 2) :]]
        )

    tmp = adata[cell_order, top_idx]
    expr = tmp.layers[layer] if layer is not None else tmp.X
    if scipy.sparse.issparse(expr):
        expr = expr.toarray()
    expr = np.asarray(expr)

    # z-score per gene
    expr = (expr - expr.mean(axis=0)) / (expr.std(axis=0) + 1e-8)

    fig, ax = plt.subplots(figsize=(8, 0.15 * n_genes + 2))
    sns.heatmap(
        expr.T,
        cmap="RdBu_r",
        center=0,
        vmin=-2.5,
        vmax=2.5,
        cbar_kws={"label": "scaled expression"},
        ax=ax,
    )
    ax.set_yticks(np.arange(len(top_genes)) + 0.5)
    ax.set_yticklabels(top_genes, fontsize=7)
    ax.set_xticks([])
    ax.set_xlabel("cells (ordered by PC score)")
    ax.set_title(f"PC{component + 1}")
    fig.tight_layout()
    return fig


def plot_elbow(adata, n_pcs: Optional[int] = None, mark: Optional[int] = None) -> plt.Figure:
    """Standard deviation of each PC, to look for an elbow."""

    sd = np.sqrt(adata.uns["pca"]["variance"])
    if n_pcs is not None:
        sd = sd[:n_pcs]

    fig, ax = plt.subplots(figsize=(5, 4))
    ax.plot(np.arange(1, len(sd) + 1), sd, "o", color="k", markersize=4)
    if mark is not None:
        ax.axvline(mark + 0.5, color="grey", linestyle="--")
    ax.set_xlabel("PC")
    ax.set_ylabel("standard deviation")
    fig.tight_layout()
    return fig


def plot_jackstraw(adata, dims: Optional[int] = None) -> plt.Figure:
    """QQ plot of jackstraw empirical p-values against uniform, for each PC.

    PCs with structure bend away from the dashed line. The legend gives the
    PC score from `score_jackstraw`.
    """

    js = adata.uns.get("jackstraw")
    if js is None or "pc_scores" not in js:
        raise ValueError("no jackstraw scores in adata.uns, run jackstraw and score_jackstraw")

    pvals = np.asarray(js["empirical_pvalues"])
    scores = np.asarray(js["pc_scores"])
    if dims is not None:
        pvals, scores = pvals[:, :dims], scores[:dims]

    n = pvals.shape[0]
    theoretical = (np.arange(1, n + 1) - 0.5) / n
    colours = sns.color_palette("husl", pvals.shape[1])

    fig, ax = plt.subplots(figsize=(6, 5))
    for pc in range(pvals.shape[1]):
        ax.plot(
            theoretical,
            np.sort(pvals[:, pc]),
            color=colours[pc],
            linewidth=1,
            label=f"PC{pc + 1}: {format_pvalue(scores[pc], style='numeric')}",
        )

    ax.plot([0, 1], [0, 1], color="grey", linestyle="--", linewidth=1)
    ax.set_xlim(0, 0.1)
    ax.set_ylim(0, 0.3)
    ax.set_xlabel("theoretical [uniform]")
    ax.set_ylabel("empirical")
    ax.legend(bbox_to_anchor=(1.02, 1), loc="upper left", fontsize=7, ncol=1 + pvals.shape[1] // 15)
    fig.tight_layout()
    return fig


def plot_marker_heatmap(
    adata,
    markers_df: pd.DataFrame,
    n_genes: int = 10,
    groupby: str = "leiden",
    layer: Optional[str] = None,
) -> plt.Figure:
    """Heatmap of the top marker genes for each group, cells grouped by cluster.

    Parameters
    ----------
    markers_df : pd.DataFrame
        Output of `find_all_markers`, indexed by gene with a 'group' column.
    """
    from .markers import top_markers

    top = top_markers(markers_df, n=n_genes)
    genes = {}
    for g, df in top.groupby("group", sort=False):
        genes[str(g)] = [x for x in df.index if x in adata.var_names]
    genes = {k: v for k, v in genes.items() if len(v) > 0}
    if len(genes) == 0:
        raise ValueError("no marker genes to plot, none of the top markers are in adata.var_names")

    grid = sc.pl.heatmap(
        adata,
        var_names=genes,
        groupby=groupby,
        layer=layer,
        use_raw=False,
        standard_scale="var",
        cmap="viridis",
        show=False,
        show_gene_labels=True,
    )
    return list(grid.values())[0].figure
