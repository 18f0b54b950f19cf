"""
Explore.

Run a standard exploratory analysis of single cell RNA-seq counts, from
10x matrices to labelled clusters.

```shell
scexplore -d path/to/filtered_gene_bc_matrices
```

The data directory either holds one 10x matrix (matrix.mtx, genes/features,
barcodes), or one sub-directory per sample holding these (a cellranger
`filtered_feature_bc_matrix` within each sample directory also works).

Steps, with the thresholds as options:

- QC: cells with min_genes < genes < max_genes and mitochondrial
  percentage < max_pct_mt are kept, genes must be seen in min_cells cells.
- normalisation to 10,000 counts per cell and log1p, variable genes,
  scaling, PCA.
- jackstraw and elbow plots to check how many PCs carry structure.
- neighbours on n_pcs PCs, Leiden clustering, UMAP.
- the clustered object is saved, then markers are found for all clusters.
- clusters are labelled from a lookup table (JSON, cluster id to label),
  and the final object saved.

Figures go to `figs_path`, objects and the marker table to `results_path`.
"""

import os
import argparse
from pathlib import Path
import numpy as np
import matplotlib.pyplot as plt
from matplotlib.backends.backend_pdf import PdfPages
import scanpy as sc
from fpdf import FPDF

import scexplore.functions as scfunc
import scexplore.jackstraw as scjs
import scexplore.markers as scmark
import scexplore.plotting as scplot
from scexplore.celltypemarkers import CellTypeMarkers


# subsampled rna (and vectors in also) for plotting
def rna_pl(rna, also=[], n=20_000):
    """Subset rna (and vectors in also) to len(n) for plotting."""
    if rna.n_obs > n:
        keep = np.random.choice(rna.n_obs, size=n, replace=False)
        rna_pl = rna[keep].copy()
        also_pl = [a[keep].copy() for a in also]
    else:
        rna_pl = rna
        also_pl = also

    if len(also) > 0:
        return rna_pl, also_pl
    else:
        return rna_pl


class FigureSaver:
    """Save figures as pdf, and png for the report if wanted."""

    def __init__(self, figs_path, png=False):
        self.figs_path = Path(figs_path)
        self.png = png
        self.saved = []
        os.makedirs(self.figs_path, exist_ok=True)

    def __call__(self, fig, name):
        fig.savefig(self.figs_path / f"{name}.pdf", bbox_inches="tight")
        if self.png:
            fig.savefig(self.figs_path / f"{name}.png", dpi=150, bbox_inches="tight")
        plt.close(fig)
        self.saved.append(name)


def write_report(figs_path, names, title, report_path):
    """Put the png figures into a pdf report, one figure per page."""
    pdf = FPDF(orientation="L", unit="mm", format="A4")
    margin = 5
    for name in names:
        png = Path(figs_path) / f"{name}.png"
        if not png.is_file():
            continue
        pdf.add_page()
        pdf.set_font("Helvetica", "", 10)
        pdf.set_x(margin)
        pdf.cell(pdf.w - 2 * margin, 5, f"{title}: {name}", align="C", new_y="NEXT")
        top = pdf.get_y() + 2
        pdf.image(
            str(png),
            x=margin,
            y=top,
            w=pdf.w - 2 * margin,
            h=pdf.h - top - margin,
            keep_aspect_ratio=True,
        )
    pdf.output(str(report_path))
    print(f"Report saved to {report_path}")


def main():
    # Default values for CLI
    sample_col = "sample"
    min_genes = 200
    max_genes = 2500
    max_pct_mt = 5.0
    min_cells = 3
    pct_outlier_cutoff = 100.0
    target_sum = 1e4
    n_top_genes = 2000
    hvg_flavor = "seurat_v3"
    n_comps = 50
    jackstraw_dims = 20
    jackstraw_replicates = 100
    n_pcs = 10
    n_neighbours = 10
    leiden_res = 0.5
    min_umap_dist = 0.5
    n_heatmap_pcs = 9
    verbosity = 1

    parser = argparse.ArgumentParser(
        description="Exploratory analysis of single-cell RNA-seq data"
    )
    parser.add_argument(
        "--data_path", "-d", type=str, required=True,
        help="Directory with a 10x matrix, or one sub-directory per sample",
    )
    parser.add_argument(
        "--samples", type=str, nargs="+", default=None,
        help="Sample sub-directories to read (default all)",
    )
    parser.add_argument(
        "--results_path", type=str, default=None, metavar="path/data_results",
        help="Directory for saved objects and tables",
    )
    parser.add_argument(
        "--figs_path", type=str, default=None, metavar="path/data_results/figures",
        help="Directory for figures",
    )
    parser.add_argument(
        "--name", type=str, default=None,
        help="Name for output files (default data directory name)",
    )
    parser.add_argument(
        "--sample_col", type=str, default=sample_col, metavar=sample_col,
        help="Column name for independent samples",
    )
    parser.add_argument(
        "--min_genes", type=int, default=min_genes, metavar=str(min_genes),
        help="Cells must express more than this many genes",
    )
    parser.add_argument(
        "--max_genes", type=int, default=max_genes, metavar=str(max_genes),
        help="Cells must express fewer than this many genes",
    )
    parser.add_argument(
        "--max_pct_mt", type=float, default=max_pct_mt, metavar=str(max_pct_mt),
        help="Max mitochondrial percentage for QC",
    )
    parser.add_argument(
        "--min_cells", type=int, default=min_cells, metavar=str(min_cells),
        help="Min cells per gene for QC",
    )
    parser.add_argument(
        "--pct_outlier_cutoff", type=float, default=pct_outlier_cutoff,
        metavar=str(pct_outlier_cutoff),
        help="Percentile cutoff for genes vs counts outliers (100 is no cut)",
    )
    parser.add_argument(
        "--target_sum", type=float, default=target_sum, metavar=str(target_sum),
        help="Counts per cell after normalisation",
    )
    parser.add_argument(
        "--n_top_genes", type=int, default=n_top_genes, metavar=str(n_top_genes),
        help="Number of highly variable genes",
    )
    parser.add_argument(
        "--hvg_flavor", type=str, default=hvg_flavor, metavar=hvg_flavor,
        choices=["seurat_v3", "seurat", "cell_ranger"],
        help="Method for highly variable genes",
    )
    parser.add_argument(
        "--regress_out", type=str, nargs="+", default=None,
        help="obs columns to regress out before scaling, e.g. pct_counts_mt",
    )
    parser.add_argument(
        "--n_comps", type=int, default=n_comps, metavar=str(n_comps),
        help="Number of PCs to compute",
    )
    parser.add_argument(
        "--jackstraw_dims", type=int, default=jackstraw_dims, metavar=str(jackstraw_dims),
        help="Number of PCs to test with jackstraw",
    )
    parser.add_argument(
        "--jackstraw_replicates", type=int, default=jackstraw_replicates,
        metavar=str(jackstraw_replicates),
        help="Number of jackstraw replicates",
    )
    parser.add_argument(
        "--skip_jackstraw", action="store_true", default=False,
        help="Don't run jackstraw (slow for large data)",
    )
    parser.add_argument(
        "--n_pcs", type=int, default=n_pcs, metavar=str(n_pcs),
        help="Number of PCs for the neighbour graph",
    )
    parser.add_argument(
        "--n_neighbours", type=int, default=n_neighbours, metavar=str(n_neighbours),
        help="Number of neighbours for clustering",
    )
    parser.add_argument(
        "--leiden_res", type=float, default=leiden_res, metavar=str(leiden_res),
        help="Leiden clustering resolution",
    )
    parser.add_argument(
        "--min_umap_dist", type=float, default=min_umap_dist, metavar=str(min_umap_dist),
        help="Minimum UMAP distance",
    )
    parser.add_argument(
        "--cluster_labels", type=str, default=None,
        help="JSON file with cluster id to cell type labels (default PBMC labels)",
    )
    parser.add_argument(
        "--no_labels", action="store_true", default=False,
        help="Stop after markers, without labelling clusters",
    )
    parser.add_argument(
        "--report", action="store_true", default=False,
        help="Also save png figures and a pdf report",
    )
    parser.add_argument(
        "--verbosity", type=int, default=verbosity, metavar=str(verbosity),
        help="scanpy verbosity (0-4)",
    )

    args = parser.parse_args()

    data_path = Path(args.data_path)
    name = args.name if args.name else data_path.resolve().name
    if args.results_path:
        results_path = Path(args.results_path)
    else:
        results_path = data_path.parent / f"{name}_results"
    if args.figs_path:
        figs_path = Path(args.figs_path)
    else:
        figs_path = results_path / "figures"
    sample_col = args.sample_col

    # Setup
    sc.settings.verbosity = args.verbosity
    os.makedirs(results_path, exist_ok=True)
    savefig = FigureSaver(figs_path, png=args.report)

    # Read in data
    rna = scfunc.read_samples(data_path, samples=args.samples, sample_col=sample_col)
    sample_order = rna.uns["sample_order"]
    print(rna)

    organism = scfunc.guess_human_or_mouse(rna)
    print(f"assuming organism: {organism}")

    # Quality control
    scfunc.filter_cells_genes(rna, min_genes=0, min_cells=args.min_cells)
    scfunc.compute_qc_metrics(rna)

    fig = scfunc.plot_qc_violins(rna, groupby=sample_col)
    savefig(fig, "qc_violins")
    fig = scfunc.plot_qc_scatter(
        rna_pl(rna), max_pct_mt=args.max_pct_mt, min_genes=args.min_genes,
        max_genes=args.max_genes, hue=sample_col,
    )
    savefig(fig, "qc_scatter")
    fig = scfunc.plot_top_genes(rna, hue=sample_col, order=sample_order)
    savefig(fig, "top_genes")

    mask = scfunc.qc_mask(
        rna, min_genes=args.min_genes, max_genes=args.max_genes, max_pct_mt=args.max_pct_mt
    )
    rna_toplot, mask_toplot = rna_pl(rna, also=[mask])
    fig = scfunc.plot_gene_counts(
        rna_toplot, hue=sample_col, order=sample_order, mask=mask_toplot[0], show_masked=True
    )
    savefig(fig, "gene_counts_per_sample")

    rna = scfunc.qc_filter(
        rna, min_genes=args.min_genes, max_genes=args.max_genes,
        max_pct_mt=args.max_pct_mt, sample_col=sample_col,
    )
    if args.pct_outlier_cutoff < 100:
        mask = scfunc.trim_outliers(rna, groupby=sample_col, pct=args.pct_outlier_cutoff)
        print(f"outliers removed: {np.sum(~mask)}")
        rna = rna[mask].copy()

    # Normalisation and variable genes
    scfunc.normalise(rna, target_sum=args.target_sum)
    scfunc.find_variable_features(
        rna, n_top_genes=args.n_top_genes, flavor=args.hvg_flavor
    )
    fig = scplot.plot_variable_features(rna)
    savefig(fig, "variable_features")

    # PCA
    scfunc.scale_data(rna, max_value=10, regress_out=args.regress_out)
    n_comps = scfunc.run_pca(rna, n_comps=args.n_comps)
    print(f"PCs computed: {n_comps}")

    fig = scplot.plot_pca_loadings(rna, components=(0, 1))
    savefig(fig, "pca_loadings")
    fig, ax = plt.subplots(figsize=(6, 5))
    sc.pl.pca(rna_pl(rna), color=sample_col, ax=ax, show=False)
    fig.tight_layout()
    savefig(fig, "pca")

    with PdfPages(figs_path / "pca_heatmaps.pdf") as pdf:
        for c in range(min(n_heatmap_pcs, n_comps)):
            fig = scplot.pca_heatmap(rna, component=c)
            pdf.savefig(fig)
            plt.close(fig)

    # how many PCs carry structure
    n_significant = None
    if not args.skip_jackstraw:
        scjs.jackstraw(
            rna, dims=args.jackstraw_dims, num_replicate=args.jackstraw_replicates
        )
        scjs.score_jackstraw(rna)
        n_significant = scjs.significant_pcs(rna)
        print(f"significant PCs (jackstraw): {n_significant}")
        fig = scplot.plot_jackstraw(rna)
        savefig(fig, "jackstraw")

    n_pcs = min(args.n_pcs, n_comps)
    fig = scplot.plot_elbow(rna, mark=n_pcs)
    savefig(fig, "elbow")
    print(f"using {n_pcs} PCs")

    # Clustering
    scfunc.cluster_cells(
        rna, n_neighbors=args.n_neighbours, n_pcs=n_pcs, resolution=args.leiden_res
    )
    scfunc.run_umap(rna, min_dist=args.min_umap_dist)

    fig = scfunc.plot_umaps(rna, hue=sample_col, order=sample_order, color="leiden")
    savefig(fig, "umap_leiden")

    meta_params = {
        k: (str(v) if isinstance(v, Path) else v)
        for k, v in vars(args).items()
        if v is not None
    }
    meta_params["n_significant_pcs"] = -1 if n_significant is None else n_significant
    rna.uns["meta_params"] = meta_params

    scfunc.write_h5ad(rna, results_path, f"{name}_clustered")

    # Markers
    markers_df = scmark.find_all_markers(rna, groupby="leiden")
    markers_df.to_csv(results_path / f"{name}_markers.csv")
    print(scmark.top_markers(markers_df, n=2)[["group", "logfoldchanges", "pvals_adj"]])

    if len(markers_df) > 0:
        fig = scplot.plot_marker_heatmap(rna, markers_df, n_genes=10, layer="log1p_1e4")
        savefig(fig, "marker_heatmap")
    else:
        print("no markers passed the thresholds, skipping marker heatmap")

    # canonical markers on the umap
    markers = CellTypeMarkers(organism=organism)
    markers.filter_genes(rna.var_names)
    first_markers = markers.first_markers()
    if len(first_markers) > 0:
        genes = list(dict.fromkeys(first_markers.values()))
        vmax = scfunc.get_vmax(rna, genes, percentile=99, layer="log1p_1e4")
        nx, ny = scfunc.plot_nxy(len(genes))
        fig, ax = plt.subplots(ny, nx, figsize=(4 * nx, 3.5 * ny), squeeze=False)
        for a, gene, v in zip(ax.flatten(), genes, vmax):
            sc.pl.umap(
                rna_pl(rna), color=gene, layer="log1p_1e4", vmax=v, ax=a, show=False
            )
        [a.set_visible(False) for a in ax.flatten()[len(genes) :]]
        fig.tight_layout()
        savefig(fig, "umap_markers")

        fig, ax = plt.subplots(ny, nx, figsize=(4 * nx, 3 * ny), squeeze=False)
        for a, gene in zip(ax.flatten(), genes):
            sc.pl.violin(
                rna, keys=gene, groupby="leiden", layer="log1p_1e4",
                use_raw=False, stripplot=False, ax=a, show=False,
            )
            a.set_title(gene)
        [a.set_visible(False) for a in ax.flatten()[len(genes) :]]
        fig.tight_layout()
        savefig(fig, "violin_markers")

    # Cluster labels
    if not args.no_labels:
        labels = scmark.load_cluster_labels(args.cluster_labels)
        scmark.rename_clusters(rna, labels, groupby="leiden", key_added="celltype")

        fig, ax = plt.subplots(figsize=(7, 5))
        sc.pl.umap(
            rna_pl(rna), color="celltype", legend_loc="on data", legend_fontsize=8,
            legend_fontoutline=2, ax=ax, show=False,
        )
        fig.tight_layout()
        savefig(fig, "umap_celltypes")

        fig = scfunc.plot_cell_counts(rna, x=sample_col, y="celltype", x_order=sample_order)
        savefig(fig, "cell_counts")

    scfunc.write_h5ad(rna, results_path, f"{name}_final")

    if args.report:
        write_report(figs_path, savefig.saved, name, figs_path / "report.pdf")


if __name__ == "__main__":
    main()
