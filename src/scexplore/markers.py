import json
import os
import warnings
from pathlib import Path

import numpy as np
import pandas as pd
import scanpy as sc


def rank_genes_groups_to_df(adata, key="rank_genes_groups"):
    """Convert the results from sc.tl.rank_genes_groups to a pandas DataFrame.

    Parameters
    ----------
    adata : AnnData
        The RNA data with results from sc.tl.rank_genes_groups.
    key : str, optional
        The key in adata.uns where the rank_genes_groups results are stored (default is 'rank_genes_groups').

    Returns
    -------
    pd.DataFrame
        One row per gene and group, indexed by gene name, with 'group' and
        'reference' columns.
    """
    if key not in adata.uns:
        raise ValueError(f"no results in adata.uns['{key}'], run rank_genes_groups first")

    df = sc.get.rank_genes_groups_df(adata, group=None, key=key)
    groups = adata.uns[key]["names"].dtype.names
    if "group" not in df.columns:
        # only one group tested
        df.insert(0, "group", groups[0])
    df["group"] = df["group"].astype(str)
    df["reference"] = adata.uns[key]["params"]["reference"]
    df.set_index("names", inplace=True)
    return df


def _filter_markers(df, only_pos=True, min_pct=0.25, logfc_threshold=0.25):
    """Keep genes detected in enough cells, with large enough fold change."""
    keep = np.ones(len(df), dtype=bool)
    if "pct_nz_group" in df.columns:
        pct = df["pct_nz_group"].to_numpy()
        if "pct_nz_reference" in df.columns:
            pct = np.maximum(pct, df["pct_nz_reference"].to_numpy())
        keep &= pct >= min_pct
    lfc = df["logfoldchanges"].to_numpy()
    if only_pos:
        keep &= lfc >= logfc_threshold
    else:
        keep &= np.abs(lfc) >= logfc_threshold
    return df[keep]


def find_all_markers(
    adata,
    groupby="leiden",
    method="wilcoxon",
    layer="log1p_1e4",
    only_pos=True,
    min_pct=0.25,
    logfc_threshold=0.25,
    key_added="rank_genes_groups",
):
    """Find marker genes for every group, each against all other cells.

    Parameters
    ----------
    adata : AnnData
        The RNA data, with log-normalised expression in `layer`.
    groupby : str, optional
        Column in `adata.obs` with the clusters.
    method : str, optional
        Test passed to `sc.tl.rank_genes_groups`.
    layer : str, optional
        Layer to test, uses `adata.X` if None or not present.
    only_pos : bool, optional
        Only keep genes with higher expression in the group.
    min_pct : float, optional
        Minimum fraction of cells expressing the gene, in either the group or the rest.
    logfc_threshold : float, optional
        Minimum log2 fold change.

    Returns
    -------
    pd.DataFrame
        Filtered markers, sorted by group and adjusted p-value.
    """
    if layer is not None and layer not in adata.layers:
        print(f"layer {layer} not found, using adata.X")
        layer = None

    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        layer=layer,
        use_raw=False,
        pts=True,
        key_added=key_added,
    )
    df = rank_genes_groups_to_df(adata, key=key_added)
    df = _filter_markers(
        df, only_pos=only_pos, min_pct=min_pct, logfc_threshold=logfc_threshold
    )

    # keep cluster order rather than string order
    order = list(adata.obs[groupby].cat.categories)
    df = df.assign(_order=df["group"].map({g: i for i, g in enumerate(order)}))
    df = df.sort_values(["_order", "pvals_adj", "logfoldchanges"], ascending=[True, True, False])
    return df.drop(columns="_order")


def find_markers(
    adata,
    group,
    reference="rest",
    groupby="leiden",
    method="wilcoxon",
    layer="log1p_1e4",
    only_pos=False,
    min_pct=0.25,
    logfc_threshold=0.25,
):
    """Find marker genes for one group against the rest, or against other groups.

    Parameters
    ----------
    adata : AnnData
        The RNA data.
    group : str
        The group to test.
    reference : str or list, optional
        'rest', a single group, or a list of groups that are pooled as the reference.
    """
    group = str(group)
    groups = adata.obs[groupby].astype(str)
    if group not in set(groups):
        raise ValueError(f"group {group} not found in adata.obs['{groupby}']")

    if layer is not None and layer not in adata.layers:
        layer = None

    if isinstance(reference, (list, tuple)):
        reference = [str(r) for r in reference]
        missing = [r for r in reference if r not in set(groups)]
        if missing:
            raise ValueError(f"reference groups {missing} not found in adata.obs['{groupby}']")
        if group in reference:
            raise ValueError(f"group {group} is also in the reference {reference}")
        keep = groups.isin([group] + reference).to_numpy()
        tmp = adata[keep].copy()
        tmp.obs["_compare"] = pd.Categorical(
            np.where(tmp.obs[groupby].astype(str) == group, group, "reference")
        )
        groupby_ = "_compare"
        reference_ = "reference"
    else:
        reference_ = str(reference)
        if reference_ != "rest" and reference_ not in set(groups):
            raise ValueError(f"reference {reference_} not found in adata.obs['{groupby}']")
        tmp = adata
        groupby_ = groupby

    key = f"rank_genes_groups_{group}"
    sc.tl.rank_genes_groups(
        tmp,
        groupby=groupby_,
        groups=[group],
        reference=reference_,
        method=method,
        layer=layer,
        use_raw=False,
        pts=True,
        key_added=key,
    )
    df = rank_genes_groups_to_df(tmp, key=key)
    if isinstance(reference, (list, tuple)):
        df["reference"] = ",".join(reference)
        adata.uns[key] = tmp.uns[key]
    if reference_ != "rest":
        # pts_rest is only made against the rest, take the reference group from pts
        pts = tmp.uns[key]["pts"]
        df["pct_nz_reference"] = pts[reference_].reindex(df.index).to_numpy()

    df = _filter_markers(
        df, only_pos=only_pos, min_pct=min_pct, logfc_threshold=logfc_threshold
    )
    return df.sort_values("pvals_adj")


def top_markers(markers_df, n=10, by="logfoldchanges"):
    """Return the top n markers per group, ranked by column `by` (descending)."""
    df = markers_df.reset_index()
    order = list(dict.fromkeys(df["group"]))
    top = df.sort_values(by, ascending=False).groupby("group", sort=False).head(n)
    top = top.assign(_order=top["group"].map({g: i for i, g in enumerate(order)}))
    top = top.sort_values(["_order", by], ascending=[True, False])
    return top.drop(columns="_order").set_index("names")


def load_cluster_labels(path=None):
    """Load the cluster id to cell type lookup table from a JSON file.

    Parameters
    ----------
    path : str or Path, optional
        JSON file like `{"0": "Naive CD4 T", "1": "CD14+ Mono"}`. If None,
        loads the PBMC table included with the package.
    """
    if path is None:
        module_dir = os.path.dirname(os.path.abspath(__file__))
        path = os.path.join(module_dir, "data/pbmc_cluster_labels.json")

    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"cluster labels file not found at {path}")

    with open(path, "r") as f:
        labels = json.load(f)

    if not isinstance(labels, dict):
        raise ValueError(f"cluster labels in {path} must be a JSON object")
    return {str(k): str(v) for k, v in labels.items()}


def rename_clusters(adata, labels, groupby="leiden", key_added="celltype"):
    """Apply a cluster id to label lookup table, adding `adata.obs[key_added]`.

    Parameters
    ----------
    adata : AnnData
        The RNA data with clusters in `adata.obs[groupby]`.
    labels : dict
        Cluster id to label. Keys are compared as strings.
    groupby : str, optional
        Column in `adata.obs` with the cluster ids.
    key_added : str, optional
        Column in `adata.obs` for the labels.
    """
    labels = {str(k): str(v) for k, v in labels.items()}
    clusters = [str(c) for c in adata.obs[groupby].cat.categories]
    present = set(adata.obs[groupby].astype(str))
    clusters = [c for c in clusters if c in present]

    missing = [c for c in clusters if c not in labels]
    if missing:
        raise ValueError(f"no label for clusters {missing} in '{groupby}'")

    unused = [k for k in labels if k not in clusters]
    if unused:
        warnings.warn(f"labels for clusters {unused} not used, not in '{groupby}'")

    # a label can be given to more than one cluster, keep first appearance
    categories = list(dict.fromkeys(labels[c] for c in clusters))
    adata.obs[key_added] = pd.Categorical(
        adata.obs[groupby].astype(str).map(labels), categories=categories
    )
    adata.uns["meta_rename_clusters"] = {"groupby": groupby, "labels": labels}
    print(f"cluster labels: {labels}")
