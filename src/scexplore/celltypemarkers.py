import json
import os
import pandas as pd
from typing import Dict, Iterator, List, Optional, Tuple


class CellTypeMarkers:
    """Canonical marker genes for cell types, with short names and organism case.

    The default set covers the main blood mononuclear cell populations and is
    read from `data/marker_genes.json`, with entries like::

        "Naive CD4 T": {"short_name": "CD4 naive",
                        "genes": ["IL7R", "CCR7"],
                        "genes_secondary": ["SELL"]}
    """

    def __init__(self, organism: str, data: Optional[Dict] = None):
        """Initialize with marker gene data.

        Parameters
        ----------
        organism : str
            Target organism ('human' or 'mouse'). This determines gene name case:
            - 'human': uppercase genes (e.g., 'FOXP3')
            - 'mouse': title case genes (e.g., 'Foxp3')
        data : dict, optional
            Dictionary containing cell type marker data. If None, loads from package.
        """
        self.organism = organism

        if organism.lower() == "human":
            self.case = "upper"
        elif organism.lower() == "mouse":
            self.case = "title"
        else:
            raise ValueError(
                f"Unknown organism '{organism}'. Valid options are 'human' or 'mouse'."
            )

        if data is None:
            data = self._load_default_markers()

        # copy so case conversion and filtering don't change the caller's dict
        self.data = {}
        for cell_type, cell_data in data.items():
            self.data[cell_type] = {
                "short_name": cell_data.get("short_name", cell_type),
                "genes": self._convert_case(cell_data.get("genes", [])),
                "genes_secondary": self._convert_case(
                    cell_data.get("genes_secondary", [])
                ),
            }

    @staticmethod
    def _load_default_markers() -> Dict:
        """Load default marker genes from the package JSON file."""
        module_dir = os.path.dirname(os.path.abspath(__file__))
        marker_genes_path = os.path.join(module_dir, "data/marker_genes.json")

        if not os.path.isfile(marker_genes_path):
            raise FileNotFoundError(f"Marker genes file not found at {marker_genes_path}")

        with open(marker_genes_path, "r") as f:
            return json.load(f)

    def _convert_case(self, genes: List[str]) -> List[str]:
        if self.case == "upper":
            return [gene.upper() for gene in genes]
        return [gene.capitalize() for gene in genes]

    def _check(self, cell_type: str) -> None:
        if cell_type not in self.data:
            available = list(self.data.keys())
            raise ValueError(
                f"Cell type '{cell_type}' not found. Available: {available}"
            )

    def get_markers(self, cell_type: str, include_secondary: bool = False) -> List[str]:
        """Get marker genes for a cell type.

        Parameters
        ----------
        cell_type : str
            Cell type name.
        include_secondary : bool, optional
            If True, include secondary genes in addition to primary genes. Default is False.
        """
        self._check(cell_type)
        markers = self.data[cell_type]["genes"].copy()
        if include_secondary:
            markers.extend(self.data[cell_type]["genes_secondary"])
        return markers

    def get_short_name(self, cell_type: str) -> str:
        """Get the short name for a cell type."""
        self._check(cell_type)
        return self.data[cell_type]["short_name"]

    def get_secondary_markers(self, cell_type: str) -> List[str]:
        """Get secondary marker genes for a cell type."""
        self._check(cell_type)
        return self.data[cell_type]["genes_secondary"].copy()

    def filter_genes(
        self,
        gene_names: List[str],
        cell_types: Optional[List[str]] = None,
        verbose: bool = True,
    ) -> None:
        """Filter marker genes in-place to only include those present in gene list.

        Parameters
        ----------
        gene_names : list
            List of gene names to filter against (e.g., adata.var_names).
        cell_types : list, optional
            List of cell types to filter. If None, filters all.
        verbose : bool, optional
            If True, print information about missing genes. Default is True.
        """
        if cell_types is None:
            cell_types = list(self.data.keys())

        gene_set = set(gene_names)

        for cell_type in cell_types:
            if cell_type not in self.data:
                continue

            missing = []
            for k in ["genes", "genes_secondary"]:
                genes = self.data[cell_type][k]
                missing.extend(gene for gene in genes if gene not in gene_set)
                self.data[cell_type][k] = [gene for gene in genes if gene in gene_set]

            if verbose and missing:
                print(f"Missing genes in {cell_type}: {missing}")

    def first_markers(self, min: int = 1) -> Dict[str, str]:
        """First primary marker for each cell type with at least `min` markers."""
        return {k: self.get_markers(k)[0] for k in self.keys(min=max(min, 1))}

    def to_dict(self, include_secondary: bool = False) -> Dict[str, List[str]]:
        """Cell type names as keys and gene lists as values."""
        return {
            cell_type: self.get_markers(cell_type, include_secondary=include_secondary)
            for cell_type in self.data.keys()
        }

    def to_pandas(self, include_secondary: bool = False) -> pd.DataFrame:
        """Long format DataFrame with 'cell_type', 'short_name' and 'gene' columns."""
        rows = []
        for cell_type in self.data.keys():
            for gene in self.get_markers(cell_type, include_secondary=include_secondary):
                rows.append(
                    {
                        "cell_type": cell_type,
                        "short_name": self.get_short_name(cell_type),
                        "gene": gene,
                    }
                )
        return pd.DataFrame(rows, columns=["cell_type", "short_name", "gene"])

    def __getitem__(self, key: str) -> List[str]:
        return self.get_markers(key)

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def keys(self, min: int = 1, include_secondary: bool = False) -> Iterator[str]:
        """Cell type names with at least `min` genes."""
        for k in self.data.keys():
            if len(self.get_markers(k, include_secondary=include_secondary)) >= min:
                yield k

    def items(self) -> Iterator[Tuple[str, List[str]]]:
        for cell_type in self.keys():
            yield cell_type, self.get_markers(cell_type)
