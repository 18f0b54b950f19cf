"""
scexplore: exploratory analysis of single-cell RNA sequencing data.

This package wraps scanpy for loading 10x count matrices, quality control,
normalisation, dimensionality reduction, clustering, marker detection and
labelling of clusters, plus a jackstraw test for principal components.
"""

from . import functions
from . import jackstraw
from . import markers
from . import plotting
from . import celltypemarkers

__version__ = "0.1.0"
__author__ = "drgmk"
