"""
dropmix: species mixing and barcode collapsing for single-cell count matrices.

Pipeline: count table → collapse bead-synthesis-error barcodes → classify
cells by species (doublets flagged) → filter → per-cell metric tables
"""

__version__ = "0.1.0"
__author__ = "dropmix Team"
