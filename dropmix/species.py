"""
Species-of-origin classification for mixed-species experiments.

In a species-mixing experiment (e.g. human and mouse cells loaded together)
gene ids carry a species prefix (``hg_``, ``mm_``).  Every cell is scored by
the transcripts it collects from each species:

    s1 = counts over species-1 genes
    s2 = counts over species-2 genes
    total = s1 + s2

Cells with ``total < min_transcripts`` or ``total == 0`` are excluded.  The
rest are labelled ``species1`` when ``s1 / total >= purity_threshold``,
``species2`` when ``s2 / total >= purity_threshold``, and ``doublet``
otherwise.  A ratio exactly equal to the threshold counts as pure.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from dropmix.errors import NoMatchingGenes, UndefinedPurity
from dropmix.matrix import CountMatrix
from dropmix.utils import fmt_counts, get_logger

SPECIES1 = "species1"
SPECIES2 = "species2"
DOUBLET = "doublet"
EXCLUDED = "excluded"

LABELS = (SPECIES1, SPECIES2, DOUBLET)


def cell_purity(s1: float, s2: float, cell: Optional[str] = None) -> float:
    """Fraction of a cell's species transcripts owned by its dominant species."""
    total = s1 + s2
    if total == 0:
        raise UndefinedPurity(cell)
    return max(s1, s2) / total


@dataclass
class ClassificationResult:
    """
    Per-cell species calls.

    Attributes
    ----------
    table : pd.DataFrame
        Indexed by cell id (input column order) with columns
        ``species1_count``, ``species2_count``, ``total``, ``purity``, ``label``.
        Only classified cells appear here.
    excluded : tuple of str
        Cells left out because their total was below ``min_transcripts``
        or zero.
    species : tuple of str
        Display names for species 1 and 2.
    """

    table: pd.DataFrame
    excluded: tuple[str, ...] = ()
    species: tuple[str, str] = (SPECIES1, SPECIES2)
    prefixes: tuple[str, str] = ("", "")
    purity_threshold: float = 0.9
    min_transcripts: int = 0
    parameters: dict = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.table)

    @property
    def cells(self) -> list[str]:
        return list(self.table.index)

    @property
    def labels(self) -> pd.Series:
        return self.table["label"]

    def label_of(self, cell: str) -> str:
        """Label of *cell*; ``"excluded"`` for cells below the transcript floor."""
        if cell in self.table.index:
            return self.table.at[cell, "label"]
        if cell in set(self.excluded):
            return EXCLUDED
        raise KeyError(cell)

    def cells_with_label(self, label: str) -> list[str]:
        label = self.resolve_label(label)
        return list(self.table.index[self.table["label"] == label])

    def resolve_label(self, species: str) -> str:
        """Map a species name (``"human"``) or label (``"species1"``) to a label."""
        if species in LABELS:
            return species
        if species == self.species[0]:
            return SPECIES1
        if species == self.species[1]:
            return SPECIES2
        raise ValueError(
            f"Unknown species {species!r}; expected one of {LABELS + self.species}"
        )

    def species_name(self, label: str) -> str:
        """Display name for a label (species name, or the label itself)."""
        if label == SPECIES1:
            return self.species[0]
        if label == SPECIES2:
            return self.species[1]
        return label

    def label_counts(self) -> dict[str, int]:
        counts = self.table["label"].value_counts()
        out = {label: int(counts.get(label, 0)) for label in LABELS}
        out[EXCLUDED] = len(self.excluded)
        return out

    def to_frame(self) -> pd.DataFrame:
        """Export table: ``cells``, the two counts, purity and label."""
        df = self.table.reset_index().rename(columns={"index": "cells"})
        df["species"] = [self.species_name(x) for x in df["label"]]
        return df[["cells", "species1_count", "species2_count", "purity", "label", "species"]]

    def summary(self) -> str:
        c = self.label_counts()
        n = len(self.table)
        doublet_rate = c[DOUBLET] / n if n else 0.0
        return (
            f"{self.species[0]}: {c[SPECIES1]:,}  {self.species[1]}: {c[SPECIES2]:,}  "
            f"doublets: {c[DOUBLET]:,} ({doublet_rate:.1%})\n"
            f"Excluded (< {self.min_transcripts} transcripts): {c[EXCLUDED]:,}\n"
            f"Purity threshold: {self.purity_threshold}"
        )


def species_gene_masks(
    matrix: CountMatrix, prefix1: str, prefix2: str
) -> tuple[np.ndarray, np.ndarray]:
    """Boolean row masks selecting the genes of species 1 and species 2."""
    genes = matrix.genes
    m1 = np.fromiter((g.startswith(prefix1) for g in genes), dtype=bool, count=len(genes))
    m2 = np.fromiter((g.startswith(prefix2) for g in genes), dtype=bool, count=len(genes))
    # a gene matching both prefixes (one prefix extends the other) goes to the longer one
    both = m1 & m2
    if both.any():
        if len(prefix1) >= len(prefix2):
            m2 &= ~both
        else:
            m1 &= ~both
    if not m1.any():
        raise NoMatchingGenes(prefix1, f"No gene starts with species-1 prefix {prefix1!r}")
    if not m2.any():
        raise NoMatchingGenes(prefix2, f"No gene starts with species-2 prefix {prefix2!r}")
    return m1, m2


def _score_block(grid: np.ndarray, m1: np.ndarray, m2: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    return grid[m1, :].sum(axis=0), grid[m2, :].sum(axis=0)


def _label_cells(s1: np.ndarray, s2: np.ndarray, threshold: float) -> tuple[np.ndarray, np.ndarray]:
    total = s1 + s2
    safe = np.where(total > 0, total, 1)
    frac1 = s1 / safe
    frac2 = s2 / safe
    labels = np.full(len(total), DOUBLET, dtype=object)
    labels[frac1 >= threshold] = SPECIES1
    labels[frac2 >= threshold] = SPECIES2
    return labels, np.maximum(frac1, frac2)


def classify(
    matrix: CountMatrix,
    species1_prefix: str,
    species2_prefix: str,
    purity_threshold: float = 0.9,
    min_transcripts: float = 0,
    *,
    species: tuple[str, str] = (SPECIES1, SPECIES2),
    n_jobs: int = 1,
) -> ClassificationResult:
    """
    Classify every cell of *matrix* as species 1, species 2 or doublet.

    Parameters
    ----------
    matrix : CountMatrix
        Gene x cell counts with species-prefixed gene ids.
    species1_prefix, species2_prefix : str
        Gene id prefixes of the two species.
    purity_threshold : float
        Minimum dominant-species fraction for a pure call, in (0.5, 1.0].
    min_transcripts : float
        Cells with fewer species transcripts are excluded.
    species : tuple of str
        Display names stored on the result.
    n_jobs : int
        Number of threads; columns are scored in blocks and reassembled in
        the matrix's column order.

    Returns
    -------
    ClassificationResult
    """
    log = get_logger()
    if not 0.5 < purity_threshold <= 1.0:
        raise ValueError(f"purity_threshold must be in (0.5, 1.0], got {purity_threshold}")
    if min_transcripts < 0:
        raise ValueError(f"min_transcripts must be >= 0, got {min_transcripts}")
    if species1_prefix == species2_prefix:
        raise ValueError(f"Species prefixes must differ, both are {species1_prefix!r}")

    grid = matrix.values
    n_jobs = max(1, min(int(n_jobs), matrix.n_cells or 1))
    if matrix.n_cells == 0:
        # filters may leave no cell (and then no gene); that is an empty result
        s1 = s2 = np.zeros(0, dtype=grid.dtype)
    elif n_jobs == 1:
        m1, m2 = species_gene_masks(matrix, species1_prefix, species2_prefix)
        s1, s2 = _score_block(grid, m1, m2)
    else:
        m1, m2 = species_gene_masks(matrix, species1_prefix, species2_prefix)
        bounds = np.linspace(0, matrix.n_cells, n_jobs + 1, dtype=int)
        blocks = [grid[:, lo:hi] for lo, hi in zip(bounds[:-1], bounds[1:])]
        with ThreadPoolExecutor(max_workers=n_jobs) as pool:
            # map() yields in submission order, i.e. column order
            parts = list(pool.map(lambda b: _score_block(b, m1, m2), blocks))
        s1 = np.concatenate([p[0] for p in parts])
        s2 = np.concatenate([p[1] for p in parts])

    total = s1 + s2
    keep = (total >= min_transcripts) & (total > 0)
    cells = np.asarray(matrix.cells, dtype=object)
    labels, purity = _label_cells(s1[keep], s2[keep], purity_threshold)

    table = pd.DataFrame(
        {
            "species1_count": s1[keep],
            "species2_count": s2[keep],
            "total": total[keep],
            "purity": purity,
            "label": labels,
        },
        index=pd.Index(cells[keep], name=None, dtype=object),
    )
    result = ClassificationResult(
        table=table,
        excluded=tuple(cells[~keep]),
        species=tuple(species),
        prefixes=(species1_prefix, species2_prefix),
        purity_threshold=purity_threshold,
        min_transcripts=min_transcripts,
        parameters={"n_jobs": n_jobs},
    )
    log.info(f"Species classification: {fmt_counts(result.label_counts())}")
    return result


def split_by_species(
    matrix: CountMatrix, classification: ClassificationResult, species: str
) -> CountMatrix:
    """Columns of *matrix* classified as *species*; doublets and excluded cells are dropped."""
    wanted = set(classification.cells_with_label(species))
    return matrix.select_columns([c for c in matrix.cells if c in wanted])
