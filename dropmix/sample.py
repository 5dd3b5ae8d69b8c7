"""
Single- and mixed-species samples.

A :class:`SampleAggregate` wraps the count matrix (or matrices) of one
experiment together with its species.  It comes in two shapes, told apart
by ``kind``:

``"single"``
    one matrix, one species name; every cell belongs to that species.
``"mixed"``
    two matrices over the same cells, one per species, whose gene ids carry
    the species prefixes.  Cells are assigned to a species (or called
    doublets) by :func:`dropmix.species.classify`.

Metrics (genes and transcripts per cell, mitochondrial percentage) are
written once and computed over all genes of the sample, whatever its kind.
Filters return new aggregates and never modify the one they are called on.
They compose, but the order matters: a gene filter applied after a cell
filter sees fewer cells, and vice versa.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from dropmix.collapse import CollapseGroup, collapse, find_collapse_groups
from dropmix.config import MITO_PREFIXES
from dropmix.errors import DimensionMismatch, NoMatchingGenes
from dropmix.matrix import CountMatrix
from dropmix.species import (
    DOUBLET,
    EXCLUDED,
    SPECIES1,
    SPECIES2,
    ClassificationResult,
    cell_purity,
    classify,
    species_gene_masks,
)
from dropmix.utils import get_logger

SINGLE = "single"
MIXED = "mixed"


@dataclass(frozen=True)
class SampleAggregate:
    """Count matrices of one sample plus its species annotation.

    Use :meth:`single`, :meth:`mixed` or :meth:`from_matrices` rather than
    the constructor.
    """

    kind: str
    species: tuple[str, ...]
    matrices: tuple[CountMatrix, ...]
    prefixes: tuple[str, ...] = ()
    purity_threshold: float = 0.9
    min_transcripts: float = 0

    def __post_init__(self) -> None:
        if self.kind == SINGLE:
            if len(self.matrices) != 1 or len(self.species) != 1:
                raise ValueError("A single-species sample holds exactly one matrix and one species")
        elif self.kind == MIXED:
            if len(self.matrices) != 2 or len(self.species) != 2 or len(self.prefixes) != 2:
                raise ValueError(
                    "A mixed-species sample holds two matrices, two species and two prefixes"
                )
            m1, m2 = self.matrices
            if m1.cells != m2.cells:
                raise DimensionMismatch(
                    "Species matrices of a mixed sample must share the same cells",
                    shape=m2.shape,
                    expected=(m2.n_genes, m1.n_cells),
                )
        else:
            raise ValueError(f"Unknown sample kind {self.kind!r}; expected 'single' or 'mixed'")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def single(cls, matrix: CountMatrix, species: str) -> "SampleAggregate":
        return cls(kind=SINGLE, species=(species,), matrices=(matrix,))

    @classmethod
    def from_matrices(
        cls,
        species1_matrix: CountMatrix,
        species2_matrix: CountMatrix,
        species: Sequence[str],
        prefixes: Sequence[str],
        *,
        purity_threshold: float = 0.9,
        min_transcripts: float = 0,
    ) -> "SampleAggregate":
        return cls(
            kind=MIXED,
            species=tuple(species),
            matrices=(species1_matrix, species2_matrix),
            prefixes=tuple(prefixes),
            purity_threshold=purity_threshold,
            min_transcripts=min_transcripts,
        )

    @classmethod
    def mixed(
        cls,
        matrix: CountMatrix,
        species: Sequence[str],
        prefixes: Sequence[str],
        *,
        purity_threshold: float = 0.9,
        min_transcripts: float = 0,
    ) -> "SampleAggregate":
        """Split a combined matrix into its two species by gene prefix.

        Genes carrying neither prefix are dropped (with a warning).
        """
        p1, p2 = prefixes
        m1, m2 = species_gene_masks(matrix, p1, p2)
        genes1 = [g for g, keep in zip(matrix.genes, m1) if keep]
        genes2 = [g for g, keep in zip(matrix.genes, m2) if keep]
        n_other = matrix.n_genes - len(genes1) - len(genes2)
        if n_other:
            get_logger().warning(
                f"Dropping {n_other:,} genes without a species prefix ({p1!r} / {p2!r})"
            )
        return cls.from_matrices(
            matrix.select_rows(genes1),
            matrix.select_rows(genes2),
            species,
            prefixes,
            purity_threshold=purity_threshold,
            min_transcripts=min_transcripts,
        )

    def _with_matrices(self, matrices: Iterable[CountMatrix]) -> "SampleAggregate":
        return replace(self, matrices=tuple(matrices))

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def is_mixed(self) -> bool:
        return self.kind == MIXED

    @property
    def cells(self) -> tuple[str, ...]:
        return self.matrices[0].cells

    @property
    def genes(self) -> tuple[str, ...]:
        return tuple(g for m in self.matrices for g in m.genes)

    @property
    def n_cells(self) -> int:
        return self.matrices[0].n_cells

    @property
    def n_genes(self) -> int:
        return sum(m.n_genes for m in self.matrices)

    def combined(self) -> CountMatrix:
        """All genes of the sample in one matrix."""
        if self.kind == SINGLE:
            return self.matrices[0]
        return self.matrices[0].concat_rows(self.matrices[1])

    def __repr__(self) -> str:
        return (
            f"SampleAggregate({self.kind}, species={'/'.join(self.species)}, "
            f"{self.n_genes} genes x {self.n_cells} cells)"
        )

    # ------------------------------------------------------------------
    # Species
    # ------------------------------------------------------------------

    def classify(self, n_jobs: int = 1) -> ClassificationResult:
        if self.kind != MIXED:
            raise ValueError("Only mixed-species samples can be classified")
        return classify(
            self.combined(),
            self.prefixes[0],
            self.prefixes[1],
            self.purity_threshold,
            self.min_transcripts,
            species=(self.species[0], self.species[1]),
            n_jobs=n_jobs,
        )

    def purity_of(self, cell: str) -> float:
        """Dominant-species fraction of one cell, whatever the transcript floor.

        Raises :class:`~dropmix.errors.UndefinedPurity` for a cell without
        species transcripts and :class:`~dropmix.errors.UnknownLabel` for an
        unknown cell.
        """
        if self.kind != MIXED:
            raise ValueError("Purity is only defined for mixed-species samples")
        s1, s2 = (m.select_columns([cell]).values.sum() for m in self.matrices)
        return cell_purity(s1, s2, cell=cell)

    def species_labels(self, classification: Optional[ClassificationResult] = None) -> pd.Series:
        """Species name per cell, in column order.

        Mixed samples use the classification (computed when not given):
        pure cells get their species name, others ``doublet`` or ``excluded``.
        """
        cells = list(self.cells)
        if self.kind == SINGLE:
            return pd.Series(self.species[0], index=cells, name="species", dtype=object)
        if classification is None:
            classification = self.classify()
        names = {
            SPECIES1: self.species[0],
            SPECIES2: self.species[1],
            DOUBLET: DOUBLET,
        }
        labels = classification.labels.map(names)
        return labels.reindex(cells).fillna(EXCLUDED).astype(object).rename("species")

    def split_by_species(
        self, species: str, classification: Optional[ClassificationResult] = None
    ) -> "SampleAggregate":
        """Single-species sample of the cells classified as *species*."""
        if self.kind != MIXED:
            raise ValueError("Only mixed-species samples can be split by species")
        if classification is None:
            classification = self.classify()
        label = classification.resolve_label(species)
        if label == DOUBLET:
            raise ValueError("Doublets do not belong to a species")
        idx = 0 if label == SPECIES1 else 1
        wanted = set(classification.cells_with_label(label))
        matrix = self.matrices[idx]
        return SampleAggregate.single(
            matrix.select_columns([c for c in matrix.cells if c in wanted]),
            self.species[idx],
        )

    # ------------------------------------------------------------------
    # Per-cell metrics
    # ------------------------------------------------------------------

    def _metric_table(
        self, values: pd.Series, classification: Optional[ClassificationResult], column: str = "counts"
    ) -> pd.DataFrame:
        labels = self.species_labels(classification)
        return pd.DataFrame(
            {
                "cells": list(self.cells),
                column: values.reindex(list(self.cells)).to_numpy(),
                "species": labels.to_numpy(),
            }
        )

    def genes_per_cell(
        self, min_umis: float = 1, classification: Optional[ClassificationResult] = None
    ) -> pd.DataFrame:
        """Number of genes with at least *min_umis* UMIs, per cell."""
        counts = sum(m.genes_detected(min_umis) for m in self.matrices)
        return self._metric_table(counts, classification)

    def transcripts_per_cell(self, classification: Optional[ClassificationResult] = None) -> pd.DataFrame:
        """Number of transcripts (UMIs), per cell."""
        return self._metric_table(self._cell_totals(), classification)

    def _cell_totals(self) -> pd.Series:
        return sum(m.column_sums() for m in self.matrices)

    def _genes_detected(self) -> pd.Series:
        return sum(m.genes_detected(1) for m in self.matrices)

    def default_mito_pattern(self) -> str:
        """Regular expression selecting mitochondrial genes for this sample's species."""
        parts = []
        for i, name in enumerate(self.species):
            if name not in MITO_PREFIXES:
                raise ValueError(
                    f"No default mitochondrial prefix for species {name!r}; pass a pattern"
                )
            prefix = self.prefixes[i] if self.kind == MIXED else ""
            parts.append("^" + re.escape(prefix + MITO_PREFIXES[name]))
        return "|".join(parts)

    def mitochondrial_percentage(self, pattern: Optional[str] = None) -> pd.Series:
        """Percentage of each cell's UMIs coming from mitochondrial genes.

        Raises :class:`~dropmix.errors.NoMatchingGenes` if *pattern* matches
        no gene. Cells without any UMI get NaN.
        """
        if pattern is None:
            pattern = self.default_mito_pattern()
        matrix = self.combined()
        mt_genes = matrix.genes_matching(pattern)
        if not mt_genes:
            raise NoMatchingGenes(pattern, f"No mitochondrial gene matches {pattern!r}")
        mito = matrix.select_rows(mt_genes).column_sums().astype(float)
        total = matrix.column_sums().astype(float)
        pct = 100.0 * mito / total.where(total > 0)
        return pct.rename("mito_pct")

    # ------------------------------------------------------------------
    # Per-gene statistics
    # ------------------------------------------------------------------

    def gene_expression_mean(self) -> pd.Series:
        """Mean count of each gene across cells."""
        return self.combined().to_frame().mean(axis=1).rename("mean")

    def gene_expression_dispersion(self) -> pd.Series:
        """Variance-to-mean ratio of each gene across cells (NaN for unexpressed genes)."""
        df = self.combined().to_frame()
        mean = df.mean(axis=1)
        return (df.var(axis=1) / mean.where(mean > 0)).rename("dispersion")

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _keep_cells(self, keep: Sequence[str], reason: str) -> "SampleAggregate":
        out = self._with_matrices(m.select_columns(keep) for m in self.matrices)
        get_logger().debug(f"{reason}: {self.n_cells:,} → {out.n_cells:,} cells")
        return out

    def remove_cells(self, cells: Iterable[str]) -> "SampleAggregate":
        """Drop the given cells; every id must be present."""
        cells = list(cells)
        out = self._with_matrices(m.drop_columns(cells) for m in self.matrices)
        get_logger().debug(f"Removed {len(cells):,} cells: {self.n_cells:,} → {out.n_cells:,}")
        return out

    def keep_top_cells_by_rank(self, n: int) -> "SampleAggregate":
        """Keep the *n* cells with the most transcripts.

        Ties are broken by column order; the kept cells stay in column order.
        """
        if n < 0:
            raise ValueError(f"n must be >= 0, got {n}")
        totals = self._cell_totals()
        order = np.argsort(-totals.to_numpy(), kind="stable")[:n]
        chosen = set(totals.index[order])
        return self._keep_cells([c for c in self.cells if c in chosen], f"Top {n} cells")

    def keep_cells_above_transcript_floor(self, min_transcripts: float) -> "SampleAggregate":
        """Keep cells with at least *min_transcripts* transcripts."""
        totals = self._cell_totals()
        keep = list(totals.index[totals >= min_transcripts])
        return self._keep_cells(keep, f"Transcript floor {min_transcripts}")

    def drop_cells_below_gene_floor(self, min_genes: int) -> "SampleAggregate":
        """Drop cells expressing fewer than *min_genes* genes."""
        detected = self._genes_detected()
        keep = list(detected.index[detected >= min_genes])
        return self._keep_cells(keep, f"Gene floor {min_genes}")

    def drop_genes_below_cell_floor(self, min_cells: int) -> "SampleAggregate":
        """Drop genes expressed in fewer than *min_cells* cells."""
        out = []
        for m in self.matrices:
            detected = m.cells_detected(1)
            out.append(m.select_rows(list(detected.index[detected >= min_cells])))
        result = self._with_matrices(out)
        get_logger().debug(f"Cell floor {min_cells}: {self.n_genes:,} → {result.n_genes:,} genes")
        return result

    # ------------------------------------------------------------------
    # Barcode collapsing
    # ------------------------------------------------------------------

    def find_collapse_groups(
        self, ambiguous_base: str = "N", prefix_length: int = 11
    ) -> list[CollapseGroup]:
        """Collapse candidates; in mixed samples only cells with the same call pair up."""
        labels = None
        if self.kind == MIXED:
            labels = self.species_labels().to_dict()
            labels = {c: l for c, l in labels.items() if l != EXCLUDED}
        return find_collapse_groups(self.cells, ambiguous_base, prefix_length, labels=labels)

    def collapse_cells_by_barcode(
        self, ambiguous_base: str = "N", prefix_length: int = 11
    ) -> "SampleAggregate":
        groups = self.find_collapse_groups(ambiguous_base, prefix_length)
        if not groups:
            return self
        return self._with_matrices(collapse(m, groups) for m in self.matrices)
