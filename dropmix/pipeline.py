"""
Full pipeline orchestrator.

Chains every module together:
  Load counts → Collapse barcodes → Classify species → Filter → Tables

Provides step logging through Rich, elapsed-time tracking, and optional
step-skipping for partial reruns.  Everything that touches the file system
lives here; the analysis modules only see in-memory matrices.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd
from rich.console import Console
from rich.panel import Panel

from dropmix.collapse import CollapseGroup
from dropmix.config import DropMixConfig
from dropmix.matrix import CountMatrix
from dropmix.sample import SampleAggregate
from dropmix.species import ClassificationResult
from dropmix.utils import fmt_elapsed, get_logger, write_table

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Count table loading
# ---------------------------------------------------------------------------


def read_count_table(path: Path) -> CountMatrix:
    """
    Read a gene x cell count table (genes in the first column, one column
    per cell barcode).  ``.csv`` is comma-separated, anything else
    (``.tsv``, ``.txt``, Drop-seq ``.dge.txt.gz``) tab-separated.
    """
    log = get_logger()
    path = Path(path)
    suffixes = [s.lower() for s in path.suffixes if s.lower() != ".gz"]
    sep = "," if suffixes and suffixes[-1] == ".csv" else "\t"
    df = pd.read_csv(path, sep=sep, index_col=0)
    df.index = df.index.astype(str)
    matrix = CountMatrix.from_frame(df.fillna(0))
    log.info(f"Loaded {path.name}: {matrix.n_genes:,} genes x {matrix.n_cells:,} cells")
    return matrix


def build_sample(matrix: CountMatrix, cfg: DropMixConfig) -> SampleAggregate:
    """Wrap *matrix* as a single- or mixed-species sample according to *cfg*."""
    if cfg.is_mixed:
        return SampleAggregate.mixed(
            matrix,
            cfg.species,
            cfg.prefixes,
            purity_threshold=cfg.purity_threshold,
            min_transcripts=cfg.min_transcripts,
        )
    return SampleAggregate.single(matrix, cfg.species1)


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------


@dataclass
class PipelineResult:
    """Container for all pipeline outputs."""

    sample: Optional[SampleAggregate] = None
    collapse_groups: list[CollapseGroup] = field(default_factory=list)
    classification: Optional[ClassificationResult] = None
    cells_loaded: int = 0
    cells_after_collapse: int = 0
    genes_per_cell: Optional[pd.DataFrame] = None
    transcripts_per_cell: Optional[pd.DataFrame] = None
    mito_pct: Optional[pd.Series] = None
    tables: list[Path] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def summary_rows(self) -> list[tuple[str, str, object]]:
        rows: list[tuple[str, str, object]] = [
            ("Load", "cells", self.cells_loaded),
            ("Collapse", "groups", len(self.collapse_groups)),
            ("Collapse", "cells_after", self.cells_after_collapse),
        ]
        if self.classification is not None:
            for label, n in self.classification.label_counts().items():
                rows.append(("Classification", label, n))
        if self.sample is not None:
            rows.append(("Filter", "cells_after", self.sample.n_cells))
            rows.append(("Filter", "genes_after", self.sample.n_genes))
        rows.append(("Pipeline", "elapsed_seconds", round(self.elapsed_seconds, 2)))
        return rows


# ---------------------------------------------------------------------------
# Result table writer
# ---------------------------------------------------------------------------


def _write_result_tables(result: PipelineResult, cfg: DropMixConfig) -> None:
    """Write pipeline results as CSV tables for programmatic access."""
    tables_dir = cfg.tables_dir

    if result.collapse_groups:
        groups_df = pd.DataFrame(
            [(g.target, ";".join(g.members), len(g)) for g in result.collapse_groups],
            columns=["target", "members", "size"],
        )
        result.tables.append(write_table(groups_df, tables_dir / "collapse_groups.csv"))

    if result.classification is not None:
        result.tables.append(
            write_table(result.classification.to_frame(), tables_dir / "classification.csv")
        )

    if result.genes_per_cell is not None:
        result.tables.append(write_table(result.genes_per_cell, tables_dir / "genes_per_cell.csv"))
    if result.transcripts_per_cell is not None:
        result.tables.append(
            write_table(result.transcripts_per_cell, tables_dir / "transcripts_per_cell.csv")
        )
    if result.mito_pct is not None:
        mito_df = result.mito_pct.rename_axis("cells").reset_index()
        result.tables.append(write_table(mito_df, tables_dir / "mito_pct.csv"))

    summary_df = pd.DataFrame(result.summary_rows(), columns=["Step", "Metric", "Value"])
    result.tables.append(write_table(summary_df, tables_dir / "pipeline_summary.csv"))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def apply_filters(sample: SampleAggregate, cfg: DropMixConfig) -> SampleAggregate:
    """Apply the configured filters in a fixed order: top cells, gene floor, cell floor."""
    log = get_logger()
    if cfg.num_cells is not None:
        sample = sample.keep_top_cells_by_rank(cfg.num_cells)
        log.info(f"Kept top {cfg.num_cells:,} cells by transcripts → {sample.n_cells:,} cells")
    if cfg.min_genes > 0:
        sample = sample.drop_cells_below_gene_floor(cfg.min_genes)
        log.info(f"Cells with ≥ {cfg.min_genes} genes: {sample.n_cells:,}")
    if cfg.min_cells > 0:
        sample = sample.drop_genes_below_cell_floor(cfg.min_cells)
        log.info(f"Genes detected in ≥ {cfg.min_cells} cells: {sample.n_genes:,}")
    return sample


def run_pipeline(
    counts: Path,
    *,
    cfg: Optional[DropMixConfig] = None,
    skip_collapse: bool = False,
    skip_filter: bool = False,
) -> PipelineResult:
    """
    Execute the complete dropmix pipeline.

    Parameters
    ----------
    counts : Path
        Gene x cell count table.
    cfg : DropMixConfig
        Pipeline configuration.
    skip_* : bool
        Skip individual pipeline steps (for partial reruns).

    Returns
    -------
    PipelineResult with the final sample, the classification and table paths.
    """
    log = get_logger()
    if cfg is None:
        cfg = DropMixConfig()

    cfg.ensure_dirs()
    log.info(f"System: {cfg.system_summary}")
    result = PipelineResult()
    t0 = time.perf_counter()

    console.print(
        Panel.fit(
            "[bold magenta]dropmix[/bold magenta]: "
            "Species Mixing & Barcode Collapsing\n"
            f"Input: {Path(counts).name}  Species: {' / '.join(cfg.species)}\n"
            f"Output: {cfg.output_dir}",
            border_style="blue",
        )
    )

    # ================================================================
    # Step 1: Load counts
    # ================================================================
    log.info("[bold]Step 1/4: Loading count table[/bold]")
    matrix = read_count_table(Path(counts))
    sample = build_sample(matrix, cfg)
    result.cells_loaded = sample.n_cells

    # ================================================================
    # Step 2: Barcode collapsing
    # ================================================================
    if not skip_collapse:
        log.info("[bold]Step 2/4: Collapsing barcodes[/bold]")
        result.collapse_groups = sample.find_collapse_groups(
            cfg.ambiguous_base, cfg.barcode_prefix_length
        )
        sample = sample.collapse_cells_by_barcode(cfg.ambiguous_base, cfg.barcode_prefix_length)
    else:
        log.info("Skipping barcode collapsing (--skip-collapse)")
    result.cells_after_collapse = sample.n_cells

    # ================================================================
    # Step 3: Filtering
    # ================================================================
    if not skip_filter:
        log.info("[bold]Step 3/4: Filtering cells and genes[/bold]")
        sample = apply_filters(sample, cfg)
    else:
        log.info("Skipping filtering (--skip-filter)")

    # ================================================================
    # Step 4: Classification and per-cell metrics
    # ================================================================
    log.info("[bold]Step 4/4: Per-cell metrics[/bold]")
    if sample.is_mixed:
        result.classification = sample.classify(n_jobs=cfg.threads)
        log.info(f"Classification summary:\n{result.classification.summary()}")
    result.genes_per_cell = sample.genes_per_cell(cfg.min_umis, result.classification)
    result.transcripts_per_cell = sample.transcripts_per_cell(result.classification)
    if sample.n_cells == 0:
        log.warning("No cells left after filtering; metric tables will be empty")
    elif cfg.mito_pattern is not None:
        result.mito_pct = sample.mitochondrial_percentage(cfg.mito_pattern)
    result.sample = sample

    result.elapsed_seconds = time.perf_counter() - t0
    _write_result_tables(result, cfg)

    console.print(
        Panel.fit(
            f"[bold green]Pipeline completed in {fmt_elapsed(result.elapsed_seconds)}[/bold green]\n"
            f"Output directory: {cfg.output_dir}",
            border_style="green",
        )
    )
    return result
