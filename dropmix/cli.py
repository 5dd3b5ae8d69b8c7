"""
Command-line interface for dropmix.

Usage examples
--------------
# Run the full pipeline on a human/mouse mixing experiment
dropmix run \\
    --counts sample.dge.txt.gz \\
    --species1 human --species2 mouse \\
    --prefix1 hg_ --prefix2 mm_ \\
    --purity-threshold 0.9 --min-transcripts 500 \\
    --output-dir ./results

# Run individual steps
dropmix collapse --counts sample.dge.txt.gz --output collapsed.csv
dropmix classify --counts collapsed.csv --species1 human --species2 mouse -o ./results

# Show system resources and defaults
dropmix info
"""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dropmix import __version__
from dropmix.config import DropMixConfig, available_memory_gb
from dropmix.errors import DropMixError
from dropmix.utils import get_logger, write_table

console = Console(stderr=True)

# Banner
BANNER = r"""
     _                           _
  __| |_ __ ___  _ __  _ __ ___ (_)_  __
 / _` | '__/ _ \| '_ \| '_ ` _ \| \ \/ /
| (_| | | | (_) | |_) | | | | | | |>  <
 \__,_|_|  \___/| .__/|_| |_| |_|_/_/\_\
                |_|
  Species Mixing & Barcode Collapsing
"""


def _species_options(f):
    """Shared species / classification options."""
    options = [
        click.option("--species1", default="human", show_default=True, help="Name of species 1."),
        click.option(
            "--species2", default=None, help="Name of species 2 (omit for a single-species sample)."
        ),
        click.option("--prefix1", default="hg_", show_default=True, help="Gene id prefix of species 1."),
        click.option("--prefix2", default="mm_", show_default=True, help="Gene id prefix of species 2."),
        click.option(
            "--purity-threshold",
            default=0.9,
            show_default=True,
            type=float,
            help="Minimum dominant-species fraction for a pure call.",
        ),
        click.option(
            "--min-transcripts",
            default=0,
            show_default=True,
            type=int,
            help="Cells with fewer species transcripts are excluded.",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _make_config(**kwargs) -> DropMixConfig:
    try:
        return DropMixConfig(**kwargs)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


# ======================================================================
# Top-level group
# ======================================================================


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__, prog_name="dropmix")
def main():
    """dropmix: Species Mixing & Barcode Collapsing for single-cell counts."""
    pass


# ======================================================================
# dropmix info: system resources and defaults
# ======================================================================


@main.command()
def info():
    """Show system resources and default analysis settings."""
    console.print(BANNER, style="bold magenta")
    cfg = DropMixConfig()
    tbl = Table(title="Default Settings", show_lines=True)
    tbl.add_column("Setting", style="bold")
    tbl.add_column("Value")
    for name in (
        "threads",
        "purity_threshold",
        "min_transcripts",
        "ambiguous_base",
        "barcode_prefix_length",
        "min_umis",
    ):
        tbl.add_row(name, str(getattr(cfg, name)))
    console.print(tbl)
    console.print(cfg.system_summary)
    console.print(f"Available RAM: {available_memory_gb():.1f} GiB")


# ======================================================================
# dropmix collapse: merge bead-synthesis-error barcodes
# ======================================================================


@main.command("collapse")
@click.option("--counts", "-c", required=True, type=click.Path(exists=True), help="Count table.")
@click.option("--output", "-o", required=True, type=click.Path(), help="Collapsed count table (CSV).")
@click.option("--ambiguous-base", default="N", show_default=True, help="Undetermined base call.")
@click.option("--prefix-length", default=11, show_default=True, type=int, help="Shared barcode prefix length.")
def collapse_cmd(counts, output, ambiguous_base, prefix_length):
    """Collapse barcodes that differ only by an ambiguous last base."""
    from dropmix.collapse import collapse_cells_by_barcode
    from dropmix.pipeline import read_count_table

    output = Path(output)
    get_logger(output.parent / "dropmix.log")
    try:
        matrix = read_count_table(Path(counts))
        collapsed, groups = collapse_cells_by_barcode(matrix, ambiguous_base, prefix_length)
    except (DropMixError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    frame = collapsed.to_frame().reset_index()
    write_table(frame, output)
    console.print(
        f"[green]{len(groups)} collapse groups: {matrix.n_cells:,} → {collapsed.n_cells:,} cells[/green]"
    )


# ======================================================================
# dropmix classify: species / doublet calls
# ======================================================================


@main.command("classify")
@click.option("--counts", "-c", required=True, type=click.Path(exists=True), help="Count table.")
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
@_species_options
@click.option("--threads", "-t", default=None, type=int, help="Number of threads.")
def classify_cmd(
    counts, output_dir, species1, species2, prefix1, prefix2, purity_threshold, min_transcripts, threads
):
    """Classify cells of a mixed-species sample as species 1, species 2 or doublet."""
    from dropmix.pipeline import build_sample, read_count_table

    if species2 is None:
        raise click.UsageError("classify needs two species: pass --species2.")
    cfg = _make_config(
        output_dir=output_dir,
        species1=species1,
        species2=species2,
        species1_prefix=prefix1,
        species2_prefix=prefix2,
        purity_threshold=purity_threshold,
        min_transcripts=min_transcripts,
    )
    if threads:
        cfg.threads = threads
    get_logger(cfg.log_file)

    try:
        sample = build_sample(read_count_table(Path(counts)), cfg)
        result = sample.classify(n_jobs=cfg.threads)
    except DropMixError as exc:
        raise click.ClickException(str(exc)) from exc

    cfg.ensure_dirs()
    write_table(result.to_frame(), cfg.tables_dir / "classification.csv")

    tbl = Table(title="Species Calls", show_lines=True)
    tbl.add_column("Label", style="bold cyan")
    tbl.add_column("Cells", justify="right")
    for label, n in result.label_counts().items():
        tbl.add_row(result.species_name(label), f"{n:,}")
    console.print(tbl)
    console.print(Panel(result.summary(), title="Classification Results", border_style="green"))


# ======================================================================
# dropmix run: full pipeline
# ======================================================================


@main.command("run")
@click.option("--counts", "-c", required=True, type=click.Path(exists=True), help="Count table.")
@click.option(
    "--output-dir", "-o", default="dropmix_output", type=click.Path(), help="Output directory."
)
@_species_options
@click.option("--num-cells", default=None, type=int, help="Keep the N cells with most transcripts.")
@click.option("--min-genes", default=0, type=int, help="Drop cells with fewer detected genes.")
@click.option("--min-cells", default=0, type=int, help="Drop genes detected in fewer cells.")
@click.option("--min-umis", default=1, type=int, help="UMIs for a gene to count as detected.")
@click.option("--mito-pattern", default=None, help="Regex of mitochondrial genes (enables mito %).")
@click.option("--threads", "-t", default=None, type=int, help="Number of threads (default: auto).")
@click.option("--skip-collapse", is_flag=True, help="Skip barcode collapsing.")
@click.option("--skip-filter", is_flag=True, help="Skip cell/gene filtering.")
def run_cmd(
    counts,
    output_dir,
    species1,
    species2,
    prefix1,
    prefix2,
    purity_threshold,
    min_transcripts,
    num_cells,
    min_genes,
    min_cells,
    min_umis,
    mito_pattern,
    threads,
    skip_collapse,
    skip_filter,
):
    """Run the complete dropmix pipeline."""
    console.print(BANNER, style="bold magenta")

    cfg = _make_config(
        output_dir=Path(output_dir),
        species1=species1,
        species2=species2,
        species1_prefix=prefix1,
        species2_prefix=prefix2,
        purity_threshold=purity_threshold,
        min_transcripts=min_transcripts,
        num_cells=num_cells,
        min_genes=min_genes,
        min_cells=min_cells,
        min_umis=min_umis,
        mito_pattern=mito_pattern,
    )
    if threads:
        cfg.threads = threads

    log = get_logger(cfg.log_file)

    from dropmix.pipeline import run_pipeline

    try:
        result = run_pipeline(
            Path(counts), cfg=cfg, skip_collapse=skip_collapse, skip_filter=skip_filter
        )
    except DropMixError as exc:
        log.error(str(exc))
        raise click.ClickException(str(exc)) from exc

    # Final summary
    tbl = Table(title="Pipeline Results", show_lines=True)
    tbl.add_column("Output", style="bold cyan")
    tbl.add_column("Path", style="green")
    for p in result.tables:
        tbl.add_row(p.stem, str(p))
    console.print(tbl)


if __name__ == "__main__":
    main()
