"""
Configuration management for dropmix.

Centralises default analysis thresholds, species settings, resource
limits, and output locations so that the pipeline and the CLI share a
single source of truth.
"""

from __future__ import annotations

import multiprocessing
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import psutil


# ---------------------------------------------------------------------------
# System resource helpers
# ---------------------------------------------------------------------------


def available_memory_gb() -> float:
    """Return available physical memory in GiB."""
    return psutil.virtual_memory().available / (1024**3)


def total_memory_gb() -> float:
    """Return total physical memory in GiB."""
    return psutil.virtual_memory().total / (1024**3)


def default_threads() -> int:
    """Sensible default thread count (leave 1–2 cores free)."""
    n = multiprocessing.cpu_count()
    return max(1, n - 2)


# ---------------------------------------------------------------------------
# Species defaults
# ---------------------------------------------------------------------------

# Mitochondrial gene prefixes for the organisms the toolkit knows about.
MITO_PREFIXES = {
    "human": "MT-",
    "mouse": "mt-",
    "melanogaster": "mt:",
}


# ---------------------------------------------------------------------------
# Analysis configuration dataclass
# ---------------------------------------------------------------------------


@dataclass
class DropMixConfig:
    """Master configuration object passed through the pipeline."""

    # --- I/O ---
    output_dir: Path = field(default_factory=lambda: Path("dropmix_output"))
    log_file: Optional[Path] = None  # defaults to output_dir / "dropmix.log"

    # --- Computing resources ---
    threads: int = field(default_factory=default_threads)
    max_memory_gb: float = field(default_factory=lambda: min(total_memory_gb() * 0.8, 28.0))

    # --- Species ---
    species1: str = "human"
    species2: Optional[str] = None  # None = single-species sample
    species1_prefix: str = "hg_"
    species2_prefix: str = "mm_"

    # --- Species classification ---
    purity_threshold: float = 0.9
    min_transcripts: int = 0

    # --- Barcode collapsing ---
    ambiguous_base: str = "N"
    barcode_prefix_length: int = 11

    # --- Cell / gene filtering (0 / None = disabled) ---
    min_umis: int = 1
    num_cells: Optional[int] = None
    min_genes: int = 0
    min_cells: int = 0
    mito_pattern: Optional[str] = None

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        if self.log_file is None:
            self.log_file = self.output_dir / "dropmix.log"
        else:
            self.log_file = Path(self.log_file)
        if not 0.5 < self.purity_threshold <= 1.0:
            raise ValueError(
                f"purity_threshold must be in (0.5, 1.0], got {self.purity_threshold}"
            )
        if self.min_transcripts < 0:
            raise ValueError(f"min_transcripts must be >= 0, got {self.min_transcripts}")
        if len(self.ambiguous_base) != 1:
            raise ValueError(f"ambiguous_base must be one character, got {self.ambiguous_base!r}")

    @property
    def is_mixed(self) -> bool:
        return self.species2 is not None

    @property
    def species(self) -> tuple[str, ...]:
        if self.species2 is None:
            return (self.species1,)
        return (self.species1, self.species2)

    @property
    def prefixes(self) -> tuple[str, str]:
        return (self.species1_prefix, self.species2_prefix)

    @property
    def tables_dir(self) -> Path:
        return self.output_dir / "tables"

    def ensure_dirs(self) -> None:
        """Create output directories if they do not exist."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.tables_dir.mkdir(parents=True, exist_ok=True)

    @property
    def system_summary(self) -> str:
        mem = total_memory_gb()
        cpu = multiprocessing.cpu_count()
        return (
            f"OS={platform.system()} {platform.release()}  "
            f"CPUs={cpu}  RAM={mem:.1f} GiB  "
            f"Threads={self.threads}  MaxMem={self.max_memory_gb:.1f} GiB"
        )
