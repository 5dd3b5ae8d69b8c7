"""
Shared utility helpers for dropmix.

Covers the package logger, elapsed-time formatting, and small path and
table helpers used by the host pipeline.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import pandas as pd
from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_logger: Optional[logging.Logger] = None


def get_logger(log_file: Optional[Path] = None) -> logging.Logger:
    """Return (and lazily configure) the package-wide logger.

    A log file passed after the first call is still attached, so the CLI can
    point an already-configured logger at the run's output directory.
    """
    global _logger
    if _logger is None:
        _logger = logging.getLogger("dropmix")
        _logger.setLevel(logging.DEBUG)

        # Rich console handler (INFO+)
        rh = RichHandler(console=console, show_path=False, markup=True)
        rh.setLevel(logging.INFO)
        _logger.addHandler(rh)

    if log_file is not None:
        log_file = Path(log_file)
        attached = {
            getattr(h, "baseFilename", None)
            for h in _logger.handlers
            if isinstance(h, logging.FileHandler)
        }
        if os.path.abspath(log_file) not in attached:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setLevel(logging.DEBUG)
            fmt = logging.Formatter("%(asctime)s  %(levelname)-8s  %(message)s")
            fh.setFormatter(fmt)
            _logger.addHandler(fh)

    return _logger


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def fmt_elapsed(seconds: float) -> str:
    """Format seconds into H:MM:SS or M:SS."""
    h, rem = divmod(int(seconds), 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def fmt_counts(counts: dict) -> str:
    """Render ``{label: n}`` as ``label=n`` pairs for log lines."""
    return "  ".join(f"{k}={v:,}" for k, v in counts.items())


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def ensure_parent(path: Path) -> Path:
    """Create parent directories and return *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_table(df: pd.DataFrame, path: Path) -> Path:
    """Write *df* as CSV (no index) and log where it went."""
    ensure_parent(path)
    df.to_csv(path, index=False)
    get_logger().info(f"Saved table → {path}")
    return path
