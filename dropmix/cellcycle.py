"""
Cell-cycle phase assignment (Macosko et al. 2015).

Each phase of the marker table gets a per-cell score, the mean of
``log2(x + 1)`` over the phase's marker genes found in the sample.  Scores
are z-scored per phase across cells, then per cell across phases, and each
cell is assigned its highest-scoring phase.

The marker table is plain data, ``{phase: [gene, ...]}``, e.g. the five
phases ``G1.S``, ``S``, ``G2.M``, ``M``, ``M.G1`` of the original paper.
Reading it from a spreadsheet is up to the caller.
"""

from __future__ import annotations

from typing import Mapping, Sequence, Union

import numpy as np
import pandas as pd

from dropmix.errors import NoMatchingGenes
from dropmix.matrix import CountMatrix
from dropmix.sample import SampleAggregate
from dropmix.utils import get_logger


# Within-phase sort keys for the five Macosko phases: each phase first,
# then its neighbours around the cycle.
PHASE_SORT_ORDERS = {
    "G1.S": ("G1.S", "S", "G2.M", "M", "M.G1"),
    "S": ("S", "G1.S", "G2.M", "M", "M.G1"),
    "G2.M": ("G2.M", "M", "S", "M.G1", "G1.S"),
    "M": ("M", "M.G1", "G2.M", "S", "G1.S"),
    "M.G1": ("M.G1", "G1.S", "G2.M", "S", "M"),
}


def _sort_keys(phase: str, phases: Sequence[str]) -> list[str]:
    """Sort keys for the block of cells assigned to *phase*.

    The five standard phases use :data:`PHASE_SORT_ORDERS`; any other
    marker table sorts by the phase itself, then the rest in table order.
    """
    known = PHASE_SORT_ORDERS.get(phase)
    if known is not None and set(known) == set(phases):
        return list(known)
    return [phase] + [p for p in phases if p != phase]


def _zscore(df: pd.DataFrame, axis: int) -> pd.DataFrame:
    # sample standard deviation, like R's scale()
    mean = df.mean(axis=axis)
    std = df.std(axis=axis, ddof=1)
    if axis == 0:
        return (df - mean) / std
    return df.sub(mean, axis=0).div(std, axis=0)


def phase_scores(matrix: CountMatrix, markers: Mapping[str, Sequence[str]]) -> pd.DataFrame:
    """Raw phase scores: cells x phases, mean log2(x + 1) over marker genes."""
    present = set(matrix.genes)
    logged = np.log2(matrix.to_frame().astype(float) + 1)
    scores = {}
    for phase, genes in markers.items():
        genes = [str(g).replace(" ", "") for g in genes if g is not None and str(g).strip()]
        found = [g for g in dict.fromkeys(genes) if g in present]
        if not found:
            raise NoMatchingGenes(phase, f"No marker gene of phase {phase!r} is in the sample")
        scores[phase] = logged.loc[found].mean(axis=0)
    return pd.DataFrame(scores, index=list(matrix.cells))


def assign_cell_cycle_phases(
    sample: Union[SampleAggregate, CountMatrix],
    markers: Mapping[str, Sequence[str]],
) -> pd.DataFrame:
    """
    Score every cell for every phase and assign the best one.

    Returns
    -------
    pd.DataFrame
        Indexed by cell, one column of normalised scores per phase (rounded
        to 2 decimals) plus ``phase``.  Rows are grouped by assigned phase in
        marker-table order; inside a group they are sorted in decreasing
        order of the keys given by :func:`_sort_keys`.  Cells whose scores
        cannot be normalised (e.g. a single cell) come last with phase ``None``.
    """
    matrix = sample.combined() if isinstance(sample, SampleAggregate) else sample
    phases = list(markers)
    raw = phase_scores(matrix, markers)
    norm = _zscore(_zscore(raw, axis=0), axis=1)

    values = norm.to_numpy(dtype=float)
    scorable = ~np.isnan(values).all(axis=1)
    best = np.full(len(norm), -1)
    if scorable.any():
        best[scorable] = np.nanargmax(values[scorable], axis=1)

    rounded = norm.round(2)
    blocks = []
    for k, phase in enumerate(phases):
        block = rounded[best == k]
        order = _sort_keys(phase, phases)
        block = block.sort_values(order, ascending=False, kind="stable")
        blocks.append(block.assign(phase=phase))
    leftover = rounded[best == -1]
    if len(leftover):
        blocks.append(leftover.assign(phase=None))

    result = pd.concat(blocks) if blocks else rounded.assign(phase=None)
    counts = result["phase"].value_counts()
    get_logger().info(
        "Cell-cycle phases: " + "  ".join(f"{p}={int(counts.get(p, 0)):,}" for p in phases)
    )
    return result
