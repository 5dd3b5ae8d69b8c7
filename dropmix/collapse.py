"""
Barcode collapsing.

Bead synthesis errors leave some beads with a barcode whose last base
could not be called; the read tagger reports it as an ambiguous base
(``N``).  Such a bead shows up as two or more barcodes that agree on the
first 11 bases, one of them ending in ``N``, while they are really the
same physical cell.  This module finds those barcodes and merges their
count columns.

Grouping rule
-------------
Barcodes are sorted and scanned pairwise.  An adjacent pair qualifies when
both share the first ``prefix_length`` characters and at least one of the
two ends in the ambiguous base.  Qualifying pairs that share a barcode are
chained, so a run ``a, b, c`` where ``a–b`` and ``b–c`` both qualify forms
one group ``{a, b, c}``.  Only sorted neighbours are compared: two
barcodes with a common prefix that are separated by a non-qualifying
barcode are not joined.

Each group collapses into its lexicographically first member.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

from dropmix.errors import UnknownLabel, _preview
from dropmix.matrix import CountMatrix
from dropmix.utils import get_logger


@dataclass(frozen=True)
class CollapseGroup:
    """Barcodes judged to come from one physical cell (sorted, >= 2 members)."""

    members: tuple[str, ...]

    def __post_init__(self) -> None:
        if len(self.members) < 2:
            raise ValueError(f"A collapse group needs at least two barcodes, got {self.members}")
        object.__setattr__(self, "members", tuple(sorted(self.members)))

    @property
    def target(self) -> str:
        """Barcode the group is merged into: the first one alphabetically."""
        return self.members[0]

    @property
    def prefix(self) -> str:
        return _common_prefix(self.members)

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self):
        return iter(self.members)


def _common_prefix(barcodes: Sequence[str]) -> str:
    first, last = min(barcodes), max(barcodes)
    n = 0
    while n < min(len(first), len(last)) and first[n] == last[n]:
        n += 1
    return first[:n]


def _is_candidate_pair(a: str, b: str, ambiguous_base: str, prefix_length: int) -> bool:
    if a[:prefix_length] != b[:prefix_length]:
        return False
    return a.endswith(ambiguous_base) or b.endswith(ambiguous_base)


def find_collapse_groups(
    cell_ids: Iterable[str],
    ambiguous_base: str = "N",
    prefix_length: int = 11,
    *,
    labels: Optional[Mapping[str, str]] = None,
) -> list[CollapseGroup]:
    """
    List barcodes that should be collapsed into a single cell.

    Parameters
    ----------
    cell_ids : iterable of str
        Observed cell barcodes.
    ambiguous_base : str
        Base call marking an undetermined position (default ``"N"``).
    prefix_length : int
        Number of leading characters two barcodes must share (default 11).
    labels : mapping, optional
        Cell → label (e.g. species classification).  When given, a pair only
        qualifies if both barcodes carry the same label; barcodes without a
        label never qualify.

    Returns
    -------
    list of CollapseGroup, ordered by their target barcode.
    """
    if len(ambiguous_base) != 1:
        raise ValueError(f"ambiguous_base must be a single character, got {ambiguous_base!r}")
    if prefix_length < 1:
        raise ValueError(f"prefix_length must be >= 1, got {prefix_length}")

    barcodes = sorted(set(cell_ids))
    groups: list[CollapseGroup] = []
    run: list[str] = []

    for a, b in zip(barcodes, barcodes[1:]):
        ok = _is_candidate_pair(a, b, ambiguous_base, prefix_length)
        if ok and labels is not None:
            la, lb = labels.get(a), labels.get(b)
            ok = la is not None and la == lb
        if ok:
            if not run:
                run.append(a)
            run.append(b)
        elif run:
            groups.append(CollapseGroup(tuple(run)))
            run = []
    if run:
        groups.append(CollapseGroup(tuple(run)))

    get_logger().debug(
        f"Barcode scan: {len(barcodes):,} barcodes → {len(groups):,} collapse groups "
        f"({sum(len(g) for g in groups):,} barcodes involved)"
    )
    return groups


def collapse(matrix: CountMatrix, groups: Sequence[CollapseGroup]) -> CountMatrix:
    """
    Merge each group's columns into the group's target barcode.

    Members that are no longer present (e.g. the matrix was already
    collapsed) are skipped and a group with a single remaining member is
    left alone, so collapsing twice gives the same matrix as collapsing
    once.  A group with no member in *matrix* at all raises
    :class:`~dropmix.errors.UnknownLabel`.
    """
    if not groups:
        return matrix

    present = set(matrix.cells)
    merges: list[tuple[str, list[str]]] = []
    for group in groups:
        members = [m for m in group.members if m in present]
        if not members:
            raise UnknownLabel(
                f"No barcode of collapse group {_preview(group.members)} is in the matrix",
                group.members,
            )
        if len(members) < 2:
            continue
        merges.append((group.target, members))

    if not merges:
        return matrix

    collapsed = matrix.merge_columns(merges)
    get_logger().info(
        f"Collapsed {sum(len(m) for _, m in merges):,} barcodes into {len(merges):,} cells "
        f"({matrix.n_cells:,} → {collapsed.n_cells:,} cells)"
    )
    return collapsed


def collapse_cells_by_barcode(
    matrix: CountMatrix,
    ambiguous_base: str = "N",
    prefix_length: int = 11,
    *,
    labels: Optional[Mapping[str, str]] = None,
) -> tuple[CountMatrix, list[CollapseGroup]]:
    """Find groups in *matrix* and collapse them. Returns (matrix, groups)."""
    groups = find_collapse_groups(
        matrix.cells, ambiguous_base, prefix_length, labels=labels
    )
    return collapse(matrix, groups), groups
