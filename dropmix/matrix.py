"""
Labelled gene x cell count matrix.

``CountMatrix`` is the value type every other module works on: rows are
genes, columns are cell barcodes, values are non-negative counts (UMIs).
It is immutable; subsetting and merging return new matrices, so a matrix
handed to one analysis step can never be changed behind another's back.

Conversion to and from :class:`pandas.DataFrame` (index = genes,
columns = cells) is provided for I/O and export.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from dropmix.errors import (
    ConflictingGroup,
    DimensionMismatch,
    DuplicateLabel,
    NegativeCount,
    NonFiniteCount,
    UnknownLabel,
    _preview,
)


def _check_unique(labels: tuple[str, ...], what: str) -> None:
    if len(set(labels)) != len(labels):
        dups = [k for k, n in Counter(labels).items() if n > 1]
        raise DuplicateLabel(f"Duplicate {what} id(s): {_preview(dups)}", dups)


class CountMatrix:
    """Immutable gene x cell count table.

    Parameters
    ----------
    genes : sequence of str
        Row labels, must be unique.
    cells : sequence of str
        Column labels (barcodes), must be unique.
    grid : array-like
        2-D array of shape ``(len(genes), len(cells))`` with non-negative values.
    """

    __slots__ = ("_genes", "_cells", "_grid", "_gene_pos", "_cell_pos")

    def __init__(self, genes: Sequence[str], cells: Sequence[str], grid) -> None:
        genes = tuple(str(g) for g in genes)
        cells = tuple(str(c) for c in cells)
        arr = np.array(grid, copy=True)
        if arr.dtype == object or arr.dtype.kind not in "biuf":
            arr = arr.astype(float)
        if arr.ndim != 2:
            raise DimensionMismatch(
                f"Count grid must be 2-D, got {arr.ndim}-D",
                shape=arr.shape,
                expected=(len(genes), len(cells)),
            )
        expected = (len(genes), len(cells))
        if arr.shape != expected:
            raise DimensionMismatch(
                f"Grid shape {arr.shape} does not match "
                f"{len(genes)} genes x {len(cells)} cells",
                shape=arr.shape,
                expected=expected,
            )
        _check_unique(genes, "gene")
        _check_unique(cells, "cell")
        if arr.dtype.kind == "f" and not np.isfinite(arr).all():
            rows, cols = np.nonzero(~np.isfinite(arr))
            bad = sorted({cells[c] for c in cols})
            raise NonFiniteCount(f"NaN or infinite counts in cell(s) {_preview(bad)}", bad)
        if arr.size and arr.min() < 0:
            rows, cols = np.nonzero(arr < 0)
            bad = sorted({cells[c] for c in cols})
            raise NegativeCount(f"Negative counts in cell(s) {_preview(bad)}", bad)

        arr.setflags(write=False)
        self._genes = genes
        self._cells = cells
        self._grid = arr
        self._gene_pos: Optional[dict[str, int]] = None
        self._cell_pos: Optional[dict[str, int]] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, gene_ids: Sequence[str], cell_ids: Sequence[str], grid) -> "CountMatrix":
        """Validate and build a matrix (same as calling the class)."""
        return cls(gene_ids, cell_ids, grid)

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "CountMatrix":
        """Build from a DataFrame with genes on the index and cells as columns."""
        return cls(list(df.index), list(df.columns), df.to_numpy())

    @classmethod
    def empty(cls) -> "CountMatrix":
        return cls((), (), np.zeros((0, 0)))

    def to_frame(self) -> pd.DataFrame:
        """Return a (writable) DataFrame copy of the matrix."""
        return pd.DataFrame(
            np.array(self._grid, copy=True),
            index=pd.Index(self._genes, name="gene"),
            columns=list(self._cells),
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def genes(self) -> tuple[str, ...]:
        return self._genes

    @property
    def cells(self) -> tuple[str, ...]:
        return self._cells

    @property
    def values(self) -> np.ndarray:
        """Read-only view of the count grid."""
        return self._grid

    @property
    def shape(self) -> tuple[int, int]:
        return self._grid.shape

    @property
    def n_genes(self) -> int:
        return len(self._genes)

    @property
    def n_cells(self) -> int:
        return len(self._cells)

    def _gene_index(self) -> dict[str, int]:
        if self._gene_pos is None:
            self._gene_pos = {g: i for i, g in enumerate(self._genes)}
        return self._gene_pos

    def _cell_index(self) -> dict[str, int]:
        if self._cell_pos is None:
            self._cell_pos = {c: i for i, c in enumerate(self._cells)}
        return self._cell_pos

    def _resolve(self, labels: Iterable[str], index: dict[str, int], what: str) -> list[int]:
        labels = list(labels)
        missing = [x for x in labels if x not in index]
        if missing:
            raise UnknownLabel(f"Unknown {what} id(s): {_preview(missing)}", missing)
        return [index[x] for x in labels]

    def __repr__(self) -> str:
        return f"CountMatrix({self.n_genes} genes x {self.n_cells} cells)"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CountMatrix):
            return NotImplemented
        return (
            self._genes == other._genes
            and self._cells == other._cells
            and np.array_equal(self._grid, other._grid)
        )

    __hash__ = None  # type: ignore[assignment]

    # ------------------------------------------------------------------
    # Subsetting
    # ------------------------------------------------------------------

    def select_columns(self, cell_ids: Iterable[str]) -> "CountMatrix":
        """Restrict to *cell_ids*, keeping this matrix's column order."""
        wanted = set(self._resolve(cell_ids, self._cell_index(), "cell"))
        keep = [i for i in range(self.n_cells) if i in wanted]
        return CountMatrix(self._genes, [self._cells[i] for i in keep], self._grid[:, keep])

    def select_rows(self, gene_ids: Iterable[str]) -> "CountMatrix":
        """Restrict to *gene_ids*, keeping this matrix's row order."""
        wanted = set(self._resolve(gene_ids, self._gene_index(), "gene"))
        keep = [i for i in range(self.n_genes) if i in wanted]
        return CountMatrix([self._genes[i] for i in keep], self._cells, self._grid[keep, :])

    def drop_columns(self, cell_ids: Iterable[str]) -> "CountMatrix":
        """Remove *cell_ids*; every id must be present."""
        drop = set(self._resolve(cell_ids, self._cell_index(), "cell"))
        return self.select_columns([c for i, c in enumerate(self._cells) if i not in drop])

    def genes_with_prefix(self, prefix: str) -> list[str]:
        return [g for g in self._genes if g.startswith(prefix)]

    def genes_matching(self, pattern: str) -> list[str]:
        """Genes whose id matches the regular expression *pattern* (``re.search``)."""
        rx = re.compile(pattern)
        return [g for g in self._genes if rx.search(g)]

    # ------------------------------------------------------------------
    # Combination
    # ------------------------------------------------------------------

    def merge_columns(self, groups: Sequence[tuple[str, Sequence[str]]]) -> "CountMatrix":
        """Sum groups of columns into single columns.

        Each ``(target_id, source_ids)`` group is replaced by one column named
        *target_id* holding the element-wise sum of the sources. The merged
        column takes the position of the group's first source column (in this
        matrix's column order); columns outside every group pass through.
        """
        cell_index = self._cell_index()
        owner: dict[int, int] = {}
        members: dict[int, list[int]] = {}
        targets: list[str] = []
        for g, (target, sources) in enumerate(groups):
            sources = list(sources)
            if not sources:
                raise ConflictingGroup(f"Merge group for {target!r} has no source columns", [target])
            for pos in self._resolve(sources, cell_index, "cell"):
                if pos in owner and owner[pos] != g:
                    label = self._cells[pos]
                    raise ConflictingGroup(
                        f"Column {label!r} is claimed by more than one merge group", [label]
                    )
                if pos not in owner:
                    owner[pos] = g
                    members.setdefault(g, []).append(pos)
            targets.append(str(target))

        passthrough = {c for i, c in enumerate(self._cells) if i not in owner}
        clashes = [t for t in targets if t in passthrough]
        clashes += [t for t, n in Counter(targets).items() if n > 1]
        if clashes:
            raise DuplicateLabel(f"Merge target(s) collide with existing columns: {_preview(clashes)}", clashes)

        out_cells: list[str] = []
        out_cols: list[np.ndarray] = []
        emitted: set[int] = set()
        for i, cell in enumerate(self._cells):
            g = owner.get(i)
            if g is None:
                out_cells.append(cell)
                out_cols.append(self._grid[:, i])
            elif g not in emitted:
                emitted.add(g)
                out_cells.append(targets[g])
                out_cols.append(self._grid[:, members[g]].sum(axis=1))

        grid = np.column_stack(out_cols) if out_cols else np.zeros((self.n_genes, 0), self._grid.dtype)
        return CountMatrix(self._genes, out_cells, grid)

    def concat_rows(self, other: "CountMatrix") -> "CountMatrix":
        """Stack *other* below this matrix; both must have identical cells."""
        if self._cells != other._cells:
            raise DimensionMismatch(
                "Cannot stack matrices with different cell labels",
                shape=other.shape,
                expected=(other.n_genes, self.n_cells),
            )
        return CountMatrix(self._genes + other._genes, self._cells, np.vstack([self._grid, other._grid]))

    # ------------------------------------------------------------------
    # Reductions
    # ------------------------------------------------------------------

    def column_sums(self) -> pd.Series:
        """Total counts per cell."""
        return pd.Series(self._grid.sum(axis=0), index=list(self._cells), name="total")

    def row_sums(self, restricted_to: Optional[Iterable[str]] = None) -> pd.Series:
        """Total counts per gene, optionally only for *restricted_to* genes."""
        if restricted_to is None:
            return pd.Series(self._grid.sum(axis=1), index=list(self._genes), name="total")
        return self.select_rows(restricted_to).row_sums()

    def genes_detected(self, min_value: float = 1) -> pd.Series:
        """Number of genes with a count >= *min_value*, per cell."""
        return pd.Series((self._grid >= min_value).sum(axis=0), index=list(self._cells), name="genes")

    def cells_detected(self, min_value: float = 1) -> pd.Series:
        """Number of cells with a count >= *min_value*, per gene."""
        return pd.Series((self._grid >= min_value).sum(axis=1), index=list(self._genes), name="cells")
