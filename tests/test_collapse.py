"""Tests for barcode collapsing."""

from __future__ import annotations

import numpy as np
import pytest

from dropmix.collapse import (
    CollapseGroup,
    collapse,
    collapse_cells_by_barcode,
    find_collapse_groups,
)
from dropmix.errors import UnknownLabel
from dropmix.matrix import CountMatrix


def _matrix(cells, rows=2):
    grid = np.arange(1, rows * len(cells) + 1).reshape(rows, len(cells))
    return CountMatrix([f"g{i}" for i in range(rows)], cells, grid)


class TestFindCollapseGroups:
    def test_shared_prefix_with_n(self):
        groups = find_collapse_groups({"ACGTACGTACGA", "ACGTACGTACGN"})
        assert groups == [CollapseGroup(("ACGTACGTACGA", "ACGTACGTACGN"))]

    def test_different_prefix(self):
        assert find_collapse_groups({"ACGTACGTACGA", "TTTTTTTTTTTA"}) == []

    def test_shared_prefix_without_n(self):
        assert find_collapse_groups({"ACGTACGTACGA", "ACGTACGTACGC"}) == []

    def test_target_is_first_alphabetically(self):
        (group,) = find_collapse_groups(["ACGTACGTACGT", "ACGTACGTACGN"])
        assert group.target == "ACGTACGTACGN"
        assert group.members == ("ACGTACGTACGN", "ACGTACGTACGT")

    def test_chain_of_three_is_one_group(self):
        cells = ["AAAAAAAAAAAC", "AAAAAAAAAAAN", "AAAAAAAAAAAT"]
        groups = find_collapse_groups(cells)
        assert len(groups) == 1
        assert groups[0].members == tuple(sorted(cells))

    def test_chain_stops_at_non_qualifying_pair(self):
        # sorted: ...A, ...C, ...N; A–C does not qualify, C–N does
        cells = ["GGGGGGGGGGGA", "GGGGGGGGGGGC", "GGGGGGGGGGGN"]
        groups = find_collapse_groups(cells)
        assert [g.members for g in groups] == [("GGGGGGGGGGGC", "GGGGGGGGGGGN")]

    def test_independent_groups(self):
        cells = ["AAAAAAAAAAAC", "AAAAAAAAAAAN", "CCCCCCCCCCCA", "CCCCCCCCCCCN", "GGGGGGGGGGGA"]
        groups = find_collapse_groups(cells)
        assert [g.target for g in groups] == ["AAAAAAAAAAAC", "CCCCCCCCCCCA"]

    def test_non_adjacent_prefix_match_is_not_joined(self):
        # the N barcode only neighbours the longer barcode that sorts between them
        cells = ["ACGTACGTACGA", "ACGTACGTACGAA", "ACGTACGTACGN"]
        groups = find_collapse_groups(cells)
        assert [g.members for g in groups] == [("ACGTACGTACGAA", "ACGTACGTACGN")]

    def test_custom_base_and_prefix(self):
        groups = find_collapse_groups(["ACGTA", "ACGTX"], ambiguous_base="X", prefix_length=4)
        assert len(groups) == 1

    def test_labels_restrict_pairs(self):
        cells = ["ACGTACGTACGA", "ACGTACGTACGN"]
        same = {c: "human" for c in cells}
        diff = {"ACGTACGTACGA": "human", "ACGTACGTACGN": "mouse"}
        assert len(find_collapse_groups(cells, labels=same)) == 1
        assert find_collapse_groups(cells, labels=diff) == []
        assert find_collapse_groups(cells, labels={}) == []

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            find_collapse_groups(["A"], ambiguous_base="NN")
        with pytest.raises(ValueError):
            find_collapse_groups(["A"], prefix_length=0)

    def test_group_needs_two_members(self):
        with pytest.raises(ValueError):
            CollapseGroup(("ACGT",))

    def test_group_prefix(self):
        assert CollapseGroup(("ACGTACGTACGN", "ACGTACGTACGA")).prefix == "ACGTACGTACG"


class TestCollapse:
    def test_merges_into_target(self):
        m = _matrix(["ACGTACGTACGA", "ACGTACGTACGN", "TTTTTTTTTTTA"])
        groups = find_collapse_groups(m.cells)
        out = collapse(m, groups)
        assert out.cells == ("ACGTACGTACGA", "TTTTTTTTTTTA")
        np.testing.assert_array_equal(out.values[:, 0], m.values[:, 0] + m.values[:, 1])
        np.testing.assert_array_equal(out.values[:, 1], m.values[:, 2])

    def test_total_counts_preserved(self):
        m = _matrix(["AAAAAAAAAAAC", "AAAAAAAAAAAN", "AAAAAAAAAAAT", "CCCCCCCCCCCA"])
        out = collapse(m, find_collapse_groups(m.cells))
        assert out.values.sum() == m.values.sum()
        assert out.n_cells == 2

    def test_empty_groups_is_identity(self):
        m = _matrix(["ACGTACGTACGA", "TTTTTTTTTTTA"])
        assert collapse(m, []) is m

    def test_idempotent(self):
        m = _matrix(["ACGTACGTACGA", "ACGTACGTACGN", "CCCCCCCCCCCT", "CCCCCCCCCCCN"])
        groups = find_collapse_groups(m.cells)
        once = collapse(m, groups)
        assert collapse(once, groups) == once

    def test_recomputed_groups_are_empty_after_collapse(self):
        m = _matrix(["ACGTACGTACGA", "ACGTACGTACGN"])
        once, groups = collapse_cells_by_barcode(m)
        assert len(groups) == 1
        twice, groups2 = collapse_cells_by_barcode(once)
        assert groups2 == []
        assert twice == once

    def test_group_not_in_matrix(self):
        m = _matrix(["ACGTACGTACGA", "TTTTTTTTTTTA"])
        foreign = CollapseGroup(("GGGGGGGGGGGA", "GGGGGGGGGGGN"))
        with pytest.raises(UnknownLabel):
            collapse(m, [foreign])

    def test_input_not_mutated(self):
        m = _matrix(["ACGTACGTACGA", "ACGTACGTACGN"])
        before = m.values.copy()
        collapse(m, find_collapse_groups(m.cells))
        assert m.n_cells == 2
        np.testing.assert_array_equal(m.values, before)

    def test_synthetic_twins(self, synthetic):
        matrix, truth = synthetic
        collapsed, groups = collapse_cells_by_barcode(matrix)
        assert len(groups) == len(truth["twins"])
        assert {frozenset(g.members) for g in groups} == {frozenset(p) for p in truth["twins"]}
        assert collapsed.n_cells == matrix.n_cells - len(truth["twins"])
        assert collapsed.values.sum() == matrix.values.sum()
