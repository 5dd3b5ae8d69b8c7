"""Tests for the CountMatrix value type."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from dropmix.errors import (
    ConflictingGroup,
    CountMatrixError,
    DimensionMismatch,
    DuplicateLabel,
    NegativeCount,
    NonFiniteCount,
    UnknownLabel,
)
from dropmix.matrix import CountMatrix


# ──────────────────────────────────────────────────────────────────────
# Construction
# ──────────────────────────────────────────────────────────────────────


class TestCreate:
    def test_shape_and_labels(self, small_matrix):
        assert small_matrix.shape == (4, 3)
        assert small_matrix.genes == ("g1", "g2", "g3", "g4")
        assert small_matrix.cells == ("c1", "c2", "c3")

    def test_create_alias(self):
        m = CountMatrix.create(["g"], ["c"], [[2]])
        assert m == CountMatrix(["g"], ["c"], [[2]])

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatch) as exc:
            CountMatrix(["g1", "g2"], ["c1"], np.zeros((2, 2)))
        assert exc.value.shape == (2, 2)
        assert exc.value.expected == (2, 1)

    def test_grid_must_be_2d(self):
        with pytest.raises(DimensionMismatch):
            CountMatrix(["g1"], ["c1"], [1])

    def test_duplicate_gene(self):
        with pytest.raises(DuplicateLabel) as exc:
            CountMatrix(["g1", "g1"], ["c1"], [[1], [2]])
        assert exc.value.labels == ("g1",)

    def test_duplicate_cell(self):
        with pytest.raises(DuplicateLabel):
            CountMatrix(["g1"], ["c1", "c1"], [[1, 2]])

    def test_negative_counts(self):
        with pytest.raises(NegativeCount):
            CountMatrix(["g1"], ["c1", "c2"], [[1, -2]])

    @pytest.mark.parametrize("bad", [np.nan, np.inf])
    def test_non_finite_counts(self, bad):
        with pytest.raises(NonFiniteCount) as exc:
            CountMatrix(["g1", "g2"], ["c1", "c2"], [[1.0, 2.0], [0.0, bad]])
        assert exc.value.labels == ("c2",)

    def test_nan_is_a_matrix_error(self):
        with pytest.raises(CountMatrixError):
            CountMatrix(["g"], ["c"], [[np.nan]])

    def test_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            CountMatrix(["g1"], ["c1"], np.zeros((2, 2)))
        assert issubclass(UnknownLabel, CountMatrixError)

    def test_empty_matrix(self):
        m = CountMatrix.empty()
        assert m.shape == (0, 0)
        assert m.column_sums().empty

    def test_frame_roundtrip_keeps_labels(self, small_matrix):
        df = small_matrix.to_frame()
        assert list(df.index) == list(small_matrix.genes)
        assert list(df.columns) == list(small_matrix.cells)
        assert CountMatrix.from_frame(df) == small_matrix


class TestImmutability:
    def test_values_read_only(self, small_matrix):
        with pytest.raises(ValueError):
            small_matrix.values[0, 0] = 99

    def test_input_array_is_copied(self):
        grid = np.array([[1, 2]])
        m = CountMatrix(["g"], ["a", "b"], grid)
        grid[0, 0] = 50
        assert m.values[0, 0] == 1

    def test_to_frame_is_a_copy(self, small_matrix):
        df = small_matrix.to_frame()
        df.iloc[0, 0] = 100
        assert small_matrix.values[0, 0] == 1


# ──────────────────────────────────────────────────────────────────────
# Subsetting
# ──────────────────────────────────────────────────────────────────────


class TestSelect:
    def test_select_all_columns_is_identity(self, small_matrix):
        assert small_matrix.select_columns(small_matrix.cells) == small_matrix

    def test_select_keeps_matrix_order(self, small_matrix):
        sub = small_matrix.select_columns(["c3", "c1"])
        assert sub.cells == ("c1", "c3")
        np.testing.assert_array_equal(sub.values, [[1, 3], [0, 2], [5, 0], [0, 0]])

    def test_select_rows(self, small_matrix):
        sub = small_matrix.select_rows(["g3", "g1"])
        assert sub.genes == ("g1", "g3")
        assert sub.cells == small_matrix.cells

    def test_unknown_column(self, small_matrix):
        with pytest.raises(UnknownLabel) as exc:
            small_matrix.select_columns(["c1", "nope"])
        assert exc.value.labels == ("nope",)

    def test_unknown_row(self, small_matrix):
        with pytest.raises(UnknownLabel):
            small_matrix.select_rows(["g9"])

    def test_select_nothing(self, small_matrix):
        sub = small_matrix.select_columns([])
        assert sub.shape == (4, 0)

    def test_drop_columns(self, small_matrix):
        assert small_matrix.drop_columns(["c2"]).cells == ("c1", "c3")
        with pytest.raises(UnknownLabel):
            small_matrix.drop_columns(["c9"])

    def test_gene_queries(self, mixed_matrix):
        assert mixed_matrix.genes_with_prefix("mm_") == ["mm_A", "mm_B"]
        assert mixed_matrix.genes_matching("_A$") == ["hg_A", "mm_A"]


# ──────────────────────────────────────────────────────────────────────
# Merging
# ──────────────────────────────────────────────────────────────────────


class TestMergeColumns:
    def test_sum_and_position(self, small_matrix):
        merged = small_matrix.merge_columns([("c1", ["c1", "c3"])])
        assert merged.cells == ("c1", "c2")
        np.testing.assert_array_equal(merged.values[:, 0], [4, 2, 5, 0])
        np.testing.assert_array_equal(merged.values[:, 1], [0, 0, 1, 0])

    def test_position_of_first_source(self, small_matrix):
        merged = small_matrix.merge_columns([("new", ["c3", "c2"])])
        # c2 comes before c3 in the matrix, so the merged column sits at c2's slot
        assert merged.cells == ("c1", "new")

    def test_new_target_name(self, small_matrix):
        merged = small_matrix.merge_columns([("x", ["c1", "c2"])])
        assert merged.cells == ("x", "c3")

    def test_passthrough_unchanged(self, small_matrix):
        merged = small_matrix.merge_columns([("c2", ["c2", "c3"])])
        np.testing.assert_array_equal(merged.values[:, 0], small_matrix.values[:, 0])

    def test_no_groups_is_identity(self, small_matrix):
        assert small_matrix.merge_columns([]) == small_matrix

    def test_original_untouched(self, small_matrix):
        before = small_matrix.values.copy()
        small_matrix.merge_columns([("c1", ["c1", "c2", "c3"])])
        np.testing.assert_array_equal(small_matrix.values, before)
        assert small_matrix.n_cells == 3

    def test_unknown_source(self, small_matrix):
        with pytest.raises(UnknownLabel):
            small_matrix.merge_columns([("c1", ["c1", "zz"])])

    def test_conflicting_groups(self, small_matrix):
        with pytest.raises(ConflictingGroup) as exc:
            small_matrix.merge_columns([("c1", ["c1", "c2"]), ("c3", ["c2", "c3"])])
        assert exc.value.labels == ("c2",)

    def test_empty_group(self, small_matrix):
        with pytest.raises(ConflictingGroup):
            small_matrix.merge_columns([("c1", [])])

    def test_target_clashes_with_passthrough(self, small_matrix):
        with pytest.raises(DuplicateLabel):
            small_matrix.merge_columns([("c3", ["c1", "c2"])])

    def test_two_groups_same_target(self, small_matrix):
        m = CountMatrix(["g"], ["a", "b", "c", "d"], [[1, 2, 3, 4]])
        with pytest.raises(DuplicateLabel):
            m.merge_columns([("x", ["a", "b"]), ("x", ["c", "d"])])


class TestConcatRows:
    def test_stack(self, mixed_matrix):
        top = mixed_matrix.select_rows(["hg_A", "hg_B"])
        bottom = mixed_matrix.select_rows(["mm_A", "mm_B"])
        assert top.concat_rows(bottom) == mixed_matrix

    def test_cells_must_match(self, mixed_matrix):
        top = mixed_matrix.select_rows(["hg_A"])
        bottom = mixed_matrix.select_rows(["mm_A"]).select_columns(["c1"])
        with pytest.raises(DimensionMismatch):
            top.concat_rows(bottom)


# ──────────────────────────────────────────────────────────────────────
# Reductions
# ──────────────────────────────────────────────────────────────────────


class TestReductions:
    def test_column_sums(self, small_matrix):
        sums = small_matrix.column_sums()
        assert list(sums.index) == ["c1", "c2", "c3"]
        assert sums.tolist() == [6, 1, 5]

    def test_row_sums(self, small_matrix):
        assert small_matrix.row_sums().tolist() == [4, 2, 6, 0]

    def test_row_sums_restricted(self, small_matrix):
        sums = small_matrix.row_sums(restricted_to={"g2", "g3"})
        assert sums.to_dict() == {"g2": 2, "g3": 6}

    def test_detection_counts(self, small_matrix):
        assert small_matrix.genes_detected().tolist() == [2, 1, 2]
        assert small_matrix.genes_detected(3).tolist() == [1, 0, 1]
        assert small_matrix.cells_detected().tolist() == [2, 1, 2, 0]

    def test_reductions_are_pandas(self, small_matrix):
        assert isinstance(small_matrix.column_sums(), pd.Series)
