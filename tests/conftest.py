"""Pytest fixtures for dropmix tests."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from dropmix.matrix import CountMatrix


@pytest.fixture(scope="session")
def test_data_dir(tmp_path_factory) -> Path:
    """Generate the synthetic count table once per session."""
    from tests.generate_test_data import generate_test_counts

    d = tmp_path_factory.mktemp("dropmix_test")
    generate_test_counts(d)
    return d


@pytest.fixture(scope="session")
def synthetic():
    """In-memory synthetic table and its ground truth."""
    from tests.generate_test_data import generate_counts

    counts, truth = generate_counts()
    return CountMatrix.from_frame(counts), truth


@pytest.fixture
def test_counts(test_data_dir) -> Path:
    return test_data_dir / "test_counts.dge.txt.gz"


@pytest.fixture
def small_matrix() -> CountMatrix:
    """4 genes x 3 cells."""
    return CountMatrix(
        ["g1", "g2", "g3", "g4"],
        ["c1", "c2", "c3"],
        np.array(
            [
                [1, 0, 3],
                [0, 0, 2],
                [5, 1, 0],
                [0, 0, 0],
            ]
        ),
    )


@pytest.fixture
def mixed_matrix() -> CountMatrix:
    """hg/mm matrix: c1 human, c2 mouse, c3 doublet (6 vs 5)."""
    return CountMatrix(
        ["hg_A", "hg_B", "mm_A", "mm_B"],
        ["c1", "c2", "c3"],
        np.array(
            [
                [10, 0, 6],
                [5, 0, 0],
                [0, 20, 5],
                [0, 8, 0],
            ]
        ),
    )
