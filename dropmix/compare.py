"""
Gene-expression comparisons between samples and against bulk data.

Both comparisons aggregate the single-cell counts per gene, move them to
``log2(x + 1)`` space and correlate them over the genes the two sides
have in common.  Rendering the resulting tables is left to the caller.
"""

from __future__ import annotations

from typing import Mapping, Union

import numpy as np
import pandas as pd

from dropmix.errors import NoMatchingGenes
from dropmix.matrix import CountMatrix
from dropmix.sample import SampleAggregate
from dropmix.utils import get_logger

CORRELATION_METHODS = ("pearson", "spearman")

SampleLike = Union[SampleAggregate, CountMatrix]


def _as_matrix(sample: SampleLike) -> CountMatrix:
    if isinstance(sample, SampleAggregate):
        return sample.combined()
    return sample


def _check_method(method: str) -> None:
    if method not in CORRELATION_METHODS:
        raise ValueError(f"method must be one of {CORRELATION_METHODS}, got {method!r}")


def _signif(value: float, digits: int = 2) -> float:
    """Round to *digits* significant digits."""
    if not np.isfinite(value) or value == 0:
        return float(value)
    return float(f"{value:.{digits}g}")


def compare_expression_levels(
    sample1: SampleLike,
    sample2: SampleLike,
    method: str = "pearson",
) -> tuple[pd.DataFrame, float]:
    """
    Compare summed gene expression of two samples.

    Returns
    -------
    (table, r)
        ``table`` has columns ``genes``, ``sample1``, ``sample2`` with
        ``log2(sum + 1)`` per common gene (in *sample1*'s gene order);
        ``r`` is their correlation rounded to two significant digits.
    """
    _check_method(method)
    m1, m2 = _as_matrix(sample1), _as_matrix(sample2)
    other = set(m2.genes)
    common = [g for g in m1.genes if g in other]
    if not common:
        raise NoMatchingGenes("<common genes>", "The two samples share no gene")

    table = pd.DataFrame(
        {
            "genes": common,
            "sample1": np.log2(m1.row_sums(common).to_numpy(dtype=float) + 1),
            "sample2": np.log2(m2.row_sums(common).reindex(common).to_numpy(dtype=float) + 1),
        }
    )
    r = _signif(table["sample1"].corr(table["sample2"], method=method))
    get_logger().info(f"Expression comparison over {len(common):,} genes: R={r}")
    return table, r


def correlation_with_bulk(
    sample: SampleLike,
    bulk: Union[Mapping[str, float], pd.Series],
    method: str = "pearson",
) -> tuple[pd.DataFrame, float]:
    """
    Correlate aggregated single-cell expression with a bulk reference.

    *bulk* maps gene id → reference expression.  Returns a table with
    columns ``genes``, ``single_cells``, ``bulk`` (all ``log2(x + 1)``) and
    the correlation rounded to two significant digits.
    """
    _check_method(method)
    matrix = _as_matrix(sample)
    bulk = pd.Series(bulk, dtype=float)
    common = [g for g in matrix.genes if g in bulk.index]
    if not common:
        raise NoMatchingGenes("<bulk genes>", "No gene of the sample is in the bulk reference")

    table = pd.DataFrame(
        {
            "genes": common,
            "single_cells": np.log2(matrix.row_sums(common).to_numpy(dtype=float) + 1),
            "bulk": np.log2(bulk.reindex(common).to_numpy(dtype=float) + 1),
        }
    )
    r = _signif(table["single_cells"].corr(table["bulk"], method=method))
    get_logger().info(f"Single cells vs bulk over {len(common):,} genes: R={r}")
    return table, r
