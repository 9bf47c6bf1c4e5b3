"""
Tests for input validation and distance helpers.
"""

import numpy as np
import pytest

from clusterkit.errors import DimensionMismatch, InvalidArgument, RowLengthMismatch
from clusterkit.geometry import (
    as_matrix,
    as_vector,
    data_statistics,
    pairwise_squared,
)


class TestDistances:
    def test_pairwise_identical_points_are_zero(self):
        rows = np.array([[0.1, 0.2], [0.3, 0.7]])
        d = pairwise_squared(rows, rows)
        assert d[0, 0] == 0.0
        assert d[1, 1] == 0.0
        assert d[0, 1] == pytest.approx(0.04 + 0.25)


class TestAsMatrix:
    def test_integers_are_widened(self):
        m = as_matrix([[1, 2], [3, 4]])
        assert m.dtype == np.float64
        assert m.tolist() == [[1.0, 2.0], [3.0, 4.0]]

    def test_empty(self):
        with pytest.raises(InvalidArgument):
            as_matrix([])
        with pytest.raises(InvalidArgument):
            as_matrix(np.zeros((0, 3)))

    def test_ragged_rows(self):
        with pytest.raises(RowLengthMismatch, match="row 2 has 1 elements, expected 2"):
            as_matrix([[1, 2], [3, 4], [5]])

    def test_non_numeric(self):
        with pytest.raises(InvalidArgument, match=r"\[1, 0\]"):
            as_matrix([[1, 2], ["a", 4]])
        with pytest.raises(InvalidArgument):
            as_matrix([[True, 1.0]])

    def test_not_2d(self):
        with pytest.raises(InvalidArgument):
            as_matrix([1, 2, 3])
        with pytest.raises(InvalidArgument):
            as_matrix("abc")

    def test_check_finite(self):
        as_matrix([[np.nan, 1.0]])
        with pytest.raises(InvalidArgument, match="NaN or Infinite"):
            as_matrix([[0.0, 1.0], [np.inf, 1.0]], check_finite=True)


class TestAsVector:
    def test_ok(self):
        v = as_vector([1, 2, 3], 3)
        assert v.dtype == np.float32

    def test_mismatch(self):
        with pytest.raises(DimensionMismatch, match="expected 3, got 2"):
            as_vector([1, 2], 3)


def test_data_statistics():
    stats = data_statistics([[0, 5], [-1, 2]])
    assert stats["n_samples"] == 2
    assert stats["n_features"] == 2
    assert stats["data_range"] == 6.0
