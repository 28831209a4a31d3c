"""Tests for radial range filtering."""

import numpy as np
import pytest

from src.fusion.preprocess import preprocess


class TestPreprocess:
    def test_keeps_points_inside_bounds(self):
        pts = np.array([
            [0.5, 0.0, 0.0],   # too close
            [2.0, 0.0, 0.0],
            [0.0, 3.0, 4.0],   # norm 5
            [10.0, 0.0, 0.0],  # too far
        ])
        out = preprocess(pts, 1.0, 6.0)
        np.testing.assert_allclose(out, [[2.0, 0.0, 0.0], [0.0, 3.0, 4.0]])

    def test_bounds_are_inclusive(self):
        pts = np.array([[1.0, 0.0, 0.0], [0.0, 0.0, 5.0], [0.0, 0.0, 5.0001]])
        out = preprocess(pts, 1.0, 5.0)
        assert len(out) == 2
        np.testing.assert_allclose(np.linalg.norm(out, axis=1), [1.0, 5.0])

    def test_equal_bounds_keep_only_exact_norm(self):
        pts = np.array([[2.0, 0.0, 0.0], [0.0, 2.0, 0.0], [2.1, 0.0, 0.0]])
        out = preprocess(pts, 2.0, 2.0)
        assert len(out) == 2

    def test_matches_definition_on_random_cloud(self):
        rng = np.random.default_rng(7)
        pts = rng.uniform(-10, 10, size=(2000, 3))
        out = preprocess(pts, 3.0, 8.0)
        norms = np.linalg.norm(pts, axis=1)
        expected = pts[(norms >= 3.0) & (norms <= 8.0)]
        np.testing.assert_array_equal(out, expected)

    def test_idempotent(self):
        rng = np.random.default_rng(1)
        pts = rng.normal(scale=5.0, size=(500, 3))
        once = preprocess(pts, 1.0, 6.0)
        twice = preprocess(once, 1.0, 6.0)
        np.testing.assert_array_equal(once, twice)

    def test_empty_input(self):
        out = preprocess(np.zeros((0, 3)), 0.0, 1.0)
        assert out.shape == (0, 3)

    def test_does_not_modify_input(self):
        pts = np.array([[0.1, 0.0, 0.0], [1.0, 0.0, 0.0]])
        before = pts.copy()
        preprocess(pts, 0.5, 2.0)
        np.testing.assert_array_equal(pts, before)

    def test_drops_non_finite_points(self):
        pts = np.array([[np.nan, 0.0, 0.0], [1.0, 0.0, 0.0], [np.inf, 0.0, 0.0]])
        out = preprocess(pts, 0.0, 100.0)
        np.testing.assert_array_equal(out, [[1.0, 0.0, 0.0]])

    @pytest.mark.parametrize("lo,hi", [(-1.0, 2.0), (3.0, 2.0)])
    def test_rejects_invalid_bounds(self, lo, hi):
        with pytest.raises(ValueError):
            preprocess(np.ones((3, 3)), lo, hi)
