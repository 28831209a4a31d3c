"""Radial range filtering for incoming scans."""

from __future__ import annotations

import numpy as np


def preprocess(points: np.ndarray, min_range: float, max_range: float) -> np.ndarray:
    """Keep points whose distance from the origin lies in [min_range, max_range].

    Points exactly on either bound are kept. Non-finite points are dropped.
    Input order is preserved and the input array is not modified.

    Args:
        points: (N, 3) array of xyz coordinates.
        min_range: Lower bound in meters (>= 0).
        max_range: Upper bound in meters (>= min_range).

    Returns:
        (M, 3) array, M <= N.
    """
    if min_range < 0 or max_range < min_range:
        raise ValueError(f"invalid range bounds [{min_range}, {max_range}]")

    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if len(pts) == 0:
        return pts.copy()

    norms = np.linalg.norm(pts, axis=1)
    keep = np.isfinite(norms)
    keep &= ~(norms > max_range)
    keep &= ~(norms < min_range)
    return pts[keep]
