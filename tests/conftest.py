"""
Shared test fixtures and helpers for the scanfuse test suite.

Provides a config factory, synthetic scans, and a RecordingVolume stand-in
that logs every integrate/extract call instead of doing TSDF math.
"""

import sys
import threading
import time
from pathlib import Path
from typing import Optional

import numpy as np
import pytest

# Ensure project root on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.config.fusion_config import load_fusion_config
from src.fusion.volume import VolumeSnapshot


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def plane_points(z: float = 1.0, half: float = 0.3, step: float = 0.01) -> np.ndarray:
    """A square patch of points on the plane z = const, centred on the z axis."""
    xs = np.arange(-half, half + step / 2, step)
    gx, gy = np.meshgrid(xs, xs, indexing="ij")
    return np.stack([gx.ravel(), gy.ravel(), np.full(gx.size, z)], axis=1)


class RecordingVolume:
    """Volume stand-in that records calls.

    ``delay_s`` makes each call sleep so tests can look for overlap;
    ``events`` keeps (name, phase) tuples in the order they happened.
    """

    def __init__(self, delay_s: float = 0.0, mesh: Optional[tuple] = None):
        self.delay_s = delay_s
        self.calls: list[dict] = []
        self.events: list[tuple[str, str]] = []
        self.lock = threading.RLock()
        self._events_lock = threading.Lock()
        if mesh is None:
            mesh = (
                np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]),
                np.array([[0, 1, 2]]),
            )
        self.mesh = mesh

    def _event(self, name: str, phase: str) -> None:
        with self._events_lock:
            self.events.append((name, phase))

    @property
    def voxel_count(self) -> int:
        return len(self.calls)

    def integrate(self, points, origin, weight_fn=None):
        self._event("integrate", "start")
        time.sleep(self.delay_s)
        pts = np.array(points, dtype=np.float64)
        self.calls.append({
            "points": pts,
            "origin": np.array(origin, dtype=np.float64),
            "weights": None if weight_fn is None else np.asarray(weight_fn(np.linspace(-1.0, 1.0, 5))),
        })
        self._event("integrate", "end")
        return len(pts)

    def extract_mesh(self, fill_holes=True, min_weight=0.0):
        self._event("extract", "start")
        time.sleep(self.delay_s)
        self._event("extract", "end")
        return self.mesh

    def snapshot(self) -> VolumeSnapshot:
        return VolumeSnapshot(
            voxel_size=0.1,
            sdf_trunc=0.3,
            space_carving=False,
            keys=np.zeros((0, 3), dtype=np.int64),
            tsdf=np.zeros(0),
            weight=np.zeros(0),
        )

    def get_stats(self) -> dict:
        return {"voxel_count": len(self.calls)}


def assert_no_overlap(events: list[tuple[str, str]]) -> None:
    """Every start must be followed directly by its own end."""
    for i in range(0, len(events), 2):
        start, end = events[i], events[i + 1]
        assert start[1] == "start" and end == (start[0], "end"), events


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def make_config(tmp_path):
    """Factory for validated configs with test-friendly defaults."""

    def _make(**overrides):
        values = {
            "voxel_size": 0.05,
            "sdf_trunc": 0.15,
            "min_weight": 0.0,
            "min_range": 0.0,
            "max_range": 10.0,
            "timestamp_tolerance_ns": 100_000_000,
            "save_path": str(tmp_path / "auto" / "volume"),
        }
        values.update(overrides)
        return load_fusion_config(environ={}, **values)

    return _make
