"""Sparse TSDF volume.

Voxels are stored in a hash (voxel index -> slot) over flat numpy arrays,
so memory grows with the observed surface rather than the bounding box.
Each scan is integrated by sampling every sensor ray inside the truncation
band around its hit point (or from the sensor onwards when space carving is
enabled) and folding the samples into a running weighted average.

Mesh extraction densifies the bounding box of the observed voxels and runs
scikit-image marching cubes on the zero level set.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
from scipy import ndimage
from skimage import measure

logger = logging.getLogger(__name__)

# Maps signed-distance samples (1-D array) to integration weights.
WeightFn = Callable[[np.ndarray], np.ndarray]

# Upper bound on ray samples materialized at once.
_MAX_SAMPLES_PER_CHUNK = 2_000_000

# Rays longer than this (metres) are not integrated.
DEFAULT_MAX_DEPTH = 100.0


def uniform_weight(sdf: np.ndarray) -> np.ndarray:
    """Every sample counts the same."""
    return np.ones_like(sdf, dtype=np.float64)


@dataclass
class VolumeSnapshot:
    """Copy of the voxel store, detached from the live volume."""

    voxel_size: float
    sdf_trunc: float
    space_carving: bool
    keys: np.ndarray  # (N, 3) int64 voxel indices
    tsdf: np.ndarray  # (N,) float64, clipped to <= sdf_trunc
    weight: np.ndarray  # (N,) float64

    def __len__(self) -> int:
        return len(self.keys)


class TSDFVolume:
    """Truncated signed distance accumulator.

    All public methods are safe to call from multiple threads; integrate and
    extract_mesh hold the same lock for their whole duration.
    """

    def __init__(
        self,
        voxel_size: float,
        sdf_trunc: float,
        space_carving: bool = False,
        max_depth: float = DEFAULT_MAX_DEPTH,
    ):
        if voxel_size <= 0:
            raise ValueError("voxel_size must be > 0")
        if sdf_trunc <= 0:
            raise ValueError("sdf_trunc must be > 0")
        if not max_depth > 0:
            raise ValueError("max_depth must be > 0")
        self.voxel_size = float(voxel_size)
        self.sdf_trunc = float(sdf_trunc)
        self.space_carving = bool(space_carving)
        self.max_depth = float(max_depth)

        self._lock = threading.RLock()
        self._index: dict[Tuple[int, int, int], int] = {}
        self._keys = np.zeros((0, 3), dtype=np.int64)
        self._tsdf = np.zeros(0, dtype=np.float64)
        self._weight = np.zeros(0, dtype=np.float64)
        self._count = 0
        self.integrations = 0
        self.rays_beyond_max_depth = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        """Held by integrate and extract_mesh; hold it to make several reads consistent."""
        return self._lock

    @property
    def voxel_count(self) -> int:
        with self._lock:
            return self._count

    def get_stats(self) -> dict:
        with self._lock:
            w = self._weight[: self._count]
            return {
                "voxel_size": self.voxel_size,
                "sdf_trunc": self.sdf_trunc,
                "space_carving": self.space_carving,
                "max_depth": self.max_depth,
                "rays_beyond_max_depth": self.rays_beyond_max_depth,
                "voxel_count": self._count,
                "integrations": self.integrations,
                "max_weight": float(w.max()) if self._count else 0.0,
            }

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    def integrate(
        self,
        points: np.ndarray,
        origin: np.ndarray,
        weight_fn: Optional[WeightFn] = None,
    ) -> int:
        """Fold one scan into the volume.

        Args:
            points: (N, 3) hit points in the volume frame.
            origin: (3,) sensor position in the volume frame.
            weight_fn: sdf -> weight strategy; uniform when None.

        Returns:
            Number of voxels touched.
        """
        weight_fn = weight_fn or uniform_weight
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        org = np.asarray(origin, dtype=np.float64).reshape(3)
        if not np.all(np.isfinite(org)):
            raise ValueError("integration origin must be finite")

        with self._lock:
            self.integrations += 1
            if len(pts) == 0:
                return 0
            keys, sdf = self._sample_rays(pts, org)
            if len(keys) == 0:
                return 0
            weights = np.broadcast_to(np.asarray(weight_fn(sdf), dtype=np.float64), sdf.shape)
            return self._merge(keys, np.minimum(sdf, self.sdf_trunc), weights)

    def _sample_rays(self, pts: np.ndarray, origin: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Voxel indices and signed distances of all samples along all rays."""
        vs, trunc = self.voxel_size, self.sdf_trunc

        d = pts - origin
        depth = np.linalg.norm(d, axis=1)
        ok = np.isfinite(depth) & (depth > 1e-9)
        too_far = ok & (depth > self.max_depth)
        if too_far.any():
            # Each sample row is as long as the longest ray in the scan
            self.rays_beyond_max_depth += int(too_far.sum())
            ok &= ~too_far
        d, depth = d[ok], depth[ok]
        if len(depth) == 0:
            return np.zeros((0, 3), dtype=np.int64), np.zeros(0)
        dirs = d / depth[:, None]

        t0 = np.zeros_like(depth) if self.space_carving else np.maximum(depth - trunc, 0.0)
        t1 = depth + trunc
        n = np.floor((t1 - t0) / vs).astype(np.int64) + 1
        k_max = int(n.max())

        rays_per_chunk = max(1, _MAX_SAMPLES_PER_CHUNK // k_max)
        steps = np.arange(k_max)
        all_keys, all_sdf = [], []

        for s in range(0, len(depth), rays_per_chunk):
            sl = slice(s, s + rays_per_chunk)
            t = t0[sl, None] + steps[None, :] * vs
            valid = steps[None, :] < n[sl, None]

            pos = origin + dirs[sl, None, :] * t[:, :, None]
            keys = np.floor(pos / vs).astype(np.int64)
            # One update per voxel per ray
            valid[:, 1:] &= ~np.all(keys[:, 1:] == keys[:, :-1], axis=2)

            centers = (keys + 0.5) * vs
            sdf = depth[sl, None] - np.linalg.norm(centers - origin, axis=2)
            valid &= sdf >= -trunc

            all_keys.append(keys[valid])
            all_sdf.append(sdf[valid])

        return np.concatenate(all_keys), np.concatenate(all_sdf)

    def _merge(self, keys: np.ndarray, tsdf: np.ndarray, weights: np.ndarray) -> int:
        uniq, inv = np.unique(keys, axis=0, return_inverse=True)
        inv = inv.reshape(-1)
        wsum = np.bincount(inv, weights=weights, minlength=len(uniq))
        tsum = np.bincount(inv, weights=weights * tsdf, minlength=len(uniq))

        keep = wsum > 0
        uniq, wsum, tsum = uniq[keep], wsum[keep], tsum[keep]
        if len(uniq) == 0:
            return 0

        slots = np.empty(len(uniq), dtype=np.int64)
        for j, key in enumerate(map(tuple, uniq.tolist())):
            slot = self._index.get(key)
            if slot is None:
                slot = self._allocate(key)
            slots[j] = slot

        old_w = self._weight[slots]
        new_w = old_w + wsum
        self._tsdf[slots] = (self._tsdf[slots] * old_w + tsum) / new_w
        self._weight[slots] = new_w
        return len(uniq)

    def _allocate(self, key: Tuple[int, int, int]) -> int:
        if self._count == len(self._tsdf):
            cap = max(1024, 2 * len(self._tsdf))
            self._keys = np.resize(self._keys, (cap, 3))
            self._tsdf = np.resize(self._tsdf, cap)
            self._weight = np.resize(self._weight, cap)
        slot = self._count
        self._keys[slot] = key
        self._tsdf[slot] = 0.0
        self._weight[slot] = 0.0
        self._index[key] = slot
        self._count += 1
        return slot

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract_mesh(self, fill_holes: bool = True, min_weight: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
        """Marching cubes over the zero level set.

        Voxels with weight below ``min_weight`` are treated as unobserved, and
        a cube is only triangulated when all eight corners are observed. With
        ``fill_holes`` each unobserved voxel touching an observed one takes the
        mean of its observed neighbours first, closing one-voxel gaps.

        Returns:
            vertices (V, 3) float64 in the volume frame, triangles (F, 3) int64.
        """
        with self._lock:
            n = self._count
            keys = self._keys[:n].copy()
            tsdf = self._tsdf[:n].copy()
            weight = self._weight[:n].copy()

        empty = (np.zeros((0, 3), dtype=np.float64), np.zeros((0, 3), dtype=np.int64))
        observed_rows = (weight >= min_weight) & (weight > 0)
        if not observed_rows.any():
            return empty
        keys, tsdf = keys[observed_rows], tsdf[observed_rows]

        lo = keys.min(axis=0) - 1
        shape = tuple(keys.max(axis=0) - lo + 2)
        idx = tuple((keys - lo).T)

        grid = np.full(shape, self.sdf_trunc, dtype=np.float64)
        observed = np.zeros(shape, dtype=bool)
        grid[idx] = tsdf
        observed[idx] = True

        if fill_holes:
            grid, observed = self._fill_holes(grid, observed)

        # A cube is valid when all 8 corners are observed; the mask is
        # indexed by the cube's lowest corner.
        cube = observed.copy()
        cube[-1, :, :] = False
        cube[:, -1, :] = False
        cube[:, :, -1] = False
        for dx, dy, dz in [(1, 0, 0), (0, 1, 0), (0, 0, 1), (1, 1, 0), (1, 0, 1), (0, 1, 1), (1, 1, 1)]:
            shifted = np.zeros_like(observed)
            shifted[: shape[0] - dx, : shape[1] - dy, : shape[2] - dz] = observed[dx:, dy:, dz:]
            cube &= shifted

        if not cube.any():
            return empty
        values = grid[cube]
        if values.min() > 0 or values.max() < 0:
            return empty

        try:
            verts, faces, _normals, _values = measure.marching_cubes(
                grid, level=0.0, mask=cube, allow_degenerate=False
            )
        except (ValueError, RuntimeError) as e:
            logger.debug("Marching cubes found no surface: %s", e)
            return empty

        vertices = (verts + lo + 0.5) * self.voxel_size
        return vertices.astype(np.float64), faces.astype(np.int64)

    @staticmethod
    def _fill_holes(grid: np.ndarray, observed: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        footprint = np.ones((3, 3, 3), dtype=bool)
        ring = ndimage.binary_dilation(observed, structure=footprint) & ~observed
        if not ring.any():
            return grid, observed

        obs_f = observed.astype(np.float64)
        sums = ndimage.convolve(np.where(observed, grid, 0.0), footprint.astype(np.float64), mode="constant")
        counts = ndimage.convolve(obs_f, footprint.astype(np.float64), mode="constant")

        filled = grid.copy()
        filled[ring] = sums[ring] / counts[ring]
        return filled, observed | ring

    # ------------------------------------------------------------------
    # Snapshot / restore
    # ------------------------------------------------------------------

    def snapshot(self) -> VolumeSnapshot:
        with self._lock:
            n = self._count
            return VolumeSnapshot(
                voxel_size=self.voxel_size,
                sdf_trunc=self.sdf_trunc,
                space_carving=self.space_carving,
                keys=self._keys[:n].copy(),
                tsdf=self._tsdf[:n].copy(),
                weight=self._weight[:n].copy(),
            )

    @classmethod
    def from_snapshot(cls, snap: VolumeSnapshot) -> TSDFVolume:
        vol = cls(snap.voxel_size, snap.sdf_trunc, snap.space_carving)
        for key, t, w in zip(map(tuple, snap.keys.tolist()), snap.tsdf, snap.weight):
            slot = vol._allocate(key)
            vol._tsdf[slot] = t
            vol._weight[slot] = w
        return vol

    def reset(self) -> None:
        with self._lock:
            self._index.clear()
            self._keys = np.zeros((0, 3), dtype=np.int64)
            self._tsdf = np.zeros(0, dtype=np.float64)
            self._weight = np.zeros(0, dtype=np.float64)
            self._count = 0
            self.integrations = 0
