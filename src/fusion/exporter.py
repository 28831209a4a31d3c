"""Grid/mesh export with single-flight protection.

One ExportCoordinator serves both the on-demand save request and the
periodic auto-save timer. Exports never overlap: manual requests wait for
the running export, timer firings skip while one is in progress.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

import numpy as np

from shared.messages.export import ExportResult
from shared.messages.mesh import MeshGeometry, MeshGeometryStamped
from src.fusion.mesh_io import export_paths, write_grid, write_mesh
from src.fusion.stats import FusionStats
from src.fusion.volume import TSDFVolume

logger = logging.getLogger(__name__)

# Async sink for extracted meshes (bus publisher, WebSocket hub, ...)
MeshSink = Callable[[MeshGeometryStamped], Awaitable[object]]


class ExportCoordinator:
    """Writes the grid and mesh for the shared volume and announces the mesh."""

    def __init__(
        self,
        volume: TSDFVolume,
        fill_holes: bool = True,
        min_weight: float = 0.0,
        frame_id: str = "map",
        sinks: Optional[List[MeshSink]] = None,
        stats: Optional[FusionStats] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.volume = volume
        self.fill_holes = fill_holes
        self.min_weight = min_weight
        self.frame_id = frame_id
        self.sinks: List[MeshSink] = list(sinks or [])
        self.stats = stats or FusionStats()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress or self._lock.locked()

    def add_sink(self, sink: MeshSink) -> None:
        self.sinks.append(sink)

    async def export(self, target_path: str | Path) -> ExportResult:
        """Save ``<target>_grid.npz`` and ``<target>_mesh.ply``, then publish.

        Waits for any export already running. Never raises for I/O problems;
        they come back as ``success=False``.
        """
        async with self._lock:
            self._in_progress = True
            try:
                return await self._export(str(target_path))
            finally:
                self._in_progress = False

    async def try_export(self, target_path: str | Path) -> Optional[ExportResult]:
        """Export unless one is already running; returns None when skipped."""
        if self.in_progress:
            self.stats.exports_skipped += 1
            logger.info("Export already in progress, skipping save to %s", target_path)
            return None
        return await self.export(target_path)

    async def _export(self, target: str) -> ExportResult:
        t0 = time.monotonic()
        grid_path, mesh_path = export_paths(target)
        logger.info("Saving the mesh and grid files to %s ...", target)

        try:
            vertices, triangles = await asyncio.to_thread(self._write_files, grid_path, mesh_path)
        except OSError as e:
            self.stats.exports_failed += 1
            logger.warning("Export to %s failed: %s", target, e)
            return ExportResult(success=False, error=str(e), duration_s=time.monotonic() - t0)
        except Exception as e:
            self.stats.exports_failed += 1
            logger.exception("Unexpected error exporting to %s", target)
            return ExportResult(success=False, error=f"{type(e).__name__}: {e}", duration_s=time.monotonic() - t0)

        self.stats.exports_ok += 1
        self.stats.last_export = self._clock()
        logger.info(
            "Done saving the mesh and grid files (%d vertices, %d triangles)",
            len(vertices), len(triangles),
        )

        published = False
        if len(vertices) > 0:
            published = await self._publish(vertices, triangles)
        else:
            logger.info("Extracted mesh is empty, not publishing")

        return ExportResult(
            success=True,
            mesh_vertex_count=len(vertices),
            triangle_count=len(triangles),
            grid_path=str(grid_path),
            mesh_path=str(mesh_path),
            published=published,
            duration_s=time.monotonic() - t0,
        )

    def _write_files(self, grid_path: Path, mesh_path: Path) -> Tuple[np.ndarray, np.ndarray]:
        # Grid and mesh come from the same volume state.
        with self.volume.lock:
            write_grid(self.volume.snapshot(), grid_path)
            vertices, triangles = self.volume.extract_mesh(self.fill_holes, self.min_weight)
        write_mesh(vertices, triangles, mesh_path)
        return vertices, triangles

    async def _publish(self, vertices: np.ndarray, triangles: np.ndarray) -> bool:
        msg = MeshGeometryStamped(
            frame_id=self.frame_id,
            stamp=self._clock(),
            mesh_geometry=MeshGeometry(vertices=vertices.tolist(), faces=triangles.tolist()),
        )
        logger.info("Publishing mesh geometry (%d vertices)", msg.vertex_count)
        delivered = 0
        for sink in self.sinks:
            try:
                await sink(msg)
                delivered += 1
            except Exception as e:
                logger.warning("Mesh sink %r failed: %s", sink, e)
        if not delivered:
            logger.warning("Mesh was not delivered to any of %d sinks", len(self.sinks))
            return False
        self.stats.meshes_published += 1
        return True
