"""Scan integration pipeline.

IntegrationOrchestrator turns one scan into one volume update:
pose lookup -> optional transform -> optional range filter -> integrate.

FusionWorker is the single execution context in front of it. Scans, save
requests and auto-save timer firings all go through one queue, so the
volume never sees an integration and an extraction at the same time and
scans are integrated strictly in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import numpy as np

from shared.messages.export import ExportResult
from shared.messages.point_cloud import PointCloudMessage
from src.config.fusion_config import FusionConfig
from src.fusion.exporter import ExportCoordinator
from src.fusion.pose_buffer import PoseSynchronizer
from src.fusion.preprocess import preprocess
from src.fusion.stats import FusionStats
from src.fusion.transforms import Pose
from src.fusion.volume import TSDFVolume, WeightFn, uniform_weight

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Scan:
    """One received point cloud."""

    stamp: float
    points: np.ndarray
    frame_id: str = "sensor"
    source_id: str = ""

    def __post_init__(self):
        pts = np.array(self.points, dtype=np.float64).reshape(-1, 3)
        pts.flags.writeable = False
        object.__setattr__(self, "points", pts)

    @classmethod
    def from_message(cls, msg: PointCloudMessage) -> Scan:
        return cls(stamp=msg.stamp, points=msg.to_array(), frame_id=msg.frame_id, source_id=msg.source_id)


class IntegrationOrchestrator:
    """Integrates pose-matched scans into the volume."""

    def __init__(
        self,
        volume: TSDFVolume,
        synchronizer: PoseSynchronizer,
        *,
        preprocess: bool = True,
        apply_pose: bool = True,
        min_range: float = 0.0,
        max_range: float = float("inf"),
        weight_fn: WeightFn = uniform_weight,
        stats: Optional[FusionStats] = None,
    ):
        self.volume = volume
        self.synchronizer = synchronizer
        self.preprocess = preprocess
        self.apply_pose = apply_pose
        self.min_range = min_range
        self.max_range = max_range
        self.weight_fn = weight_fn
        self.stats = stats or FusionStats()

    @classmethod
    def from_config(
        cls,
        config: FusionConfig,
        volume: TSDFVolume,
        synchronizer: PoseSynchronizer,
        stats: Optional[FusionStats] = None,
        weight_fn: WeightFn = uniform_weight,
    ) -> IntegrationOrchestrator:
        return cls(
            volume,
            synchronizer,
            preprocess=config.preprocess,
            apply_pose=config.apply_pose,
            min_range=config.min_range,
            max_range=config.max_range,
            weight_fn=weight_fn,
            stats=stats,
        )

    async def on_scan(self, scan: Scan) -> bool:
        """Integrate one scan. Returns False when it was dropped.

        A scan without a pose inside the tolerance window is dropped and
        counted; it is never retried.
        """
        pose = await self.synchronizer.resolve(scan.stamp)
        if pose is None:
            self.stats.pose_misses += 1
            n = self.stats.pose_misses
            if n <= 3 or n % 100 == 0:
                logger.debug("No pose within tolerance for scan at %.6f (%d misses)", scan.stamp, n)
            return False

        try:
            await asyncio.to_thread(self.integrate_with_pose, scan, pose)
        except ValueError as e:
            self.stats.scan_errors += 1
            n = self.stats.scan_errors
            if n <= 3 or n % 100 == 0:
                logger.warning("Dropping scan at %.6f: %s", scan.stamp, e)
            return False

        self.stats.scans_integrated += 1
        self.stats.last_integration = scan.stamp
        return True

    def integrate_with_pose(self, scan: Scan, pose: Pose) -> int:
        """Transform, filter and integrate ``scan`` using an already resolved pose."""
        points = pose.apply(scan.points) if self.apply_pose else scan.points
        if self.preprocess:
            points = preprocess(points, self.min_range, self.max_range)
        return self.volume.integrate(points, pose.translation, self.weight_fn)


@dataclass
class _ExportJob:
    path: str
    future: asyncio.Future
    from_timer: bool = False


_WorkItem = Union[Scan, _ExportJob]


@dataclass
class WorkerState:
    running: bool = False
    timer_pending: bool = False
    inflight: Optional[asyncio.Task] = field(default=None, repr=False)


class FusionWorker:
    """Serializes scans and exports onto one asyncio task."""

    def __init__(
        self,
        orchestrator: IntegrationOrchestrator,
        exporter: ExportCoordinator,
        queue_size: int = 500,
        auto_export_period_s: float = 0.0,
        auto_export_path: Optional[str] = None,
        stats: Optional[FusionStats] = None,
    ):
        self.orchestrator = orchestrator
        self.exporter = exporter
        self.queue_size = queue_size
        self.auto_export_period_s = auto_export_period_s
        self.auto_export_path = auto_export_path
        self.stats = stats or orchestrator.stats
        self.state = WorkerState()
        self._queue: Optional[asyncio.Queue] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    @property
    def auto_export_enabled(self) -> bool:
        return self.auto_export_period_s > 0 and bool(self.auto_export_path)

    async def start(self) -> None:
        if self.state.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self.state.running = True
        self._worker_task = asyncio.create_task(self._run(), name="fusion-worker")
        if self.auto_export_enabled:
            logger.info(
                "Auto-saving and publishing the integrated volume every %.1f s to %s",
                self.auto_export_period_s, self.auto_export_path,
            )
            self._timer_task = asyncio.create_task(self._timer_loop(), name="fusion-autosave")
        else:
            logger.info("Auto-save disabled. Use the save request to export the integrated volume.")

    async def stop(self) -> None:
        """Stop the timer and worker, letting an in-flight item finish."""
        if not self.state.running:
            return
        self.state.running = False
        for task in (self._timer_task, self._worker_task):
            if task:
                task.cancel()
        for task in (self._timer_task, self._worker_task):
            if task:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._timer_task = self._worker_task = None

        if self.state.inflight and not self.state.inflight.done():
            await asyncio.gather(self.state.inflight, return_exceptions=True)

        dropped = 0
        while self._queue is not None and not self._queue.empty():
            item = self._queue.get_nowait()
            if isinstance(item, _ExportJob):
                if not item.future.done():
                    item.future.set_result(ExportResult(success=False, error="fusion worker stopped"))
            else:
                dropped += 1
        if dropped:
            logger.info("Discarded %d queued scans on shutdown", dropped)
        logger.info("Fusion worker stopped")

    def submit_scan(self, scan: Scan) -> bool:
        """Queue a scan for integration. Returns False if the backlog is full."""
        if not self.state.running or self._queue is None:
            raise RuntimeError("fusion worker is not running")
        self.stats.scans_received += 1
        try:
            self._queue.put_nowait(scan)
        except asyncio.QueueFull:
            self.stats.scans_dropped_backlog += 1
            n = self.stats.scans_dropped_backlog
            if n <= 3 or n % 100 == 0:
                logger.warning("Scan backlog full (%d), dropped scan at %.6f", self.queue_size, scan.stamp)
            return False
        return True

    async def request_export(self, path: str | Path) -> ExportResult:
        """Queue an export behind pending scans and wait for its result."""
        if not self.state.running or self._queue is None:
            raise RuntimeError("fusion worker is not running")
        job = _ExportJob(path=str(path), future=asyncio.get_running_loop().create_future())
        await self._queue.put(job)
        # A put that was waiting on a full queue can land after stop() drained it.
        if not self.state.running and not job.future.done():
            job.future.set_result(ExportResult(success=False, error="fusion worker stopped"))
        return await job.future

    async def drain(self) -> None:
        """Wait until everything queued so far has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            try:
                self.state.inflight = asyncio.ensure_future(self._handle(item))
                # Cancelling the worker must not abort a half-done item.
                await asyncio.shield(self.state.inflight)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Fusion worker failed on %s", type(item).__name__)
                if isinstance(item, _ExportJob) and not item.future.done():
                    item.future.set_result(ExportResult(success=False, error=str(e)))
            finally:
                self._queue.task_done()

    async def _handle(self, item: _WorkItem) -> None:
        if isinstance(item, Scan):
            await self.orchestrator.on_scan(item)
            return

        try:
            if item.from_timer:
                result = await self.exporter.try_export(item.path)
            else:
                result = await self.exporter.export(item.path)
        finally:
            if item.from_timer:
                self.state.timer_pending = False
        if not item.future.done():
            item.future.set_result(result)

    async def _timer_loop(self) -> None:
        assert self._queue is not None
        while self.state.running:
            await asyncio.sleep(self.auto_export_period_s)
            if self.state.timer_pending or self.exporter.in_progress:
                self.stats.exports_skipped += 1
                logger.info("Previous export still running, skipping auto-save")
                continue
            logger.info("Auto invoking save with path %s", self.auto_export_path)
            self.state.timer_pending = True
            job = _ExportJob(
                path=self.auto_export_path,
                future=asyncio.get_running_loop().create_future(),
                from_timer=True,
            )
            await self._queue.put(job)
