"""Fusion node: wires config, volume, poses, worker and bus together.

The node owns the single TSDFVolume and hands it to the orchestrator
(writes) and the export coordinator (reads); nothing else touches it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from shared.bus.publisher import EventPublisher
from shared.bus.subscriber import EventSubscriber
from shared.bus.topics import Topics
from shared.messages.export import ExportResult
from shared.messages.mesh import MeshGeometryStamped
from shared.messages.point_cloud import PointCloudMessage
from shared.messages.pose import PoseMessage
from src.config.fusion_config import FusionConfig
from src.fusion.exporter import ExportCoordinator
from src.fusion.pipeline import FusionWorker, IntegrationOrchestrator, Scan
from src.fusion.pose_buffer import PoseBuffer, PoseSynchronizer
from src.fusion.stats import FusionStats
from src.fusion.volume import TSDFVolume, WeightFn, uniform_weight

logger = logging.getLogger(__name__)


class FusionNode:
    """One volume, one worker, optional bus connection."""

    def __init__(
        self,
        config: FusionConfig,
        publisher: Optional[EventPublisher] = None,
        subscriber: Optional[EventSubscriber] = None,
        weight_fn: WeightFn = uniform_weight,
    ):
        self.config = config
        self.stats = FusionStats()
        self.volume = TSDFVolume(
            config.voxel_size, config.sdf_trunc, config.space_carving, max_depth=config.max_depth
        )
        self.poses = PoseBuffer(
            cache_s=config.pose_cache_s,
            parent_frame=config.mesh_frame_id,
            child_frame=config.sensor_frame_id,
        )
        self.synchronizer = PoseSynchronizer(
            self.poses, tolerance_s=config.timestamp_tolerance_s, wait_s=config.pose_wait_s
        )
        self.orchestrator = IntegrationOrchestrator.from_config(
            config, self.volume, self.synchronizer, stats=self.stats, weight_fn=weight_fn
        )
        self.exporter = ExportCoordinator(
            self.volume,
            fill_holes=config.fill_holes,
            min_weight=config.min_weight,
            frame_id=config.mesh_frame_id,
            stats=self.stats,
        )
        self.worker = FusionWorker(
            self.orchestrator,
            self.exporter,
            queue_size=config.queue_size,
            auto_export_period_s=config.save_publish_wait_time_s,
            auto_export_path=config.save_path,
            stats=self.stats,
        )
        self.publisher = publisher
        self.subscriber = subscriber
        if publisher is not None:
            self.exporter.add_sink(self._publish_mesh)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.worker.start()
        if self.subscriber is not None and self.subscriber.is_connected:
            await self.subscriber.subscribe(self.config.pcl_topic, self._on_scan_message)
            await self.subscriber.subscribe(self.config.pose_topic, self._on_pose_message)
            await self.subscriber.listen()
            logger.info(
                "Listening for scans on %s and poses on %s",
                self.config.pcl_topic, self.config.pose_topic,
            )
        logger.info(
            "Fusion node ready (voxel %.3f m, trunc %.3f m, space carving %s)",
            self.config.voxel_size, self.config.sdf_trunc, self.config.space_carving,
        )

    async def stop(self) -> None:
        await self.worker.stop()
        logger.info(
            "Fusion node stopped after %d integrated scans (%d voxels)",
            self.stats.scans_integrated, self.volume.voxel_count,
        )

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def ingest_scan(self, msg: PointCloudMessage) -> bool:
        """Queue a validated scan. False when the backlog is full."""
        return self.worker.submit_scan(Scan.from_message(msg))

    def ingest_pose(self, msg: PoseMessage) -> bool:
        self.stats.poses_received += 1
        return self.poses.add_message(msg)

    async def save(self, path: Optional[str] = None) -> ExportResult:
        return await self.worker.request_export(path or self.config.save_path)

    async def _on_scan_message(self, topic: str, data: dict) -> None:
        try:
            msg = PointCloudMessage.model_validate(data)
        except ValidationError as e:
            self.stats.scans_rejected += 1
            n = self.stats.scans_rejected
            if n <= 3 or n % 100 == 0:
                logger.warning("Rejected malformed scan on %s: %s", topic, e.errors()[:1])
            return
        self.ingest_scan(msg)

    async def _on_pose_message(self, topic: str, data: dict) -> None:
        try:
            msg = PoseMessage.model_validate(data)
        except ValidationError as e:
            logger.debug("Rejected malformed pose on %s: %s", topic, e.errors()[:1])
            return
        self.ingest_pose(msg)

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    async def _publish_mesh(self, msg: MeshGeometryStamped) -> None:
        if self.publisher is not None:
            await self.publisher.publish(Topics.MAP_MESH, msg)

    def get_status(self) -> Dict[str, Any]:
        return {
            "stats": self.stats.to_dict(),
            "volume": self.volume.get_stats(),
            "poses": {"buffered": len(self.poses), "latest_stamp": self.poses.latest_stamp},
            "queue": {"pending": self.worker.pending, "capacity": self.config.queue_size},
            "export": {
                "in_progress": self.exporter.in_progress,
                "auto_export": self.worker.auto_export_enabled,
                "period_s": self.config.save_publish_wait_time_s,
            },
        }
