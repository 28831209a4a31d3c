"""Pose-synchronized TSDF integration and mesh export."""

from src.fusion.exporter import ExportCoordinator
from src.fusion.pipeline import FusionWorker, IntegrationOrchestrator, Scan
from src.fusion.pose_buffer import PoseBuffer, PoseSynchronizer
from src.fusion.preprocess import preprocess
from src.fusion.transforms import Pose
from src.fusion.volume import TSDFVolume, uniform_weight

__all__ = [
    "ExportCoordinator",
    "FusionWorker",
    "IntegrationOrchestrator",
    "Pose",
    "PoseBuffer",
    "PoseSynchronizer",
    "Scan",
    "TSDFVolume",
    "preprocess",
    "uniform_weight",
]
