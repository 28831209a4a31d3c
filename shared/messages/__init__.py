"""Pydantic message schemas for inter-service communication."""

from shared.messages.export import ExportRequest, ExportResult
from shared.messages.mesh import MeshGeometry, MeshGeometryStamped
from shared.messages.point_cloud import PointCloudMessage
from shared.messages.pose import PoseMessage
