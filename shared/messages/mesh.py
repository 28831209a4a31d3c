"""Pydantic models for published mesh geometry."""

import uuid as _uuid

from pydantic import BaseModel, Field


class MeshGeometry(BaseModel):
    """Triangle mesh: vertex positions plus vertex-index triples."""

    vertices: list[list[float]] = Field(default_factory=list, description="[[x, y, z], ...]")
    faces: list[list[int]] = Field(default_factory=list, description="[[i0, i1, i2], ...]")


class MeshGeometryStamped(BaseModel):
    """Mesh broadcast by the Fusion service after each successful export."""

    uuid: str = Field(default_factory=lambda: _uuid.uuid4().hex, description="Mesh identifier")
    frame_id: str = Field(default="map", description="Frame the vertices are expressed in")
    stamp: float = Field(description="Unix timestamp of extraction")
    mesh_geometry: MeshGeometry = Field(default_factory=MeshGeometry)

    @property
    def vertex_count(self) -> int:
        return len(self.mesh_geometry.vertices)
