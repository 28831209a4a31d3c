"""Pydantic models for the volume export request/response."""

from typing import Optional

from pydantic import BaseModel, Field


class ExportRequest(BaseModel):
    """Save the integrated volume under a base path."""

    path: str = Field(min_length=1, description="Base path; suffixes _grid.npz and _mesh.ply are appended")


class ExportResult(BaseModel):
    """Outcome of one export."""

    success: bool
    mesh_vertex_count: int = 0
    triangle_count: int = 0
    grid_path: Optional[str] = None
    mesh_path: Optional[str] = None
    published: bool = Field(default=False, description="Whether a mesh notification went out")
    error: str = ""
    duration_s: float = 0.0
