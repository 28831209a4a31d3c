"""Pydantic models for point-cloud scans."""

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator


class PointCloudMessage(BaseModel):
    """One scan from a range sensor, as published on the bus or posted to the API."""

    source_id: str = Field(default="", description="Scanner identifier")
    frame_id: str = Field(default="sensor", description="Frame the points are expressed in")
    stamp: float = Field(description="Capture time in seconds")
    points: list[list[float]] = Field(description="[[x, y, z], ...] in meters")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "source_id": "lidar_front",
                "frame_id": "sensor",
                "stamp": 1700000000.25,
                "points": [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]],
            }
        }
    )

    @field_validator("points")
    @classmethod
    def _points_are_xyz(cls, v: list[list[float]]) -> list[list[float]]:
        for i, p in enumerate(v):
            if len(p) != 3:
                raise ValueError(f"point {i} has {len(p)} coordinates, expected 3")
        return v

    def to_array(self) -> np.ndarray:
        """Points as an (N, 3) float64 array."""
        if not self.points:
            return np.zeros((0, 3), dtype=np.float64)
        return np.asarray(self.points, dtype=np.float64)
