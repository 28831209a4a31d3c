"""Pydantic models for sensor pose updates."""

import math

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PoseMessage(BaseModel):
    """Sensor pose (child_frame expressed in parent_frame) valid at ``stamp``."""

    parent_frame: str = Field(default="map", description="Fixed frame the volume lives in")
    child_frame: str = Field(default="sensor", description="Sensor frame")
    stamp: float = Field(description="Time this pose is valid for, in seconds")
    translation: list[float] = Field(description="[x, y, z] in meters")
    rotation: list[float] = Field(
        default=[0.0, 0.0, 0.0, 1.0],
        description="Unit quaternion [x, y, z, w]",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "parent_frame": "map",
                "child_frame": "sensor",
                "stamp": 1700000000.2,
                "translation": [0.5, 0.0, 1.2],
                "rotation": [0.0, 0.0, 0.0, 1.0],
            }
        }
    )

    @field_validator("translation")
    @classmethod
    def _translation_is_xyz(cls, v: list[float]) -> list[float]:
        if len(v) != 3:
            raise ValueError("translation must have 3 components")
        return v

    @field_validator("rotation")
    @classmethod
    def _rotation_is_quaternion(cls, v: list[float]) -> list[float]:
        if len(v) != 4:
            raise ValueError("rotation must be a quaternion [x, y, z, w]")
        norm = math.sqrt(sum(c * c for c in v))
        if norm < 1e-9:
            raise ValueError("rotation quaternion has zero length")
        return [c / norm for c in v]
