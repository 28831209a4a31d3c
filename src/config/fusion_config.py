"""
Configuration for the fusion pipeline.

Values come from three layers, later ones winning:
    1. DEFAULTS below
    2. a JSON file (``--config`` or the FUSION_CONFIG env var)
    3. FUSION_<KEY> environment variables (e.g. FUSION_VOXEL_SIZE=0.05)

The merged result is validated once at startup. Anything invalid raises
ConfigError, which the server treats as fatal before ingestion begins.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "FUSION_"

# ── Defaults ──────────────────────────────────────────────────────────────
# voxel_size has no default: the grid resolution must be chosen explicitly.

DEFAULTS: dict[str, Any] = {
    # Volume
    "sdf_trunc": 0.3,
    "space_carving": False,
    "max_depth": 100.0,
    # Input
    "pcl_topic": "sensor.points",
    "pose_topic": "sensor.pose",
    "queue_size": 500,
    # Point cloud processing
    "preprocess": True,
    "apply_pose": True,
    "min_range": 0.0,
    "max_range": 30.0,
    # Pose synchronization
    "timestamp_tolerance_ns": 10_000_000,
    "pose_wait_s": 0.0,
    "pose_cache_s": 10.0,
    # Triangle mesh extraction
    "fill_holes": True,
    "min_weight": 5.0,
    # Export
    "save_publish_wait_time_s": 0.0,
    "save_path": "data/fusion/volume",
    "mesh_frame_id": "map",
    "sensor_frame_id": "sensor",
}


class ConfigError(Exception):
    """Raised when the fusion configuration is missing or invalid."""


class FusionConfig(BaseModel):
    """Validated fusion parameters."""

    voxel_size: float = Field(gt=0, description="Grid resolution in meters")
    sdf_trunc: float = Field(gt=0, description="Truncation distance in meters")
    space_carving: bool = Field(description="Update free space between sensor and surface")
    max_depth: float = Field(gt=0, description="Rays longer than this (m) are not integrated")

    pcl_topic: str = Field(min_length=1, description="Bus topic carrying scans")
    pose_topic: str = Field(min_length=1, description="Bus topic carrying sensor poses")
    queue_size: int = Field(gt=0, description="Pending scans before new ones are dropped")

    preprocess: bool
    apply_pose: bool
    min_range: float = Field(ge=0, description="Drop points closer than this (m)")
    max_range: float = Field(ge=0, description="Drop points farther than this (m)")

    timestamp_tolerance_ns: int = Field(ge=0)
    pose_wait_s: float = Field(ge=0, description="How long a scan may wait for its pose")
    pose_cache_s: float = Field(gt=0, description="Pose history kept for lookups")

    fill_holes: bool
    min_weight: float = Field(ge=0)

    save_publish_wait_time_s: float = Field(description="Auto-export period; <= 0 disables")
    save_path: str = Field(min_length=1, description="Base path for auto-export")
    mesh_frame_id: str = Field(min_length=1, description="Volume frame; parent of sensor poses")
    sensor_frame_id: str = Field(min_length=1, description="Child frame of sensor poses")

    @model_validator(mode="after")
    def _check_ranges(self) -> FusionConfig:
        if self.max_range < self.min_range:
            raise ValueError(
                f"max_range ({self.max_range}) must be >= min_range ({self.min_range})"
            )
        return self

    @property
    def timestamp_tolerance_s(self) -> float:
        return self.timestamp_tolerance_ns * 1e-9

    @property
    def auto_export_enabled(self) -> bool:
        return self.save_publish_wait_time_s > 0


def _coerce_env(raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the matching default."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("true", "1", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    keys = set(DEFAULTS) | {"voxel_size"}
    for key in keys:
        env_key = ENV_PREFIX + key.upper()
        if env_key not in environ:
            continue
        default = DEFAULTS.get(key, 0.0)
        try:
            overrides[key] = _coerce_env(environ[env_key], default)
        except ValueError as e:
            raise ConfigError(f"{env_key}={environ[env_key]!r}: {e}") from e
    return overrides


def _read_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must hold a JSON object")
    return data


def load_fusion_config(
    path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> FusionConfig:
    """Build and validate the fusion configuration.

    Args:
        path: JSON config file. Falls back to $FUSION_CONFIG when None.
        environ: Environment mapping (defaults to os.environ).
        **overrides: Highest-priority values, used by tests and the CLI.

    Raises:
        ConfigError: missing voxel_size, bad types or out-of-range values.
    """
    environ = os.environ if environ is None else environ
    data = copy.deepcopy(DEFAULTS)

    path = path or environ.get(ENV_PREFIX + "CONFIG")
    if path:
        data.update(_read_file(Path(path)))
        logger.info("Loaded fusion config from %s", path)

    data.update(_env_overrides(environ))
    data.update(overrides)

    if data.get("voxel_size") is None:
        raise ConfigError("voxel_size is required (set it in the config file or FUSION_VOXEL_SIZE)")

    try:
        return FusionConfig(**data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
