"""Tests for fusion configuration loading and validation."""

import json

import pytest

from src.config.fusion_config import DEFAULTS, ConfigError, FusionConfig, load_fusion_config


class TestLoadFusionConfig:
    def test_voxel_size_is_required(self):
        with pytest.raises(ConfigError, match="voxel_size"):
            load_fusion_config(environ={})

    def test_defaults(self):
        config = load_fusion_config(environ={}, voxel_size=0.1)
        assert isinstance(config, FusionConfig)
        assert config.sdf_trunc == DEFAULTS["sdf_trunc"]
        assert config.mesh_frame_id == "map"
        assert config.auto_export_enabled is False

    def test_tolerance_in_seconds(self):
        config = load_fusion_config(environ={}, voxel_size=0.1, timestamp_tolerance_ns=25_000_000)
        assert config.timestamp_tolerance_s == pytest.approx(0.025)

    def test_file_values(self, tmp_path):
        path = tmp_path / "fusion.json"
        path.write_text(json.dumps({"voxel_size": 0.2, "space_carving": True, "save_publish_wait_time_s": 5.0}))
        config = load_fusion_config(path, environ={})
        assert config.voxel_size == 0.2
        assert config.space_carving is True
        assert config.auto_export_enabled is True

    def test_file_from_environment(self, tmp_path):
        path = tmp_path / "fusion.json"
        path.write_text(json.dumps({"voxel_size": 0.3}))
        config = load_fusion_config(environ={"FUSION_CONFIG": str(path)})
        assert config.voxel_size == 0.3

    def test_env_overrides_file(self, tmp_path):
        path = tmp_path / "fusion.json"
        path.write_text(json.dumps({"voxel_size": 0.2, "fill_holes": True}))
        env = {"FUSION_VOXEL_SIZE": "0.05", "FUSION_FILL_HOLES": "false", "FUSION_QUEUE_SIZE": "10"}
        config = load_fusion_config(path, environ=env)
        assert config.voxel_size == 0.05
        assert config.fill_holes is False
        assert config.queue_size == 10

    def test_max_depth_from_environment(self):
        config = load_fusion_config(environ={"FUSION_VOXEL_SIZE": "0.1", "FUSION_MAX_DEPTH": "25"})
        assert config.max_depth == 25.0
        assert DEFAULTS["max_depth"] == 100.0

    def test_keyword_overrides_win(self):
        config = load_fusion_config(environ={"FUSION_VOXEL_SIZE": "0.05"}, voxel_size=0.5)
        assert config.voxel_size == 0.5

    def test_bad_env_value(self):
        with pytest.raises(ConfigError, match="FUSION_QUEUE_SIZE"):
            load_fusion_config(environ={"FUSION_VOXEL_SIZE": "0.1", "FUSION_QUEUE_SIZE": "many"})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_fusion_config(tmp_path / "nope.json", environ={})

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{voxel_size: ")
        with pytest.raises(ConfigError):
            load_fusion_config(path, environ={})

    @pytest.mark.parametrize(
        "overrides",
        [
            {"voxel_size": 0.0},
            {"voxel_size": 0.1, "sdf_trunc": -0.1},
            {"voxel_size": 0.1, "max_depth": 0.0},
            {"voxel_size": 0.1, "min_range": 5.0, "max_range": 1.0},
            {"voxel_size": 0.1, "queue_size": 0},
            {"voxel_size": 0.1, "save_path": ""},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigError):
            load_fusion_config(environ={}, **overrides)
