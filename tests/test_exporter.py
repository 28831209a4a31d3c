"""Tests for grid/mesh export and mesh publishing."""

import asyncio

import numpy as np
import pytest

from src.fusion.exporter import ExportCoordinator
from src.fusion.mesh_io import export_paths, read_grid
from src.fusion.stats import FusionStats
from src.fusion.volume import TSDFVolume

from conftest import RecordingVolume, plane_points


@pytest.fixture
def plane_volume():
    vol = TSDFVolume(voxel_size=0.05, sdf_trunc=0.15)
    vol.integrate(plane_points(z=1.0), np.zeros(3))
    return vol


class _Sink:
    def __init__(self):
        self.messages = []

    async def __call__(self, msg):
        self.messages.append(msg)


class TestExportCoordinator:
    @pytest.mark.asyncio
    async def test_export_writes_both_files_and_publishes(self, plane_volume, tmp_path):
        sink = _Sink()
        stats = FusionStats()
        exporter = ExportCoordinator(
            plane_volume, min_weight=0.0, frame_id="world", sinks=[sink], stats=stats, clock=lambda: 42.0
        )

        result = await exporter.export(tmp_path / "out" / "scene")

        assert result.success
        grid_path, mesh_path = export_paths(tmp_path / "out" / "scene")
        assert result.grid_path == str(grid_path)
        assert result.mesh_path == str(mesh_path)
        assert grid_path.exists() and mesh_path.exists()
        assert len(read_grid(grid_path)) == plane_volume.voxel_count
        assert result.mesh_vertex_count >= 3
        assert result.triangle_count >= 1
        assert result.published is True

        assert len(sink.messages) == 1
        msg = sink.messages[0]
        assert msg.frame_id == "world"
        assert msg.stamp == 42.0
        assert msg.vertex_count == result.mesh_vertex_count
        assert len(msg.mesh_geometry.faces) == result.triangle_count
        assert stats.exports_ok == 1
        assert stats.meshes_published == 1
        assert stats.last_export == 42.0

    @pytest.mark.asyncio
    async def test_empty_volume_writes_files_but_does_not_publish(self, tmp_path):
        sink = _Sink()
        exporter = ExportCoordinator(TSDFVolume(0.1, 0.3), sinks=[sink])

        result = await exporter.export(tmp_path / "empty")

        assert result.success
        assert result.mesh_vertex_count == 0
        assert result.published is False
        grid_path, mesh_path = export_paths(tmp_path / "empty")
        assert grid_path.exists()
        assert mesh_path.exists()
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_unwritable_target_is_reported(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        stats = FusionStats()
        exporter = ExportCoordinator(RecordingVolume(), stats=stats)

        result = await exporter.export(blocker / "volume")

        assert result.success is False
        assert result.error
        assert stats.exports_failed == 1
        assert not exporter.in_progress

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_fail_export(self, tmp_path):
        async def _broken(msg):
            raise ConnectionError("viewer gone")

        good = _Sink()
        exporter = ExportCoordinator(RecordingVolume(), sinks=[_broken, good])

        result = await exporter.export(tmp_path / "v")

        assert result.success
        assert result.published is True
        assert len(good.messages) == 1

    @pytest.mark.asyncio
    async def test_mesh_not_published_when_every_sink_fails(self, tmp_path):
        async def _broken(msg):
            raise ConnectionError("bus down")

        stats = FusionStats()
        exporter = ExportCoordinator(RecordingVolume(), sinks=[_broken, _broken], stats=stats)

        result = await exporter.export(tmp_path / "v")

        assert result.success
        assert result.mesh_vertex_count > 0
        assert result.published is False
        assert stats.meshes_published == 0

    @pytest.mark.asyncio
    async def test_concurrent_exports_do_not_overlap(self, tmp_path):
        vol = RecordingVolume(delay_s=0.05)
        exporter = ExportCoordinator(vol)

        results = await asyncio.gather(*(exporter.export(tmp_path / f"v{i}") for i in range(3)))

        assert all(r.success for r in results)
        assert vol.events == [("extract", "start"), ("extract", "end")] * 3

    @pytest.mark.asyncio
    async def test_try_export_skips_when_busy(self, tmp_path):
        vol = RecordingVolume(delay_s=0.2)
        stats = FusionStats()
        exporter = ExportCoordinator(vol, stats=stats)

        running = asyncio.create_task(exporter.export(tmp_path / "first"))
        await asyncio.sleep(0.05)
        assert exporter.in_progress

        skipped = await exporter.try_export(tmp_path / "second")
        first = await running

        assert skipped is None
        assert first.success
        assert stats.exports_skipped == 1
        assert not export_paths(tmp_path / "second")[0].exists()

    @pytest.mark.asyncio
    async def test_try_export_runs_when_idle(self, tmp_path):
        exporter = ExportCoordinator(RecordingVolume())
        result = await exporter.try_export(tmp_path / "idle")
        assert result is not None and result.success
