"""On-disk formats for exported volumes.

Grid: compressed numpy archive (.npz) holding the sparse voxel store.
Mesh: binary PLY written through trimesh.

Both writers go through a temp file in the target directory and an atomic
rename, so a failed or interrupted export never leaves a partial file.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import IO, Iterator

import numpy as np
import trimesh
from trimesh.exchange.ply import export_ply

from src.fusion.volume import VolumeSnapshot

logger = logging.getLogger(__name__)

GRID_SUFFIX = "_grid.npz"
MESH_SUFFIX = "_mesh.ply"


def export_paths(base: str | Path) -> tuple[Path, Path]:
    """Grid and mesh file paths for an export base path."""
    base = str(base)
    return Path(base + GRID_SUFFIX), Path(base + MESH_SUFFIX)


@contextlib.contextmanager
def atomic_write(path: Path) -> Iterator[IO[bytes]]:
    """Yield a binary file that replaces ``path`` only if the block succeeds."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


def write_grid(snapshot: VolumeSnapshot, path: str | Path) -> Path:
    path = Path(path)
    with atomic_write(path) as f:
        np.savez_compressed(
            f,
            voxel_size=np.float64(snapshot.voxel_size),
            sdf_trunc=np.float64(snapshot.sdf_trunc),
            space_carving=np.bool_(snapshot.space_carving),
            keys=snapshot.keys,
            tsdf=snapshot.tsdf,
            weight=snapshot.weight,
        )
    logger.debug("Wrote %d voxels to %s", len(snapshot), path)
    return path


def read_grid(path: str | Path) -> VolumeSnapshot:
    with np.load(path) as data:
        return VolumeSnapshot(
            voxel_size=float(data["voxel_size"]),
            sdf_trunc=float(data["sdf_trunc"]),
            space_carving=bool(data["space_carving"]),
            keys=data["keys"].astype(np.int64),
            tsdf=data["tsdf"].astype(np.float64),
            weight=data["weight"].astype(np.float64),
        )


def write_mesh(vertices: np.ndarray, triangles: np.ndarray, path: str | Path) -> Path:
    """Write a binary PLY. An empty mesh still produces a valid (empty) file."""
    path = Path(path)
    mesh = trimesh.Trimesh(
        vertices=np.asarray(vertices, dtype=np.float64).reshape(-1, 3),
        faces=np.asarray(triangles, dtype=np.int64).reshape(-1, 3),
        process=False,
    )
    data = export_ply(mesh, encoding="binary")
    with atomic_write(path) as f:
        f.write(data)
    logger.debug("Wrote mesh (%d vertices, %d faces) to %s", len(mesh.vertices), len(mesh.faces), path)
    return path


def read_mesh(path: str | Path) -> trimesh.Trimesh:
    return trimesh.load(str(path), file_type="ply", process=False, force="mesh")
