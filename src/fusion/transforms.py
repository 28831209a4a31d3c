"""Rigid-body poses for sensor-to-volume transforms."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy.spatial.transform import Rotation, Slerp

from shared.messages.pose import PoseMessage


@dataclass(frozen=True, eq=False)
class Pose:
    """Sensor pose in the volume frame, valid at ``stamp`` (seconds).

    ``rotation`` is a unit quaternion in scalar-last (x, y, z, w) order.
    """

    stamp: float
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))

    def __post_init__(self):
        t = np.asarray(self.translation, dtype=np.float64).reshape(3)
        q = np.asarray(self.rotation, dtype=np.float64).reshape(4)
        n = np.linalg.norm(q)
        if not np.isfinite(n) or n < 1e-12:
            raise ValueError("pose rotation must be a non-zero quaternion")
        object.__setattr__(self, "translation", t)
        object.__setattr__(self, "rotation", q / n)

    @classmethod
    def identity(cls, stamp: float = 0.0) -> Pose:
        return cls(stamp=stamp)

    @classmethod
    def from_message(cls, msg: PoseMessage) -> Pose:
        return cls(stamp=msg.stamp, translation=np.array(msg.translation), rotation=np.array(msg.rotation))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray, stamp: float = 0.0) -> Pose:
        m = np.asarray(matrix, dtype=np.float64)
        return cls(stamp=stamp, translation=m[:3, 3], rotation=Rotation.from_matrix(m[:3, :3]).as_quat())

    def as_matrix(self) -> np.ndarray:
        """4x4 homogeneous transform."""
        T = np.eye(4)
        T[:3, :3] = Rotation.from_quat(self.rotation).as_matrix()
        T[:3, 3] = self.translation
        return T

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Transform (N, 3) points from the sensor frame into the volume frame.

        Read-only inputs (e.g. ``Scan.points``) are fine; a new array is returned.
        """
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(pts) == 0:
            return pts.copy()
        R = Rotation.from_quat(self.rotation).as_matrix()
        return pts @ R.T + self.translation


def interpolate(before: Pose, after: Pose, stamp: float) -> Pose:
    """Pose at ``stamp`` between two samples: linear translation, SLERP rotation."""
    if after.stamp == before.stamp:
        return Pose(stamp=stamp, translation=before.translation, rotation=before.rotation)

    s = (stamp - before.stamp) / (after.stamp - before.stamp)
    s = float(np.clip(s, 0.0, 1.0))
    trans = before.translation + s * (after.translation - before.translation)

    rots = Rotation.from_quat(np.stack([before.rotation, after.rotation]))
    rot = Slerp([0.0, 1.0], rots)(s).as_quat()
    return Pose(stamp=stamp, translation=trans, rotation=rot)
