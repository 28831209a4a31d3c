"""Pose history and timestamp-tolerant pose lookup.

PoseBuffer keeps a bounded, time-ordered history of sensor poses (one
parent/child frame pair), the way a transform buffer does. PoseSynchronizer
puts the fusion tolerance gate in front of any PoseSource and optionally
waits a bounded time for a late pose.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import threading
import time
from typing import List, Optional, Protocol

from shared.messages.pose import PoseMessage
from src.fusion.transforms import Pose, interpolate

logger = logging.getLogger(__name__)


class PoseSource(Protocol):
    """Anything that can answer "where was the sensor at time t"."""

    def lookup(self, stamp: float, tolerance: float) -> Optional[Pose]: ...

    @property
    def latest_stamp(self) -> Optional[float]: ...


class PoseBuffer:
    """Thread-safe, time-ordered pose history."""

    def __init__(
        self,
        cache_s: float = 10.0,
        parent_frame: str = "map",
        child_frame: str = "sensor",
    ):
        self.cache_s = cache_s
        self.parent_frame = parent_frame
        self.child_frame = child_frame
        self._lock = threading.Lock()
        self._stamps: List[float] = []
        self._poses: List[Pose] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._poses)

    @property
    def latest_stamp(self) -> Optional[float]:
        with self._lock:
            return self._stamps[-1] if self._stamps else None

    def add(self, pose: Pose) -> None:
        """Insert a pose, replacing any sample with the same stamp."""
        with self._lock:
            i = bisect.bisect_left(self._stamps, pose.stamp)
            if i < len(self._stamps) and self._stamps[i] == pose.stamp:
                self._poses[i] = pose
            else:
                self._stamps.insert(i, pose.stamp)
                self._poses.insert(i, pose)
            self._evict()

    def add_message(self, msg: PoseMessage) -> bool:
        """Insert a pose from the bus. Messages for other frames are ignored."""
        if msg.parent_frame != self.parent_frame or msg.child_frame != self.child_frame:
            logger.debug(
                "Ignoring pose %s->%s (buffer tracks %s->%s)",
                msg.parent_frame, msg.child_frame, self.parent_frame, self.child_frame,
            )
            return False
        self.add(Pose.from_message(msg))
        return True

    def _evict(self) -> None:
        cutoff = self._stamps[-1] - self.cache_s
        n = bisect.bisect_left(self._stamps, cutoff)
        if n:
            del self._stamps[:n]
            del self._poses[:n]

    def clear(self) -> None:
        with self._lock:
            self._stamps.clear()
            self._poses.clear()

    def lookup(self, stamp: float, tolerance: float) -> Optional[Pose]:
        """Pose valid at ``stamp``, using only samples within ``tolerance`` seconds.

        Interpolates when samples on both sides are inside the window,
        otherwise holds the nearest in-window sample. Returns None when the
        window [stamp - tolerance, stamp + tolerance] holds no sample.
        """
        with self._lock:
            if not self._stamps:
                return None
            i = bisect.bisect_left(self._stamps, stamp)
            if i < len(self._stamps) and self._stamps[i] == stamp:
                return self._poses[i]

            before = self._poses[i - 1] if i > 0 else None
            after = self._poses[i] if i < len(self._poses) else None

        if before is not None and stamp - before.stamp > tolerance:
            before = None
        if after is not None and after.stamp - stamp > tolerance:
            after = None

        if before is not None and after is not None:
            return interpolate(before, after, stamp)
        if before is not None:
            return before
        return after


class PoseSynchronizer:
    """Tolerance-gated pose resolution for scan timestamps."""

    POLL_INTERVAL_S = 0.005

    def __init__(self, source: PoseSource, tolerance_s: float, wait_s: float = 0.0):
        if tolerance_s < 0:
            raise ValueError("tolerance must be >= 0")
        self.source = source
        self.tolerance_s = tolerance_s
        self.wait_s = wait_s

    def lookup(self, stamp: float) -> Optional[Pose]:
        """Immediate lookup, no waiting."""
        return self.source.lookup(stamp, self.tolerance_s)

    async def resolve(self, stamp: float) -> Optional[Pose]:
        """Pose for ``stamp``, waiting up to ``wait_s`` for the provider to catch up.

        Stops waiting as soon as the provider holds a sample past the end of
        the tolerance window, since no later sample can change the answer.
        Cancellation propagates out of the wait.
        """
        pose = self.lookup(stamp)
        if pose is not None or self.wait_s <= 0:
            return pose

        deadline = time.monotonic() + self.wait_s
        window_end = stamp + self.tolerance_s
        while time.monotonic() < deadline:
            latest = self.source.latest_stamp
            if latest is not None and latest >= window_end:
                break
            await asyncio.sleep(self.POLL_INTERVAL_S)
            pose = self.lookup(stamp)
            if pose is not None:
                return pose
        return self.lookup(stamp)
