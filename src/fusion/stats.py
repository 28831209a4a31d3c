"""Counters for the fusion pipeline, exposed through /api/stats."""

from __future__ import annotations

import time
from typing import Any, Dict


class FusionStats:
    def __init__(self):
        self.started: float = time.time()
        # Ingest
        self.scans_received: int = 0
        self.scans_integrated: int = 0
        self.scans_dropped_backlog: int = 0
        self.scans_rejected: int = 0  # malformed messages
        self.pose_misses: int = 0
        self.scan_errors: int = 0
        self.last_integration: float = 0.0
        # Poses
        self.poses_received: int = 0
        # Export
        self.exports_ok: int = 0
        self.exports_failed: int = 0
        self.exports_skipped: int = 0
        self.meshes_published: int = 0
        self.last_export: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        uptime = max(time.time() - self.started, 1e-6)
        return {
            "uptime_s": round(uptime, 1),
            "ingest": {
                "received": self.scans_received,
                "integrated": self.scans_integrated,
                "dropped_backlog": self.scans_dropped_backlog,
                "rejected": self.scans_rejected,
                "pose_misses": self.pose_misses,
                "errors": self.scan_errors,
                "last": self.last_integration,
                "rate_hz": self.scans_integrated / uptime,
            },
            "poses": {
                "received": self.poses_received,
            },
            "export": {
                "ok": self.exports_ok,
                "failed": self.exports_failed,
                "skipped": self.exports_skipped,
                "published": self.meshes_published,
                "last": self.last_export,
            },
        }
