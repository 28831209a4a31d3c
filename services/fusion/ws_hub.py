"""WebSocket fan-out for extracted meshes.

The last mesh is latched: a viewer that connects after an export still
gets the current surface immediately.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, Optional

from fastapi import WebSocket

from shared.messages.mesh import MeshGeometryStamped

logger = logging.getLogger(__name__)


class MeshHub:
    """Tracks mesh viewers and pushes every new mesh to them."""

    def __init__(self):
        self._clients: Dict[int, WebSocket] = {}
        self._latched: Optional[str] = None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def has_mesh(self) -> bool:
        return self._latched is not None

    async def connect(self, ws: WebSocket) -> None:
        """Accept a viewer and replay the latched mesh, if any."""
        await ws.accept()
        self._clients[id(ws)] = ws
        logger.info("WS client connected (%d total)", len(self._clients))
        if self._latched is not None:
            await ws.send_text(self._latched)

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.pop(id(ws), None)
        logger.info("WS client disconnected (%d remaining)", len(self._clients))

    async def publish(self, msg: MeshGeometryStamped) -> int:
        """Latch ``msg`` and send it to every viewer. Returns clients reached."""
        text = json.dumps({"type": "mesh", "data": msg.model_dump()})
        self._latched = text

        sent = 0
        dead = []
        for cid, ws in list(self._clients.items()):
            try:
                await ws.send_text(text)
                sent += 1
            except Exception:
                # Client likely disconnected
                dead.append(cid)
        for cid in dead:
            self._clients.pop(cid, None)
        return sent
