"""
Fusion Server: TSDF integration of posed scans and mesh export.

Receives point-cloud scans and sensor poses (HTTP or message bus), integrates
every scan that has a pose inside the timestamp tolerance into one TSDF
volume, and on request or on a timer saves the grid and a triangle mesh and
publishes the mesh to the bus and WebSocket viewers.

Port: 8086 (configurable via FUSION_PORT env var)

Usage:
    python -m services.fusion.server --config data/fusion_config.json
    FUSION_VOXEL_SIZE=0.05 python -m services.fusion.server --debug
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from services.fusion.ws_hub import MeshHub
from shared.bus.publisher import EventPublisher
from shared.bus.subscriber import EventSubscriber
from shared.config.service_registry import ServiceConfig
from shared.messages.export import ExportRequest, ExportResult
from shared.messages.point_cloud import PointCloudMessage
from shared.messages.pose import PoseMessage
from shared.utils.logging_config import setup_logging
from src.config.fusion_config import ConfigError, FusionConfig, load_fusion_config
from src.fusion.node import FusionNode

logger = logging.getLogger("scanfuse.fusion")

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(config: FusionConfig, connect_bus: bool = True) -> FastAPI:
    """Build the FastAPI app around a fresh FusionNode.

    With ``connect_bus`` the node also talks to Redis; if Redis is not
    reachable it keeps running on HTTP alone.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        publisher: Optional[EventPublisher] = None
        subscriber: Optional[EventSubscriber] = None
        if connect_bus:
            publisher = EventPublisher()
            if not await publisher.connect():
                logger.info("Message bus publisher not available (operating standalone)")
            subscriber = EventSubscriber()
            if not await subscriber.connect():
                logger.info("Message bus subscriber not available (operating standalone)")

        node = FusionNode(config, publisher=publisher, subscriber=subscriber)
        hub = MeshHub()
        node.exporter.add_sink(hub.publish)
        app.state.node = node
        app.state.hub = hub

        await node.start()
        logger.info("Fusion ready (voxel_size=%.3f m)", config.voxel_size)
        yield

        # Shutdown
        await node.stop()
        if subscriber:
            await subscriber.close()
        if publisher:
            await publisher.close()
        logger.info("Fusion shut down")

    app = FastAPI(
        title="scanfuse Fusion",
        description="Pose-synchronized TSDF integration and mesh export",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = config
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # -----------------------------------------------------------------------
    # Health / status
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint."""
        node: FusionNode = request.app.state.node
        return {
            "status": "healthy",
            "service": "fusion",
            "integrated_scans": node.stats.scans_integrated,
            "voxels": node.volume.voxel_count,
            "bus_connected": node.publisher.is_connected if node.publisher else False,
        }

    @app.get("/api/stats")
    async def get_stats(request: Request):
        return {**request.app.state.node.get_status(), "timestamp": time.time()}

    @app.get("/api/config")
    async def get_config(request: Request):
        return request.app.state.config.model_dump()

    # -----------------------------------------------------------------------
    # Ingest
    # -----------------------------------------------------------------------

    @app.post("/api/scans", status_code=202)
    async def post_scan(scan: PointCloudMessage, request: Request):
        """Queue one scan for integration. 429 when the backlog is full."""
        node: FusionNode = request.app.state.node
        if not node.ingest_scan(scan):
            return JSONResponse(
                status_code=429,
                content={"queued": False, "detail": "scan backlog full", "pending": node.worker.pending},
            )
        return {"queued": True, "pending": node.worker.pending}

    @app.post("/api/poses")
    async def post_pose(pose: PoseMessage, request: Request):
        node: FusionNode = request.app.state.node
        return {"accepted": node.ingest_pose(pose), "buffered": len(node.poses)}

    # -----------------------------------------------------------------------
    # Export
    # -----------------------------------------------------------------------

    @app.post("/api/save_volume", response_model=ExportResult)
    async def save_volume(req: ExportRequest, request: Request):
        """Save ``<path>_grid.npz`` and ``<path>_mesh.ply`` and publish the mesh."""
        node: FusionNode = request.app.state.node
        result = await node.save(req.path)
        if not result.success:
            return JSONResponse(status_code=500, content=result.model_dump())
        return result

    # -----------------------------------------------------------------------
    # WebSocket: mesh updates
    # -----------------------------------------------------------------------

    @app.websocket("/ws/mesh")
    async def ws_mesh(websocket: WebSocket):
        """Latest mesh on connect, then every new mesh as it is exported."""
        hub: MeshHub = websocket.app.state.hub
        await hub.connect(websocket)
        try:
            while True:
                try:
                    data = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                    msg = json.loads(data)
                    if msg.get("type") == "ping":
                        await websocket.send_json({"type": "pong", "timestamp": time.time()})
                except asyncio.TimeoutError:
                    await websocket.send_json({"type": "heartbeat", "timestamp": time.time()})
                except json.JSONDecodeError:
                    continue
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning("WebSocket error: %s", e)
        finally:
            hub.disconnect(websocket)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="scanfuse Fusion: TSDF integration and mesh export")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: from service registry)")
    parser.add_argument("--config", type=str, default=None, help="JSON config file (default: $FUSION_CONFIG)")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    parser.add_argument("--log-dir", type=str, default=None, help="Custom log directory")
    parser.add_argument("--no-bus", action="store_true", help="Do not connect to the message bus")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    # FUSION_* overrides may live in the project .env
    load_dotenv(PROJECT_ROOT / ".env")
    setup_logging(server_name="fusion", debug=args.debug, log_dir=args.log_dir)

    try:
        config = load_fusion_config(args.config)
    except ConfigError as e:
        logger.critical("Invalid fusion configuration: %s", e)
        return 2

    app = create_app(config, connect_bus=not args.no_bus)
    port = args.port or ServiceConfig.FUSION_PORT
    logger.info("Starting Fusion on port %d", port)
    uvicorn.run(app, host=args.host, port=port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
