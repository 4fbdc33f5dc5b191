# ⚠️ DISCLAIMER
# This software communicates directly with live vehicle systems.
# You use this software entirely at your own risk.
#
# The developers, contributors, and any associated parties accept no liability for:
# - Damage to vehicles, ECUs, batteries, or electronics
# - Data loss, unintended resets, or corrupted configurations
# - Physical injury, legal consequences, or financial loss
#
# This tool is intended only for qualified professionals who
# understand the risks of direct OBD/CAN access.

"""
Bridge API Server

HTTP/WebSocket wrapper around one BridgeService.

Features:
- REST endpoints for every service command
- Connection/task status and process health
- WebSocket stream of bridge events
- CORS support for web applications
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import psutil
import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .. import config
from ..bridge_service import BridgeService
from ..communication_interface import CommunicationError
from ..events import BridgeEvent, event_message

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# Response Models
class APIResponse(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class BridgeStatus(BaseModel):
    state: str
    device: Optional[str] = None
    address: Optional[str] = None
    task: str
    pending_task: str
    task_count: int
    task_elapsed_ms: int
    log_write_state: bool
    write_queue: int
    read_queue: int
    write_in_flight: bool


@dataclass
class _Client:
    websocket: WebSocket
    loop: asyncio.AbstractEventLoop
    queue: "asyncio.Queue[Dict[str, Any]]"


class WebSocketManager:
    """Manages WebSocket clients and fans events out to them"""

    def __init__(self, max_queue: int = 1000):
        self.clients: Dict[int, _Client] = {}
        self.max_queue = max_queue
        self.lock = threading.RLock()

    async def connect(self, websocket: WebSocket) -> _Client:
        await websocket.accept()
        client = _Client(websocket, asyncio.get_running_loop(), asyncio.Queue(maxsize=self.max_queue))
        with self.lock:
            self.clients[id(websocket)] = client
        logger.info(f"WebSocket client connected ({len(self.clients)} total)")
        return client

    def disconnect(self, websocket: WebSocket):
        with self.lock:
            self.clients.pop(id(websocket), None)
        logger.info("WebSocket client disconnected")

    @property
    def count(self) -> int:
        with self.lock:
            return len(self.clients)

    def broadcast_threadsafe(self, message: Dict[str, Any]):
        """Queue message for every client; callable from any thread"""
        with self.lock:
            clients = list(self.clients.values())

        for client in clients:
            try:
                client.loop.call_soon_threadsafe(self._enqueue, client, message)
            except RuntimeError:
                # event loop already closed
                self.disconnect(client.websocket)

    @staticmethod
    def _enqueue(client: _Client, message: Dict[str, Any]):
        try:
            client.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("WebSocket client too slow, dropping event")


class BridgeAPIServer:
    """Main API server class"""

    def __init__(self, service: BridgeService):
        self.service = service
        self.websocket_manager = WebSocketManager()
        self.started = time.time()
        self.app = FastAPI(
            title="bridgecore API",
            description="REST/WebSocket control of a BLE_TO_ISOTP bridge",
            version=API_VERSION,
        )

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._unsubscribe = self.service.bus.subscribe(self._handle_event)
        self._setup_routes()

    def close(self):
        self._unsubscribe()

    def _handle_event(self, event: BridgeEvent):
        if self.websocket_manager.count:
            self.websocket_manager.broadcast_threadsafe(event_message(event))

    async def _run_command(self, command: str) -> APIResponse:
        try:
            await asyncio.to_thread(self.service.execute, command)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except CommunicationError as e:
            logger.error(f"Command {command} failed: {e}")
            return APIResponse(success=False, error=str(e))
        return APIResponse(success=True, data={"command": command, "status": self.service.status()})

    def _setup_routes(self):
        """Setup API routes"""

        @self.app.get("/", response_model=APIResponse)
        async def root():
            return APIResponse(
                success=True,
                data={
                    "name": "bridgecore API",
                    "version": API_VERSION,
                    "status": "running",
                    "endpoints": {
                        "status": "/api/status",
                        "commands": "/api/commands/{command}",
                        "websocket": "/ws/events",
                        "docs": "/docs",
                    },
                },
            )

        @self.app.get("/api/health", response_model=APIResponse)
        async def health_check():
            process = psutil.Process()
            memory = process.memory_info()
            return APIResponse(
                success=True,
                data={
                    "status": "healthy",
                    "uptime": round(time.time() - self.started, 3),
                    "cpu_percent": process.cpu_percent(interval=None),
                    "memory_rss": memory.rss,
                    "threads": process.num_threads(),
                    "websocket_connections": self.websocket_manager.count,
                },
            )

        @self.app.get("/api/status", response_model=APIResponse)
        async def get_status():
            return APIResponse(success=True, data=BridgeStatus(**self.service.status()).model_dump())

        @self.app.get("/api/commands", response_model=APIResponse)
        async def list_commands():
            return APIResponse(success=True, data=list(BridgeService.COMMANDS))

        @self.app.post("/api/commands/{command}", response_model=APIResponse)
        async def run_command(command: str):
            return await self._run_command(command)

        @self.app.post("/api/connect", response_model=APIResponse)
        async def connect():
            return await self._run_command("connect")

        @self.app.post("/api/disconnect", response_model=APIResponse)
        async def disconnect():
            return await self._run_command("disconnect")

        @self.app.websocket("/ws/events")
        async def events_endpoint(websocket: WebSocket):
            client = await self.websocket_manager.connect(websocket)
            sender = asyncio.create_task(self._pump_events(client))

            try:
                while True:
                    message = await websocket.receive_json()

                    if message.get("type") == "ping":
                        await websocket.send_json({"type": "pong", "timestamp": datetime.now().isoformat()})
                    elif message.get("type") == "status":
                        await websocket.send_json({"type": "status", **self.service.status()})

            except WebSocketDisconnect:
                pass
            except Exception as e:
                logger.error(f"WebSocket error: {e}")
            finally:
                sender.cancel()
                self.websocket_manager.disconnect(websocket)

    async def _pump_events(self, client: _Client):
        while True:
            message = await client.queue.get()
            try:
                await client.websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to send WebSocket message: {e}")
                return


def create_api_server(service: BridgeService) -> BridgeAPIServer:
    """Create and configure API server"""
    return BridgeAPIServer(service)


def run_api_server(api_server: BridgeAPIServer, host: str = config.API_HOST,
                   port: int = config.API_PORT):
    logger.info(f"Starting bridgecore API server on {host}:{port}")
    uvicorn.run(api_server.app, host=host, port=port, log_level="info")
