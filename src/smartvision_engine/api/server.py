"""
FastAPI application serving the live detection feed over websockets.
"""

from __future__ import annotations

import contextlib
import logging
import socket
from typing import Callable, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from ..config import LiveViewerConfig
from .state import LiveHub, Subscriber

LOGGER = logging.getLogger(__name__)


class ListenerStartupError(RuntimeError):
    """Raised when the live viewer listener cannot bind its socket."""


def create_app(hub: LiveHub, active_cameras: Optional[Callable[[], int]] = None) -> FastAPI:
    app = FastAPI(title="SmartVision live detections")
    router = APIRouter()

    @router.get("/healthz")
    async def healthz() -> JSONResponse:
        running = active_cameras() if active_cameras is not None else 0
        status_code = 200 if running > 0 else 503
        return JSONResponse(
            status_code=status_code,
            content={
                "status": "ok" if running > 0 else "no active cameras",
                "active_cameras": running,
                "viewers": len(hub),
            },
        )

    # Legacy viewers connect to the bare host:port.
    @router.websocket("/")
    @router.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        subscriber = Subscriber(handle=websocket)
        await hub.register(subscriber)
        try:
            # Inbound viewer messages carry no commands yet; read and discard.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            LOGGER.debug("Websocket client disconnected")
        except Exception:  # noqa: BLE001
            LOGGER.debug("Websocket receive loop ended", exc_info=True)
        finally:
            await hub.unregister(subscriber)

    app.include_router(router)
    return app


class _EmbeddedServer(uvicorn.Server):
    """Uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class LiveViewerServer:
    """Owns the listening socket and the uvicorn server for the live feed."""

    def __init__(self, config: LiveViewerConfig, app: FastAPI, log_level: str = "warning"):
        self.config = config
        self.app = app
        self.log_level = log_level.lower()
        self._socket: Optional[socket.socket] = None
        self._server: Optional[_EmbeddedServer] = None

    @property
    def port(self) -> int:
        if self._socket is None:
            return self.config.port
        return self._socket.getsockname()[1]

    def bind(self) -> None:
        """Bind the listen socket now so failures surface at startup."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.config.host, self.config.port))
        except OSError as exc:
            sock.close()
            raise ListenerStartupError(
                f"Cannot bind live viewer listener on {self.config.host}:{self.config.port}: {exc}"
            ) from exc
        sock.listen(128)
        sock.setblocking(False)
        self._socket = sock
        LOGGER.info("Live viewer websocket listening on ws://%s:%d/ws", self.config.host, self.port)

    async def serve(self) -> None:
        if self._socket is None:
            self.bind()
        config = uvicorn.Config(self.app, log_level=self.log_level, lifespan="off")
        self._server = _EmbeddedServer(config)
        await self._server.serve(sockets=[self._socket])

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    def close(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None
