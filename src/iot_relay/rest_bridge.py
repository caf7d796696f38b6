from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, constr

from . import frames
from .exceptions import DeviceNotConnected, InvalidRole
from .transport import WebSocketConnection
from .types import PeerRole

if TYPE_CHECKING:
    import uvicorn

    from .server import RelayServer

logger = logging.getLogger(__name__)


class ControlBody(BaseModel):
    """Request body for a device command."""

    command: constr(min_length=1)  # type: ignore[valid-type]
    # Any JSON value is forwarded to the device unchanged
    value: Any = None


def _payload(message: dict[str, Any]) -> str | bytes:
    text = message.get("text")
    if text is not None:
        return text
    return message.get("bytes") or b""


def create_app(server: RelayServer) -> FastAPI:
    """Create the FastAPI application serving the HTTP API and WebSocket relay."""
    app = FastAPI(title="IoT Relay Server", version=server.version)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(server.config.cors_allow_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    gateway = server.gateway
    relay = server.relay

    @app.exception_handler(DeviceNotConnected)
    async def device_not_connected(
        request: Request, exc: DeviceNotConnected
    ) -> JSONResponse:
        return JSONResponse(
            status_code=404, content={"success": False, "error": str(exc)}
        )

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return gateway.health()

    @app.get("/api/devices")
    def list_devices() -> list[dict[str, Any]]:
        return gateway.list_devices()

    @app.get("/api/sensors")
    def sensors() -> dict[str, Any]:
        return gateway.current_state()

    @app.post("/api/devices/{device_id}/control")
    def control(device_id: str, body: ControlBody) -> dict[str, Any]:
        result = gateway.issue_command(device_id, body.command, body.value)
        return result.to_dict()

    @app.get("/api/ping")
    def ping() -> dict[str, Any]:
        return gateway.ping()

    async def relay_socket(websocket: WebSocket) -> None:
        role = websocket.query_params.get("type")
        device_id = websocket.query_params.get("deviceId")
        conn = WebSocketConnection(
            websocket,
            asyncio.get_running_loop(),
            maxsize=server.config.outbox_maxsize,
            label=device_id or role or "unknown",
            on_sent=relay.record_frame_sent,
            on_dropped=relay.record_frame_dropped,
        )
        await websocket.accept()

        try:
            peer = relay.classify(role, device_id)
        except InvalidRole as exc:
            logger.warning(f"Rejecting connection: {exc}")
            await conn.close(
                code=frames.POLICY_VIOLATION, reason=frames.INVALID_CLIENT_TYPE_REASON
            )
            return

        conn.start()
        if peer is PeerRole.DEVICE:
            await _serve_device(device_id, websocket, conn)
        else:
            await _serve_dashboard(websocket, conn)

    async def _serve_device(
        device_id: str, websocket: WebSocket, conn: WebSocketConnection
    ) -> None:
        relay.device_connected(device_id, conn)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                relay.device_frame(device_id, _payload(message))
        except WebSocketDisconnect:
            pass
        finally:
            conn.mark_closed()
            relay.device_disconnected(device_id, conn)
            await conn.aclose()

    async def _serve_dashboard(websocket: WebSocket, conn: WebSocketConnection) -> None:
        client_id = relay.dashboard_connected(conn)
        conn.label = client_id
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                relay.dashboard_frame(client_id, _payload(message))
        except WebSocketDisconnect:
            pass
        finally:
            conn.mark_closed()
            relay.dashboard_disconnected(client_id)
            await conn.aclose()

    app.add_api_websocket_route("/", relay_socket)
    app.add_api_websocket_route("/ws", relay_socket)

    return app


def run_uvicorn_in_thread(
    app: FastAPI, host: str = "0.0.0.0", port: int = 3000
) -> tuple[threading.Thread, "uvicorn.Server"]:
    """Spawn a Uvicorn server for the given FastAPI app in a background thread."""
    import uvicorn

    config = uvicorn.Config(
        app=app, host=host, port=port, log_level="warning", lifespan="off"
    )
    server = uvicorn.Server(config=config)
    thread = threading.Thread(target=server.run, name="UvicornThread", daemon=True)
    thread.start()
    return thread, server
