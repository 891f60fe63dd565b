"""WebSocket Endpoints for the captcha broker.

Provides WebSocket connections for:
- Harvest clients submitting CaptchaRequests (/)
- Captcha pages reporting solves back to the broker (/ws/surface/{captcha_id})

Usage (harvest client):
    ws = websocket.create_connection("ws://127.0.0.1:8457/")
    ws.send(json.dumps({"type": "CaptchaRequest", "data": {...}}))
    response = json.loads(ws.recv())  # CaptchaResponse or Error

Usage (captcha page):
    const ws = new WebSocket(`ws://127.0.0.1:8457/ws/surface/${captchaId}`);
    ws.send(JSON.stringify({type: 'CaptchaSubmit', data: {value, createdAt}}));
"""

import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from ..services.broker import CaptchaBroker, WebSocketSurfaceHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

# Close codes for surface sockets
SURFACE_NOT_FOUND = 4404
SURFACE_ALREADY_ATTACHED = 4409


class ConnectionManager:
    """Tracks harvest client connections."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    def __len__(self) -> int:
        return len(self.active_connections)

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"[WS] New connection. Total: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"[WS] Connection closed. Total: {len(self.active_connections)}")


def get_broker(websocket: WebSocket) -> CaptchaBroker:
    return websocket.app.state.broker


def get_connections(websocket: WebSocket) -> ConnectionManager:
    return websocket.app.state.connections


def _client_label(websocket: WebSocket) -> str:
    if websocket.client:
        return f"{websocket.client.host}:{websocket.client.port}"
    return "client"


@router.websocket("/")
async def harvest_websocket(
    websocket: WebSocket,
    broker: Annotated[CaptchaBroker, Depends(get_broker)],
    connections: Annotated[ConnectionManager, Depends(get_connections)],
):
    """WebSocket endpoint for harvest clients.

    Each text frame is handed to this connection's protocol handler. Sessions
    outlive the connection; their responses are dropped once it is gone.
    """
    await connections.connect(websocket)

    async def send(frame: dict[str, Any]) -> None:
        await websocket.send_text(json.dumps(frame))

    handler = broker.channel(send, client=_client_label(websocket))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await handler.handle_frame(raw)

    except WebSocketDisconnect:
        logger.info(f"[WS] Client {handler.client} disconnected")
    except Exception as e:
        logger.error(f"[WS] WebSocket error for {handler.client}: {e}")
    finally:
        handler.close()
        connections.disconnect(websocket)


@router.websocket("/ws/surface/{captcha_id}")
async def surface_websocket(
    websocket: WebSocket,
    captcha_id: str,
    broker: Annotated[CaptchaBroker, Depends(get_broker)],
):
    """WebSocket endpoint for captcha pages.

    The page sends CaptchaSubmit frames. The socket closing before a submit
    means the human closed the page.
    """
    await websocket.accept()

    hub = broker.launcher
    surface = hub.get(captcha_id) if isinstance(hub, WebSocketSurfaceHub) else None
    if surface is None:
        logger.warning(f"[WS] No open surface for {captcha_id}")
        await websocket.close(code=SURFACE_NOT_FOUND)
        return
    if surface.attached:
        logger.warning(f"[WS] Surface for {captcha_id} already has a page")
        await websocket.close(code=SURFACE_ALREADY_ATTACHED)
        return

    surface.attach(websocket)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("text") is not None:
                surface.handle_frame(message["text"])

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.debug(f"[WS] Surface socket for {captcha_id} ended: {e}")
    finally:
        surface.detach(websocket)
