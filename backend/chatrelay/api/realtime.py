"""WebSocket endpoint for visitors and administrators.

Frames are JSON objects:
    client -> server: {"event": "user_message", "data": {...}, "ack": 7}
    server -> client: {"event": "message", "data": {...}}
    acknowledgment:   {"event": "ack", "ack": 7, "data": {...}}
"""
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from chatrelay.middleware.logging import get_logger
from chatrelay.schemas.realtime import Envelope

router = APIRouter()
logger = get_logger()


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the hub's connection interface."""

    def __init__(self, websocket: WebSocket):
        self.id = str(uuid.uuid4())
        self.websocket = websocket

    async def send(self, event: str, data: Any) -> None:
        await self.websocket.send_json({"event": event, "data": data})


@router.websocket("/ws")
async def relay_websocket(websocket: WebSocket):
    """Bidirectional event channel. One inbound event is handled at a time."""
    hub = websocket.app.state.hub
    await websocket.accept()

    connection = WebSocketConnection(websocket)
    client_ip = websocket.client.host if websocket.client else None
    user_agent = websocket.headers.get("user-agent")

    structlog.contextvars.bind_contextvars(connection_id=connection.id)
    hub.connect(connection, client_ip=client_ip, user_agent=user_agent)
    logger.info("client_connected", client_ip=client_ip)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                logger.warning("non_text_frame_dropped")
                continue
            try:
                envelope = Envelope.model_validate_json(raw)
            except ValidationError:
                logger.warning("malformed_frame", frame_length=len(raw))
                continue

            ack = await hub.handle(connection, envelope.event, envelope.data)
            if envelope.ack is not None and ack is not None:
                await websocket.send_json({"event": "ack", "ack": envelope.ack, "data": ack})
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection.id)
        logger.info("client_disconnected")
        structlog.contextvars.unbind_contextvars("connection_id")
