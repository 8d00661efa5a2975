"""
WebSocket session handling.

Frames in both directions are JSON objects of the form
``{"event": <name>, "data": {...}}``. The client authenticates with a
``token`` query parameter, an ``Authorization: Bearer`` header, or a first
frame ``{"event": "auth", "token": "..."}`` sent within the handshake window.
Channel membership is derived from the resolved identity; clients cannot
subscribe to anything themselves.
"""

import json
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from refverify.kernel.errors import ErrorKind, Unauthorized
from refverify.kernel.models.base import enum_value
from refverify.logging_config import connection_id_var, get_logger
from refverify.realtime.registry import ConnectionRegistry

logger = get_logger(__name__)

CLOSE_UNAUTHORIZED = 4401


def _header_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    auth = websocket.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


async def _read_frame(websocket: WebSocket) -> Optional[dict]:
    """Next client frame, or None if it is not a JSON object in a text frame."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    text = message.get("text")
    if text is None:
        return None
    try:
        frame = json.loads(text)
    except ValueError:
        return None
    return frame if isinstance(frame, dict) else None


async def _first_frame_token(websocket: WebSocket) -> Optional[str]:
    frame = await _read_frame(websocket)
    if frame and frame.get("event") == "auth":
        return frame.get("token")
    return None


def _error_frame(kind: ErrorKind, message: str) -> dict:
    return {"event": "error", "data": {"code": kind.value, "message": message}}


async def serve(websocket: WebSocket, registry: ConnectionRegistry) -> None:
    """Run one client connection from handshake to disconnect."""
    await websocket.accept()

    header_token = _header_token(websocket)
    credential = header_token if header_token else _first_frame_token(websocket)
    try:
        conn = await registry.connect(websocket, credential)
    except Unauthorized as exc:
        logger.info("Connection refused", extra={"reason": str(exc)})
        await websocket.send_json(_error_frame(ErrorKind.UNAUTHORIZED, str(exc)))
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason=str(exc))
        return
    except WebSocketDisconnect:
        logger.debug("Client left during handshake")
        return

    ctx_token = connection_id_var.set(conn.connection_id)
    try:
        principal = conn.principal
        await websocket.send_json({
            "event": "connected",
            "data": {
                "connection_id": conn.connection_id,
                "user_id": str(principal.user_id),
                "role": enum_value(principal.role),
                "country": principal.country,
                "channels": sorted(conn.channels),
            },
        })

        # Stops once the server side closes, e.g. after a forced disconnect
        while websocket.application_state == WebSocketState.CONNECTED:
            frame = await _read_frame(websocket)
            event = frame.get("event") if frame else None
            if event == "ping":
                await websocket.send_json({"event": "pong"})
            elif event == "disconnect":
                await websocket.close()
                break
            else:
                await websocket.send_json(
                    _error_frame(ErrorKind.VALIDATION_ERROR, f"Unsupported event: {event}")
                )
    except WebSocketDisconnect:
        pass
    finally:
        registry.remove(conn.connection_id)
        connection_id_var.reset(ctx_token)
