"""WebSocket endpoint for real-time messaging.

This module provides:
    - WebSocket /ws/messages: authenticated event socket

Protocol Flow:
    1. Client connects with ``?token=<jwt>`` (or an ``Authorization: Bearer``
       header). An invalid token closes the socket with 1008 before accept.
    2. Server sends: {type: "connected", userId, connectionId}
    3. Server replays missed messages as {type: "message:receive",
       message, replayed: true} followed by {type: "user:sync_complete", count}.
       If the store fails here the client gets {type: "error", event: "connect"}
       instead and the socket stays open for user:sync_missed_messages.
    4. Client sends events such as {type: "message:send", recipientId, content}
    5. On disconnect the connection is deregistered; peers receive
       {type: "user:offline"} when it was the user's last one.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from messaging.errors import Unauthenticated

from .connections import Connection
from .events import CONNECTED

logger = logging.getLogger(__name__)

router = APIRouter()

POLICY_VIOLATION = 1008


@router.websocket("/ws/messages")
async def websocket_messages_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token (JWT)"),
) -> None:
    """Authenticated messaging socket; one per client device."""
    hub = websocket.app.state.hub

    try:
        if token:
            user_id = hub.authenticator.authenticate(token)
        else:
            user_id = hub.authenticator.authenticate_header(
                websocket.headers.get("authorization")
            )
    except Unauthenticated as exc:
        logger.warning("[WS] Rejected handshake: %s", exc.message)
        await websocket.close(code=POLICY_VIOLATION, reason=exc.message)
        return

    await websocket.accept()
    connection = Connection(user_id=user_id, socket=websocket)
    logger.info("[WS] %s connected (connection %s)", user_id, connection.handle)

    try:
        await websocket.send_json({
            "type": CONNECTED,
            "userId": user_id,
            "connectionId": connection.handle,
        })
        await hub.connect(connection)

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await hub.handle_event(connection, None)
                continue
            logger.debug("[WS] %s received: type=%s", user_id,
                         data.get("type", "?") if isinstance(data, dict) else "?")
            await hub.handle_event(connection, data)

    except WebSocketDisconnect:
        logger.info("[WS] %s disconnected (connection %s)", user_id, connection.handle)
    except Exception:
        logger.exception("[WS] Connection %s for %s failed", connection.handle, user_id)
    finally:
        await hub.disconnect(connection)
