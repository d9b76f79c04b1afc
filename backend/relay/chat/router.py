"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws: Real-time relay
    - GET /presence: Who is online
    - GET /history/global: Paginated global history
    - GET /rooms/{room}/history: Paginated room history

Every WebSocket frame is a JSON envelope:
    - inbound:  {"event": "<name>", "data": {...}, "ack": <optional id>}
    - outbound: {"event": "<name>", "data": ...}
    - replies:  {"event": "ack", "ack": <id from the request>, "data": {...}}

Protocol Events (inbound):
    - join: Announce a display name
    - message:send / room:message:send / dm:send: Send a message (ack optional)
    - room:join / room:leave: Enter or leave a room
    - typing / message:read / message:react: Ephemeral signals
    - history:fetch: Page backward through a scope's history (reply via ack)
"""
import functools
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .history import HistoryStore, ScopeKey, global_key, room_key
from .schemas import Envelope

logger = logging.getLogger(__name__)

router = APIRouter()


def _origin_allowed(origin: Optional[str], allowed_origins: List[str]) -> bool:
    """Browsers always send Origin; non-browser clients may omit it."""
    if "*" in allowed_origins or origin is None:
        return True
    return origin in allowed_origins


def _page_response(
    history: HistoryStore,
    scope_key: ScopeKey,
    before: Optional[datetime],
    limit: int,
) -> JSONResponse:
    messages, has_more = history.page_with_more(scope_key, before, limit)

    return JSONResponse({
        "items": [msg.to_wire() for msg in messages],
        "hasMore": has_more
    })


@router.get("/presence")
async def get_presence(request: Request) -> JSONResponse:
    """Get the current presence list.

    Returns:
        JSON with a users array of {id, name}.
    """
    registry = request.app.state.registry
    return JSONResponse({"users": [p.model_dump() for p in registry.list_presence()]})


@router.get("/history/global")
async def get_global_history(
    request: Request,
    before: Optional[datetime] = Query(None, description="Cursor: only messages older than this"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
) -> JSONResponse:
    """Get paginated global history.

    Example:
        GET /history/global?limit=50
        GET /history/global?before=2026-10-19T12:00:00Z&limit=50
    """
    state = request.app.state
    return _page_response(
        state.history, global_key(), before, limit or state.config.chat.default_page_size
    )


@router.get("/rooms/{room}/history")
async def get_room_history(
    request: Request,
    room: str,
    before: Optional[datetime] = Query(None, description="Cursor: only messages older than this"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
) -> JSONResponse:
    """Get paginated history for a room.

    Args:
        room: The room name.
        before: Cursor. Returns messages older than this.
                If not provided, returns the most recent messages.
        limit: Maximum number of messages (clamped to the history capacity).

    Returns:
        JSON with items array and hasMore boolean.
    """
    state = request.app.state
    return _page_response(
        state.history, room_key(room.strip()), before,
        limit or state.config.chat.default_page_size
    )


@router.websocket("/ws")
async def websocket_relay_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for the relay.

    Protocol Flow:
        1. Client connects → server assigns a connection id
        2. Client sends: {event: "join", data: {displayName}}
           → all clients receive: {event: "presence:list", data: [{id, name}]}
           → joining client receives: {event: "server:welcome", data: {message, id}}
        3. Client sends messages and signals; acks arrive as {event: "ack", ack, data}
        4. On disconnect → all clients receive the updated presence:list
    """
    state = websocket.app.state
    origin = websocket.headers.get("origin")
    if not _origin_allowed(origin, state.config.server.allowed_origins):
        logger.warning(f"[WS] Rejected connection from origin {origin}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    connections = state.connections
    dispatcher = state.dispatcher

    connection_id = await connections.connect(websocket)
    dispatcher.connect(connection_id)
    logger.info(f"[WS] Connection {connection_id} from origin {origin}")

    reason = None
    try:
        # Main message loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))

            raw = message.get("text")
            if raw is None:
                logger.debug(f"[WS] Binary frame from {connection_id} ignored")
                continue
            try:
                envelope = Envelope.model_validate_json(raw)
            except ValidationError:
                logger.debug(f"[WS] Malformed frame from {connection_id} ignored")
                continue

            logger.debug("[WS] %s received: event=%s", connection_id, envelope.event)
            ack = None
            if envelope.ack is not None:
                ack = functools.partial(connections.send_ack, connection_id, envelope.ack)

            await dispatcher.handle(connection_id, envelope.event, envelope.data, ack)

    except WebSocketDisconnect as exc:
        reason = exc.code
    finally:
        connections.disconnect(connection_id)
        await dispatcher.disconnect(connection_id, reason)
