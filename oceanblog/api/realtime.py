from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from oceanblog.api.auth_gate import extract_bearer
from oceanblog.logging import get_logger, set_correlation_id
from oceanblog.service.errors import UnauthorizedError
from oceanblog.service.realtime import RealtimeConnection, post_room
from oceanblog.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

# application-defined close code mirroring HTTP 401
WS_CLOSE_UNAUTHORIZED = 4401
BEARER_SUBPROTOCOL = "bearer"
MAX_POST_ID_LENGTH = 128

_CLOSE_REASONS = {
    "token_missing": "Authentication token required",
    "user_missing": "User not found",
    "user_inactive": "Account is deactivated",
    "token_invalid": "Invalid token",
    "token_expired": "Token expired",
}


def extract_handshake_token(ws: WebSocket) -> Tuple[Optional[str], Optional[str]]:
    """Find the access token offered during the handshake.

    Checked in order: the ``bearer, <token>`` subprotocol pair, an
    ``Authorization: Bearer`` header, then the ``token`` query parameter.
    Returns the token and the subprotocol to echo when accepting.
    """
    offered = list(ws.scope.get("subprotocols") or [])
    if BEARER_SUBPROTOCOL in offered:
        index = offered.index(BEARER_SUBPROTOCOL)
        if index + 1 < len(offered) and offered[index + 1]:
            return offered[index + 1], BEARER_SUBPROTOCOL
    header_token = extract_bearer(ws.headers.get("authorization"))
    if header_token:
        return header_token, None
    query_token = ws.query_params.get("token")
    return (query_token or None), None


def _post_id(data: Any) -> Optional[str]:
    # clients send either the bare id or {"post_id": id}
    if isinstance(data, dict):
        data = data.get("post_id")
    if isinstance(data, int) and not isinstance(data, bool):
        data = str(data)
    if not isinstance(data, str):
        return None
    data = data.strip()
    if not data or len(data) > MAX_POST_ID_LENGTH:
        return None
    return data


async def _handle_event(connection: RealtimeConnection, event: Any, data: Any) -> None:
    hub = get_runtime().realtime
    if event == "join_post":
        post_id = _post_id(data)
        if post_id is None:
            await connection.emit("error", {"message": "post_id is required"})
            return
        room = post_room(post_id)
        hub.join(connection, room)
        logger.debug("realtime_join_post", connection_id=connection.connection_id, post_id=post_id)
        await connection.emit("joined", {"room": room})
    elif event == "leave_post":
        post_id = _post_id(data)
        if post_id is None:
            await connection.emit("error", {"message": "post_id is required"})
            return
        room = post_room(post_id)
        hub.leave(connection, room)
        await connection.emit("left", {"room": room})
    elif event == "new_comment":
        post_id = _post_id(data)
        comment = data.get("comment") if isinstance(data, dict) else None
        if post_id is None or comment is None:
            await connection.emit("error", {"message": "Failed to broadcast comment"})
            return
        delivered = await hub.emit_to_room(
            post_room(post_id),
            "comment_added",
            {
                "comment": comment,
                "post_id": post_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info(
            "realtime_comment_broadcast",
            user_id=connection.user.id,
            post_id=post_id,
            delivered=delivered,
        )
    else:
        await connection.emit("error", {"message": f"Unknown event: {event}"})


@router.websocket("/ws")
async def realtime_socket(ws: WebSocket):
    """Authenticated live channel for post and user notifications."""
    runtime = get_runtime()
    set_correlation_id(ws.headers.get("x-request-id"))
    token, subprotocol = extract_handshake_token(ws)
    await ws.accept(subprotocol=subprotocol)
    try:
        user = runtime.auth.authenticate_access_token(token)
    except UnauthorizedError as exc:
        reason = _CLOSE_REASONS.get(exc.detail.get("reason"), "Authentication failed")
        logger.info("realtime_auth_rejected", reason=reason)
        await ws.close(code=WS_CLOSE_UNAUTHORIZED, reason=reason)
        return

    connection = RealtimeConnection(ws, user)
    runtime.realtime.register(connection)
    try:
        await connection.emit(
            "connected",
            {"user_id": user.id, "rooms": sorted(connection.rooms)},
        )
        while True:
            try:
                frame = await ws.receive_json()
            except (json.JSONDecodeError, KeyError):
                await connection.emit("error", {"message": "Frames must be JSON objects"})
                continue
            if not isinstance(frame, dict):
                await connection.emit("error", {"message": "Frames must be JSON objects"})
                continue
            await _handle_event(connection, frame.get("event"), frame.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        runtime.realtime.unregister(connection)
