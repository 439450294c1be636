"""
WebSocket router for real-time events.

Provides a WebSocket endpoint that:
1. Authenticates users via JWT (query token or session cookie)
2. Joins the user's department room when they are department staff
3. Receives bulk operation events and notifications pushed by services
"""

from uuid import UUID

import anyio.to_thread
import jwt
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from helpdesk.core.deps import COOKIE_NAME
from helpdesk.core.security import decode_session_token
from helpdesk.core.websocket import manager
from helpdesk.db.models import User
from helpdesk.db.session import SessionLocal

router = APIRouter(prefix="/ws", tags=["WebSocket"])


def _load_identity(user_id: UUID, token_version: int | None) -> tuple[bool, str | None]:
    """Return (allowed, department) for an authenticated socket."""
    with SessionLocal() as db:
        user = db.get(User, user_id)
        if not user or not user.is_active or user.token_version != token_version:
            return False, None
        return True, user.department.value if user.department else None


def _subject(token: str | None) -> tuple[UUID, int | None] | None:
    if not token:
        return None
    try:
        claims = decode_session_token(token)
        return UUID(str(claims["sub"])), claims["token_version"]
    except (jwt.InvalidTokenError, ValueError):
        return None


@router.websocket("/notifications")
async def websocket_notifications(
    websocket: WebSocket,
    token: str | None = Query(None),
):
    """
    WebSocket endpoint for real-time events.

    Authenticates via:
    1. JWT token in query parameter (?token=...)
    2. Or session cookie (for browser clients)

    Once connected, the server pushes:
    - bulk operation lifecycle (type: 'bulk:started' / 'bulk:progress' / 'bulk:completed')
    - notifications (type: 'notification')
    - department ticket changes (type: 'ticket:bulk-updated')
    """
    subject = _subject(token)
    if token and subject is None:
        await websocket.close(code=4001, reason="Invalid token")
        return
    if subject is None:
        subject = _subject(websocket.cookies.get(COOKIE_NAME))
    if subject is None:
        await websocket.close(code=4001, reason="Authentication required")
        return

    user_id, token_version = subject
    allowed, department = await anyio.to_thread.run_sync(_load_identity, user_id, token_version)
    if not allowed:
        await websocket.close(code=4001, reason="Session revoked")
        return

    await manager.connect(websocket, user_id, department)

    try:
        # Keep connection alive, handle incoming messages (heartbeat/pings)
        while True:
            try:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
            except WebSocketDisconnect:
                break
    finally:
        await manager.disconnect(websocket, user_id)
