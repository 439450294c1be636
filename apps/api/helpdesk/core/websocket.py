"""
WebSocket connection manager for real-time events.

Manages active WebSocket connections per user and per department room,
allowing server-sent events to reach connected clients instantly. Delivery is
at-most-once: offline users simply miss the live push.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Set
from uuid import UUID

import anyio
import anyio.from_thread
from fastapi import WebSocket

logger = logging.getLogger(__name__)

PUSH_TIMEOUT_SECONDS = 5.0


class ConnectionManager:
    """Manages WebSocket connections per user and department."""

    def __init__(self):
        # user_id -> set of active WebSocket connections
        self._connections: Dict[UUID, Set[WebSocket]] = {}
        # user_id -> department (for department room broadcasts)
        self._user_departments: Dict[UUID, str] = {}
        self._lock = asyncio.Lock()

    async def connect(
        self, websocket: WebSocket, user_id: UUID, department: str | None = None
    ):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)
            if department:
                self._user_departments[user_id] = department

    async def disconnect(self, websocket: WebSocket, user_id: UUID):
        """Remove a WebSocket connection."""
        async with self._lock:
            self._discard(websocket, user_id)

    async def leave_department(self, user_id: UUID) -> None:
        async with self._lock:
            self._user_departments.pop(user_id, None)

    async def send_to_user(self, user_id: UUID, message: dict) -> bool:
        """Send a message to all connections of a user; True if any accepted it."""
        async with self._lock:
            connections = self._connections.get(user_id, set()).copy()

        if not connections:
            return False

        data = json.dumps(message, default=str)
        closed = []
        delivered = False

        for ws in connections:
            try:
                await ws.send_text(data)
                delivered = True
            except Exception:
                # Connection closed or errored
                closed.append(ws)

        if closed:
            async with self._lock:
                for ws in closed:
                    self._discard(ws, user_id)

        return delivered

    async def send_to_department(self, department: str, message: dict) -> int:
        """Send a message to every connected user of a department room."""
        async with self._lock:
            user_ids = self.get_department_user_ids(department)

        delivered = 0
        for user_id in user_ids:
            if await self.send_to_user(user_id, message):
                delivered += 1
        return delivered

    def is_connected(self, user_id: UUID) -> bool:
        return bool(self._connections.get(user_id))

    def get_connected_count(self, user_id: UUID) -> int:
        """Get the number of active connections for a user."""
        return len(self._connections.get(user_id, set()))

    def get_department_user_ids(self, department: str) -> list[UUID]:
        return [uid for uid, dept in self._user_departments.items() if dept == department]

    def _discard(self, websocket: WebSocket, user_id: UUID) -> None:
        connections = self._connections.get(user_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            del self._connections[user_id]
            self._user_departments.pop(user_id, None)


class WebSocketPushChannel:
    """
    Fire-and-forget push capability over a ConnectionManager.

    Callable from sync request handlers (worker threads) as well as from
    scripts without a running loop. Never raises: a failed push is logged
    and reported as not delivered.
    """

    def __init__(self, connection_manager: ConnectionManager):
        self.manager = connection_manager
        # Strong refs so scheduled sends are not collected mid-flight
        self._pending: set[asyncio.Task] = set()

    def try_deliver(self, user_id: UUID, event: str, payload: dict[str, Any]) -> bool:
        message = _envelope(event, payload)
        return bool(
            self._dispatch(
                self.manager.send_to_user,
                user_id,
                message,
                scheduled=self.manager.is_connected(user_id),
                failed=False,
            )
        )

    def try_deliver_to_department(
        self, department: str, event: str, payload: dict[str, Any]
    ) -> int:
        message = _envelope(event, payload)
        return int(
            self._dispatch(
                self.manager.send_to_department,
                department,
                message,
                scheduled=len(self.manager.get_department_user_ids(department)),
                failed=0,
            )
        )

    def _dispatch(self, send, target, message, *, scheduled, failed):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            # Already on the event loop thread: schedule, report current reachability.
            task = loop.create_task(send(target, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return scheduled

        try:
            return _run_blocking(send, target, message)
        except Exception as exc:
            logger.warning("Live push to %s failed: %s", target, exc)
            return failed


def _run_blocking(send, *args):
    """Run ``send(*args)`` on the app loop from a worker thread, or on a new loop."""

    async def _runner():
        with anyio.fail_after(PUSH_TIMEOUT_SECONDS):
            return await send(*args)

    try:
        return anyio.from_thread.run(_runner)
    except RuntimeError:
        # Not an AnyIO worker thread (CLI, scripts, plain tests).
        return anyio.run(_runner)


def _envelope(event: str, payload: dict[str, Any]) -> dict[str, Any]:
    data = dict(payload)
    data.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return {"type": event, "data": data}


# Singleton instances
manager = ConnectionManager()
push_channel = WebSocketPushChannel(manager)
