"""Bulk operation lifecycle events pushed to the acting user.

Events (WebSocket ``type`` field):
- ``bulk:started``    operation accepted, before any write
- ``bulk:progress``   processed/total so far
- ``bulk:completed``  final tally, success or failure

Completion is also surfaced as a live-only ``notification`` so clients that
only render toasts still see it. Nothing here is persisted, and delivery is
at-most-once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

from helpdesk.db.enums import BulkOperationKind

logger = logging.getLogger(__name__)

EVENT_STARTED = "bulk:started"
EVENT_PROGRESS = "bulk:progress"
EVENT_COMPLETED = "bulk:completed"
EVENT_NOTIFICATION = "notification"

COMPLETED_TITLE = "Bulk Operation Complete"


class PushChannel(Protocol):
    """Live push capability. Implementations never raise and never block on absent users."""

    def try_deliver(self, user_id: UUID, event: str, payload: dict[str, Any]) -> bool: ...

    def try_deliver_to_department(
        self, department: str, event: str, payload: dict[str, Any]
    ) -> int: ...


@dataclass(frozen=True)
class OperationSummary:
    success: bool
    processed: int
    failed: int
    message: str


def operation_started(
    channel: PushChannel,
    actor_id: UUID,
    operation_id: str,
    kind: BulkOperationKind,
    requested_count: int,
) -> bool:
    return channel.try_deliver(
        actor_id,
        EVENT_STARTED,
        {
            "operationId": operation_id,
            "operationType": kind.value,
            "totalItems": requested_count,
        },
    )


def operation_progress(
    channel: PushChannel,
    actor_id: UUID,
    operation_id: str,
    processed: int,
    total: int,
) -> bool:
    percentage = round(processed / total * 100) if total else 100
    return channel.try_deliver(
        actor_id,
        EVENT_PROGRESS,
        {
            "operationId": operation_id,
            "processed": processed,
            "total": total,
            "percentage": percentage,
        },
    )


def operation_completed(
    channel: PushChannel,
    actor_id: UUID,
    operation_id: str,
    summary: OperationSummary,
) -> bool:
    """Push the final tally plus a toast-style notification. Returns True if the tally was delivered."""
    delivered = channel.try_deliver(
        actor_id,
        EVENT_COMPLETED,
        {
            "operationId": operation_id,
            "success": summary.success,
            "processed": summary.processed,
            "failed": summary.failed,
            "message": summary.message,
        },
    )
    channel.try_deliver(
        actor_id,
        EVENT_NOTIFICATION,
        {
            "type": "success" if summary.success else "error",
            "title": COMPLETED_TITLE,
            "message": summary.message,
            "operationId": operation_id,
        },
    )
    if not delivered:
        logger.debug("Actor %s offline for completion of operation %s", actor_id, operation_id)
    return delivered
