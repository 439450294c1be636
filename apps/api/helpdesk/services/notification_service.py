"""
Notification Service - persisted in-app notifications with live push.

Rows are written first and committed; only then is the ``notification``
event pushed to connected clients, so a live toast always has a stored
counterpart. Offline users simply find it later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from helpdesk.db.enums import NotificationType
from helpdesk.db.models import Notification
from helpdesk.services.operation_events import EVENT_NOTIFICATION, PushChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationPayload:
    type: NotificationType
    title: str
    message: str | None = None
    sender_id: UUID | None = None
    entity_type: str | None = None
    entity_id: UUID | None = None


def notify_stakeholder(
    db: Session,
    channel: PushChannel,
    user_id: UUID,
    payload: NotificationPayload,
) -> Notification:
    """Persist one notification and push it live."""
    return notify_stakeholders(db, channel, [(user_id, payload)])[0]


def notify_stakeholders(
    db: Session,
    channel: PushChannel,
    items: Iterable[tuple[UUID, NotificationPayload]],
) -> list[Notification]:
    """
    Persist a batch of notifications in one commit, then push each live.

    Returns the stored rows in input order.
    """
    notifications = [
        Notification(
            user_id=user_id,
            type=payload.type.value,
            title=payload.title,
            message=payload.message,
            sender_id=payload.sender_id,
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
        )
        for user_id, payload in items
    ]
    if not notifications:
        return []

    db.add_all(notifications)
    db.commit()

    delivered = 0
    for notification in notifications:
        if channel.try_deliver(notification.user_id, EVENT_NOTIFICATION, _live_payload(notification)):
            delivered += 1

    logger.debug("Stored %d notification(s), %d delivered live", len(notifications), delivered)
    return notifications


def _live_payload(notification: Notification) -> dict:
    return {
        "id": str(notification.id),
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "senderId": str(notification.sender_id) if notification.sender_id else None,
        "entityType": notification.entity_type,
        "entityId": str(notification.entity_id) if notification.entity_id else None,
    }
