"""Tests for persisted notifications with live push."""

import uuid

from sqlalchemy import select

from helpdesk.db.enums import AuditAction, NotificationType
from helpdesk.db.models import AuditLog, Notification
from helpdesk.services import audit_service
from helpdesk.services.notification_service import (
    NotificationPayload,
    notify_stakeholder,
    notify_stakeholders,
)


def test_notification_is_persisted_for_offline_user(db, channel, student):
    ticket_id = uuid.uuid4()

    stored = notify_stakeholder(
        db,
        channel,
        student.id,
        NotificationPayload(
            type=NotificationType.TICKET_ASSIGNED,
            title="Ticket Assigned",
            message="Your ticket has been assigned",
            entity_type="ticket",
            entity_id=ticket_id,
        ),
    )

    row = db.scalars(select(Notification)).one()
    assert row.id == stored.id
    assert row.user_id == student.id
    assert row.type == "ticket_assigned"
    assert row.entity_id == ticket_id
    assert row.read_at is None
    # Push attempted, nobody listening
    assert channel.names(student.id) == ["notification"]


def test_live_payload_for_connected_user(db, channel, student, head):
    channel.online.add(student.id)

    notify_stakeholder(
        db,
        channel,
        student.id,
        NotificationPayload(
            type=NotificationType.TICKET_STATUS_CHANGED,
            title="Ticket Status Updated",
            sender_id=head.id,
        ),
    )

    payload = channel.of("notification")[0].payload
    assert payload["type"] == "ticket_status_changed"
    assert payload["title"] == "Ticket Status Updated"
    assert payload["senderId"] == str(head.id)
    assert payload["entityId"] is None


def test_empty_batch_writes_nothing(db, channel):
    assert notify_stakeholders(db, channel, []) == []
    assert channel.events == []
    assert db.scalars(select(Notification)).all() == []


def test_audit_details_are_json_safe(db, head):
    target = uuid.uuid4()

    audit_service.log_event(
        db,
        AuditAction.TICKETS_BULK_STATUS,
        actor_user_id=head.id,
        details={"ticket_ids": [target], "status": NotificationType.BULK_OPERATION, "modified": 1},
    )
    db.commit()

    entry = db.scalars(select(AuditLog)).one()
    assert entry.details == {
        "ticket_ids": [str(target)],
        "status": "bulk_operation",
        "modified": 1,
    }
