"""Audit logging service - append-only trail of ticket mutations.

Details carry IDs and counts only; never ticket bodies or user PII.
"""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from helpdesk.db.enums import AuditAction
from helpdesk.db.models import AuditLog


def log_event(
    db: Session,
    action: AuditAction,
    actor_user_id: UUID | None = None,
    resource_type: str = "ticket",
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Add an audit entry to the session.

    Not committed here; the entry lands with (or right after) the write it
    describes, in whatever unit of work the caller controls.
    """
    entry = AuditLog(
        actor_user_id=actor_user_id,
        action=action.value,
        resource_type=resource_type,
        details=_jsonable(details) if details else None,
    )
    db.add(entry)
    return entry


def _jsonable(details: dict[str, Any]) -> dict[str, Any]:
    # JSON columns reject UUID/Enum values.
    cleaned: dict[str, Any] = {}
    for key, value in details.items():
        if isinstance(value, UUID):
            cleaned[key] = str(value)
        elif hasattr(value, "value") and isinstance(getattr(value, "value"), str):
            cleaned[key] = value.value
        elif isinstance(value, (list, tuple)):
            cleaned[key] = [str(v) if isinstance(v, UUID) else v for v in value]
        else:
            cleaned[key] = value
    return cleaned
