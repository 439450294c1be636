"""SQLAlchemy ORM models for users, tickets, notifications and the audit trail."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from helpdesk.db.base import Base
from helpdesk.db.enums import Department, Role, TicketPriority, TicketStatus


def _enum_type(enum_cls, *, name: str) -> Enum:
    """Store str-enums as their value strings (portable across Postgres and SQLite)."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


# =============================================================================
# Users
# =============================================================================

class User(Base):
    """
    A platform account.

    Department staff carry a department; heads of a department additionally
    have ``is_head`` set and can run bulk ticket operations for it.
    """

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_department_role", "department", "role"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[Role] = mapped_column(_enum_type(Role, name="user_role"), nullable=False)
    department: Mapped[Department | None] = mapped_column(
        _enum_type(Department, name="department"), nullable=True
    )
    is_head: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    token_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    @property
    def is_department_head(self) -> bool:
        return self.role == Role.DEPARTMENT_USER and self.is_head


# =============================================================================
# Tickets
# =============================================================================

class Ticket(Base):
    """
    A support ticket owned by a department.

    ``version`` is bumped by every write made through the bulk mutation core
    and the optimistic lock, so callers can detect concurrent modification.
    """

    __tablename__ = "tickets"
    __table_args__ = (
        Index("idx_tickets_department_status", "department", "status"),
        Index("idx_tickets_assigned_to", "assigned_to_id"),
        Index("idx_tickets_created_by", "created_by_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subject: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    status: Mapped[TicketStatus] = mapped_column(
        _enum_type(TicketStatus, name="ticket_status"),
        default=TicketStatus.OPEN,
        nullable=False,
    )
    priority: Mapped[TicketPriority] = mapped_column(
        _enum_type(TicketPriority, name="ticket_priority"),
        default=TicketPriority.MEDIUM,
        nullable=False,
    )
    department: Mapped[Department] = mapped_column(
        _enum_type(Department, name="department"), nullable=False
    )

    created_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assigned_to_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_to_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    created_by: Mapped["User | None"] = relationship(foreign_keys=[created_by_id])
    assigned_to: Mapped["User | None"] = relationship(foreign_keys=[assigned_to_id])


# =============================================================================
# Notifications
# =============================================================================

class Notification(Base):
    """
    In-app notification for a stakeholder.

    Persisted first, then pushed live if the user is connected.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notif_user_unread", "user_id", "read_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sender_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # Entity reference (for click-through)
    entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    read_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    user: Mapped["User"] = relationship()


# =============================================================================
# Audit
# =============================================================================

class AuditLog(Base):
    """
    Append-only audit trail of bulk mutations and guarded writes.

    Details carry IDs and counts only.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_actor_created", "actor_user_id", "created_at"),
        Index("idx_audit_action_created", "action", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
