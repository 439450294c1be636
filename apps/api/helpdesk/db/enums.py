"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    User roles.

    - USER: students/employees who file tickets
    - DEPARTMENT_USER: department staff; heads are flagged with ``is_head``
    - ADMIN / SUPER_ADMIN: user approval and global oversight
    """
    USER = "USER"
    DEPARTMENT_USER = "DEPARTMENT_USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class Department(str, Enum):
    """Departments that own tickets."""
    PLACEMENT = "PLACEMENT"
    OPERATIONS = "OPERATIONS"
    TRAINING = "TRAINING"
    FINANCE = "FINANCE"
    TECHNICAL_SUPPORT = "TECHNICAL_SUPPORT"
    HR = "HR"


class TicketStatus(str, Enum):
    """
    Ticket lifecycle status.

    OPEN → ASSIGNED → IN_PROGRESS ⇄ WAITING_FOR_USER → RESOLVED → CLOSED,
    with REOPENED re-entering the flow from RESOLVED/CLOSED.
    """
    OPEN = "OPEN"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_FOR_USER = "WAITING_FOR_USER"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REOPENED = "REOPENED"


class TicketPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class NotificationType(str, Enum):
    """Types of persisted in-app notifications."""
    TICKET_ASSIGNED = "ticket_assigned"
    TICKET_STATUS_CHANGED = "ticket_status_changed"
    BULK_OPERATION = "bulk_operation"


class AuditAction(str, Enum):
    """Audit trail actions written by the bulk mutation core."""
    TICKETS_BULK_ASSIGN = "tickets.bulk_assign"
    TICKETS_BULK_STATUS = "tickets.bulk_status"
    TICKET_UPDATED = "ticket.updated"


class BulkOperationKind(str, Enum):
    ASSIGN = "assign"
    STATUS_CHANGE = "status-change"
