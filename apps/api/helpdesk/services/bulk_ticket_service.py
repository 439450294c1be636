"""Bulk ticket mutations - department-wide assign and status change.

Both operations share one shape:
1. Validate preconditions (no writes), including that at least one
   requested ticket is in scope
2. Emit ``bulk:started`` to the acting head
3. Run the set-based write plan and its audit entry through
   ``TransactionExecutor.execute`` (atomic when the deployment supports it,
   best-effort otherwise)
4. Notify stakeholders, push to the department room
5. Emit ``bulk:completed``, also when anything above raised

Counts and the affected set come from ``UPDATE ... RETURNING``, so
``processed`` is what was actually written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Iterable
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from helpdesk.core.structured_logging import build_log_context
from helpdesk.db.enums import (
    AuditAction,
    BulkOperationKind,
    Department,
    NotificationType,
    Role,
    TicketStatus,
)
from helpdesk.db.models import Ticket, User
from helpdesk.schemas.auth import UserSession
from helpdesk.services import audit_service, operation_events
from helpdesk.services.notification_service import NotificationPayload, notify_stakeholders
from helpdesk.services.operation_events import OperationSummary, PushChannel
from helpdesk.services.transaction_service import (
    ExecutionMode,
    TransactionExecutor,
    execution_mode_of,
)

logger = logging.getLogger(__name__)

EVENT_DEPARTMENT_TICKETS_UPDATED = "ticket:bulk-updated"


class BulkOperationError(Exception):
    """Base class for bulk operation precondition failures."""


class NotFoundError(BulkOperationError):
    pass


class ForbiddenError(BulkOperationError):
    pass


@dataclass(frozen=True)
class AffectedTicket:
    id: UUID
    created_by_id: UUID | None
    subject: str


@dataclass(frozen=True)
class WriteResult:
    processed: int
    affected: list[AffectedTicket]


@dataclass
class BulkOperationResult:
    operation_id: str
    kind: BulkOperationKind
    requested: int
    processed: int
    execution_mode: ExecutionMode
    message: str
    assigned_to_id: UUID | None = None
    assigned_to_name: str | None = None
    status: TicketStatus | None = None
    affected_ticket_ids: list[UUID] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return max(self.requested - self.processed, 0)

    def summary(self) -> OperationSummary:
        return OperationSummary(
            success=True,
            processed=self.processed,
            failed=self.failed,
            message=self.message,
        )


def dedupe_ids(ticket_ids: Iterable[UUID]) -> list[UUID]:
    """Collapse duplicate ids, keeping first-seen order."""
    return list(dict.fromkeys(ticket_ids))


# =============================================================================
# Bulk assign
# =============================================================================

def bulk_assign(
    db: Session,
    executor: TransactionExecutor,
    channel: PushChannel,
    actor: UserSession,
    ticket_ids: Iterable[UUID],
    assignee_id: UUID,
) -> BulkOperationResult:
    """
    Assign tickets of the actor's department to one staff member.

    OPEN tickets move to ASSIGNED; tickets already in flight keep their
    status and only change hands.

    Raises:
        ForbiddenError: actor has no department, assignee is outside it,
            not department staff, or is a department head
        NotFoundError: assignee does not exist, or none of the tickets
            belong to the actor's department
    """
    operation_id = uuid4().hex
    department = _require_department(actor)
    ids = dedupe_ids(ticket_ids)

    assignee = db.get(User, assignee_id)
    if assignee is None:
        raise NotFoundError("Assignee not found")
    if assignee.role != Role.DEPARTMENT_USER or assignee.department != department:
        raise ForbiddenError("Can only assign to team members in your department")
    if assignee.is_head:
        raise ForbiddenError("Cannot assign tickets to a department head")
    _require_matches(db, ids, department)

    assignee_name = assignee.name
    work = partial(
        _assign_work,
        ids=ids,
        department=department,
        assignee_id=assignee.id,
        assignee_name=assignee_name,
        actor_id=actor.user_id,
        operation_id=operation_id,
    )

    def finish(write: WriteResult, mode: ExecutionMode) -> BulkOperationResult:
        stakeholders = [
            (
                ticket.created_by_id,
                NotificationPayload(
                    type=NotificationType.TICKET_ASSIGNED,
                    title="Ticket Assigned",
                    message=f'Your ticket "{ticket.subject}" has been assigned to {assignee_name}',
                    sender_id=actor.user_id,
                    entity_type="ticket",
                    entity_id=ticket.id,
                ),
            )
            for ticket in write.affected
            if ticket.created_by_id is not None and ticket.created_by_id != assignee.id
        ]
        if write.affected:
            stakeholders.append(
                (
                    assignee.id,
                    NotificationPayload(
                        type=NotificationType.BULK_OPERATION,
                        title="Tickets Assigned",
                        message=f"{actor.name} assigned {len(write.affected)} ticket(s) to you",
                        sender_id=actor.user_id,
                        entity_type="ticket",
                    ),
                )
            )
        notify_stakeholders(db, channel, stakeholders)

        return BulkOperationResult(
            operation_id=operation_id,
            kind=BulkOperationKind.ASSIGN,
            requested=len(ids),
            processed=write.processed,
            execution_mode=mode,
            message=f"Successfully assigned {write.processed} tickets to {assignee_name}",
            assigned_to_id=assignee.id,
            assigned_to_name=assignee_name,
            affected_ticket_ids=[ticket.id for ticket in write.affected],
        )

    return _run_operation(
        db, executor, channel, actor, operation_id, BulkOperationKind.ASSIGN, ids, work, finish
    )


def _assign_work(
    session: Session,
    *,
    ids: list[UUID],
    department: Department,
    assignee_id: UUID,
    assignee_name: str,
    actor_id: UUID,
    operation_id: str,
) -> WriteResult:
    scope = (Ticket.id.in_(ids), Ticket.department == department)
    values = {
        "assigned_to_id": assignee_id,
        "assigned_to_name": assignee_name,
        "version": Ticket.version + 1,
        "updated_at": func.now(),
    }

    # Reassign in-flight tickets first; the OPEN branch below then cannot
    # touch the same rows twice.
    reassigned = session.execute(
        update(Ticket)
        .where(*scope, Ticket.status != TicketStatus.OPEN)
        .values(**values)
        .returning(*_AFFECTED_COLUMNS)
        .execution_options(synchronize_session=False)
    ).all()
    assigned = session.execute(
        update(Ticket)
        .where(*scope, Ticket.status == TicketStatus.OPEN)
        .values(status=TicketStatus.ASSIGNED, **values)
        .returning(*_AFFECTED_COLUMNS)
        .execution_options(synchronize_session=False)
    ).all()

    write = WriteResult(
        processed=len(reassigned) + len(assigned),
        affected=[AffectedTicket(*row) for row in (*reassigned, *assigned)],
    )
    _record_audit(
        session,
        AuditAction.TICKETS_BULK_ASSIGN,
        actor_id,
        operation_id,
        requested=len(ids),
        processed=write.processed,
        assigned_to=assignee_id,
    )
    return write


# =============================================================================
# Bulk status change
# =============================================================================

def bulk_update_status(
    db: Session,
    executor: TransactionExecutor,
    channel: PushChannel,
    actor: UserSession,
    ticket_ids: Iterable[UUID],
    new_status: TicketStatus,
) -> BulkOperationResult:
    """
    Move tickets of the actor's department to ``new_status``.

    CLOSED tickets are never touched. Moving to RESOLVED stamps
    ``resolved_at`` in the same write.

    Raises:
        ForbiddenError: actor has no department
        NotFoundError: no requested ticket is in the actor's department and
            still open for changes
    """
    operation_id = uuid4().hex
    department = _require_department(actor)
    ids = dedupe_ids(ticket_ids)
    new_status = TicketStatus(new_status)
    _require_matches(db, ids, department, Ticket.status != TicketStatus.CLOSED)

    work = partial(
        _status_work,
        ids=ids,
        department=department,
        new_status=new_status,
        actor_id=actor.user_id,
        operation_id=operation_id,
    )

    def finish(write: WriteResult, mode: ExecutionMode) -> BulkOperationResult:
        stakeholders = [
            (
                ticket.created_by_id,
                NotificationPayload(
                    type=NotificationType.TICKET_STATUS_CHANGED,
                    title="Ticket Status Updated",
                    message=f'Your ticket "{ticket.subject}" is now {new_status.value}',
                    sender_id=actor.user_id,
                    entity_type="ticket",
                    entity_id=ticket.id,
                ),
            )
            for ticket in write.affected
            if ticket.created_by_id is not None
        ]
        notify_stakeholders(db, channel, stakeholders)

        return BulkOperationResult(
            operation_id=operation_id,
            kind=BulkOperationKind.STATUS_CHANGE,
            requested=len(ids),
            processed=write.processed,
            execution_mode=mode,
            message=f"Successfully updated {write.processed} tickets to {new_status.value}",
            status=new_status,
            affected_ticket_ids=[ticket.id for ticket in write.affected],
        )

    return _run_operation(
        db, executor, channel, actor, operation_id, BulkOperationKind.STATUS_CHANGE, ids, work, finish
    )


def _status_work(
    session: Session,
    *,
    ids: list[UUID],
    department: Department,
    new_status: TicketStatus,
    actor_id: UUID,
    operation_id: str,
) -> WriteResult:
    values = {
        "status": new_status,
        "version": Ticket.version + 1,
        "updated_at": func.now(),
    }
    if new_status == TicketStatus.RESOLVED:
        values["resolved_at"] = func.now()

    # RETURNING reports the rows the UPDATE matched, so a ticket closed
    # concurrently is neither counted nor notified.
    rows = session.execute(
        update(Ticket)
        .where(
            Ticket.id.in_(ids),
            Ticket.department == department,
            Ticket.status != TicketStatus.CLOSED,
        )
        .values(**values)
        .returning(*_AFFECTED_COLUMNS)
        .execution_options(synchronize_session=False)
    ).all()

    write = WriteResult(processed=len(rows), affected=[AffectedTicket(*row) for row in rows])
    _record_audit(
        session,
        AuditAction.TICKETS_BULK_STATUS,
        actor_id,
        operation_id,
        requested=len(ids),
        processed=write.processed,
        status=new_status,
    )
    return write


# =============================================================================
# Shared lifecycle
# =============================================================================

_AFFECTED_COLUMNS = (Ticket.id, Ticket.created_by_id, Ticket.subject)


def _require_department(actor: UserSession) -> Department:
    if actor.department is None:
        raise ForbiddenError("You must belong to a department to manage tickets")
    return actor.department


def _require_matches(db: Session, ids: list[UUID], department: Department, *criteria) -> None:
    matched = db.scalar(
        select(func.count())
        .select_from(Ticket)
        .where(Ticket.id.in_(ids), Ticket.department == department, *criteria)
    )
    if not matched:
        raise NotFoundError("No valid tickets found")


def _record_audit(
    session: Session,
    action: AuditAction,
    actor_id: UUID,
    operation_id: str,
    *,
    requested: int,
    processed: int,
    **details,
) -> None:
    """Audit entry written in the same unit of work as the ticket changes."""
    audit_service.log_event(
        session,
        action,
        actor_user_id=actor_id,
        resource_type="ticket",
        details={
            "operation_id": operation_id,
            "requested": requested,
            "modified": processed,
            "execution_mode": execution_mode_of(session),
            **details,
        },
    )


def _run_operation(
    db: Session,
    executor: TransactionExecutor,
    channel: PushChannel,
    actor: UserSession,
    operation_id: str,
    kind: BulkOperationKind,
    ids: list[UUID],
    work,
    finish,
) -> BulkOperationResult:
    log_context = build_log_context(
        user_id=actor.user_id,
        department=actor.department,
        operation_id=operation_id,
    )
    operation_events.operation_started(channel, actor.user_id, operation_id, kind, len(ids))

    write: WriteResult | None = None
    try:
        outcome = executor.execute(work)
        write = outcome.result
        operation_events.operation_progress(
            channel, actor.user_id, operation_id, write.processed, len(ids)
        )
        result = finish(write, outcome.mode)
        if result.affected_ticket_ids:
            channel.try_deliver_to_department(
                actor.department,
                EVENT_DEPARTMENT_TICKETS_UPDATED,
                {
                    "operationId": operation_id,
                    "operationType": kind.value,
                    "ticketIds": [str(ticket_id) for ticket_id in result.affected_ticket_ids],
                },
            )
    except Exception as exc:
        db.rollback()
        # Once the write has returned its changes are stored; report them.
        processed = write.processed if write is not None else 0
        logger.error(
            "Bulk %s operation %s failed after %d write(s): %s",
            kind.value,
            operation_id,
            processed,
            exc,
            extra=log_context,
        )
        operation_events.operation_completed(
            channel,
            actor.user_id,
            operation_id,
            OperationSummary(
                success=False,
                processed=processed,
                failed=len(ids) - processed,
                message=f"Bulk operation failed: {exc}",
            ),
        )
        raise

    logger.info(
        "Bulk %s operation %s processed %d/%d (%s)",
        kind.value,
        operation_id,
        result.processed,
        result.requested,
        result.execution_mode.value,
        extra=log_context,
    )
    operation_events.operation_completed(channel, actor.user_id, operation_id, result.summary())
    return result
