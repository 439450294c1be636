"""Department ticket endpoints - bulk mutations and version-guarded updates."""

from typing import NoReturn
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func
from sqlalchemy.orm import Session

from helpdesk.core.deps import (
    get_db,
    get_push_channel,
    get_transaction_executor,
    require_csrf_header,
    require_department_head,
    require_department_member,
)
from helpdesk.core.health import endpoint_guard
from helpdesk.core.rate_limit import BULK_LIMIT, limiter
from helpdesk.core.websocket import WebSocketPushChannel
from helpdesk.db.enums import AuditAction, TicketStatus
from helpdesk.db.models import Ticket
from helpdesk.schemas.auth import UserSession
from helpdesk.schemas.ticket import (
    AssigneeRef,
    BulkAssignData,
    BulkAssignRequest,
    BulkOperationResponse,
    BulkStatusData,
    BulkStatusRequest,
    TicketPatchRequest,
    TicketRead,
)
from helpdesk.services import audit_service, bulk_ticket_service
from helpdesk.services.bulk_ticket_service import (
    BulkOperationError,
    ForbiddenError,
    NotFoundError,
)
from helpdesk.services.locking_service import (
    ConcurrentModificationError,
    update_with_optimistic_lock,
)
from helpdesk.services.transaction_service import TransactionExecutor

router = APIRouter(prefix="/department/tickets", tags=["Department Tickets"])


def _raise_http(exc: BulkOperationError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post(
    "/bulk-assign",
    response_model=BulkOperationResponse[BulkAssignData],
    dependencies=[Depends(endpoint_guard("bulk-assign")), Depends(require_csrf_header)],
)
@limiter.limit(BULK_LIMIT)
def bulk_assign_tickets(
    request: Request,
    data: BulkAssignRequest,
    session: UserSession = Depends(require_department_head),
    db: Session = Depends(get_db),
    executor: TransactionExecutor = Depends(get_transaction_executor),
    channel: WebSocketPushChannel = Depends(get_push_channel),
):
    """
    Assign many tickets of the head's department to one team member.

    Requires: department head
    """
    try:
        result = bulk_ticket_service.bulk_assign(
            db, executor, channel, session, data.ticket_ids, data.assigned_to
        )
    except BulkOperationError as e:
        _raise_http(e)

    return BulkOperationResponse[BulkAssignData](
        message=result.message,
        data=BulkAssignData(
            operation_id=result.operation_id,
            processed_count=result.processed,
            failed_count=result.failed,
            requested_count=result.requested,
            execution_mode=result.execution_mode,
            assigned_to=AssigneeRef(id=result.assigned_to_id, name=result.assigned_to_name),
        ),
    )


@router.post(
    "/bulk-status",
    response_model=BulkOperationResponse[BulkStatusData],
    dependencies=[Depends(endpoint_guard("bulk-status")), Depends(require_csrf_header)],
)
@limiter.limit(BULK_LIMIT)
def bulk_update_ticket_status(
    request: Request,
    data: BulkStatusRequest,
    session: UserSession = Depends(require_department_head),
    db: Session = Depends(get_db),
    executor: TransactionExecutor = Depends(get_transaction_executor),
    channel: WebSocketPushChannel = Depends(get_push_channel),
):
    """
    Move many tickets of the head's department to one status. Closed tickets are skipped.

    Requires: department head
    """
    try:
        result = bulk_ticket_service.bulk_update_status(
            db, executor, channel, session, data.ticket_ids, data.status
        )
    except BulkOperationError as e:
        _raise_http(e)

    return BulkOperationResponse[BulkStatusData](
        message=result.message,
        data=BulkStatusData(
            operation_id=result.operation_id,
            processed_count=result.processed,
            failed_count=result.failed,
            requested_count=result.requested,
            execution_mode=result.execution_mode,
            status=result.status,
        ),
    )


@router.patch(
    "/{ticket_id}",
    response_model=TicketRead,
    dependencies=[Depends(endpoint_guard("ticket-update")), Depends(require_csrf_header)],
)
def update_ticket(
    ticket_id: UUID,
    data: TicketPatchRequest,
    session: UserSession = Depends(require_department_member),
    db: Session = Depends(get_db),
):
    """
    Update status/priority of one ticket if it is still at ``version``.

    409 means someone else changed the ticket first; re-read and retry.
    """
    ticket = db.get(Ticket, ticket_id)
    if not ticket or ticket.department != session.department:
        raise HTTPException(status_code=404, detail="Ticket not found")

    changes = data.changes()
    if changes.get("status") == TicketStatus.RESOLVED:
        changes["resolved_at"] = func.now()

    try:
        ticket = update_with_optimistic_lock(
            db, Ticket, ticket_id, data.version, changes, commit=False
        )
    except ConcurrentModificationError as e:
        db.rollback()
        if not e.record_exists:
            raise HTTPException(status_code=404, detail="Ticket not found")
        raise HTTPException(status_code=409, detail=str(e))

    audit_service.log_event(
        db,
        AuditAction.TICKET_UPDATED,
        actor_user_id=session.user_id,
        resource_type="ticket",
        details={
            "ticket_id": ticket_id,
            "version": ticket.version,
            "fields": sorted(data.changes()),
        },
    )
    db.commit()
    db.refresh(ticket)
    return ticket
