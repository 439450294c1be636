"""Ticket request/response schemas for department bulk operations."""

from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from helpdesk.core.config import settings
from helpdesk.db.enums import Department, TicketPriority, TicketStatus
from helpdesk.services.transaction_service import ExecutionMode

DataT = TypeVar("DataT")


class _BulkTicketRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    ticket_ids: list[UUID] = Field(
        ...,
        alias="ticketIds",
        min_length=1,
        max_length=settings.BULK_MAX_TICKETS,
    )

    @field_validator("ticket_ids")
    @classmethod
    def collapse_duplicates(cls, v: list[UUID]) -> list[UUID]:
        return list(dict.fromkeys(v))


class BulkAssignRequest(_BulkTicketRequest):
    """Body of ``POST /department/tickets/bulk-assign``."""

    assigned_to: UUID = Field(..., alias="assignedTo")


class BulkStatusRequest(_BulkTicketRequest):
    """Body of ``POST /department/tickets/bulk-status``."""

    status: TicketStatus


class _BulkData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation_id: str = Field(..., alias="operationId")
    processed_count: int = Field(..., alias="processedCount")
    failed_count: int = Field(..., alias="failedCount")
    requested_count: int = Field(..., alias="requestedCount")
    execution_mode: ExecutionMode = Field(..., alias="executionMode")


class AssigneeRef(BaseModel):
    id: UUID
    name: str


class BulkAssignData(_BulkData):
    assigned_to: AssigneeRef = Field(..., alias="assignedTo")


class BulkStatusData(_BulkData):
    status: TicketStatus


class BulkOperationResponse(BaseModel, Generic[DataT]):
    success: bool = True
    message: str
    data: DataT


class TicketPatchRequest(BaseModel):
    """Version-guarded ticket update. ``version`` is the one the client last read."""

    model_config = ConfigDict(extra="forbid")

    version: int = Field(..., ge=1)
    status: TicketStatus | None = None
    priority: TicketPriority | None = None

    @model_validator(mode="after")
    def require_change(self) -> "TicketPatchRequest":
        if self.status is None and self.priority is None:
            raise ValueError("Provide at least one of status or priority")
        return self

    def changes(self) -> dict:
        return self.model_dump(exclude={"version"}, exclude_none=True)


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject: str
    status: TicketStatus
    priority: TicketPriority
    department: Department
    created_by_id: UUID | None
    assigned_to_id: UUID | None
    assigned_to_name: str | None
    version: int
    resolved_at: datetime | None
    updated_at: datetime
