"""Pydantic schemas for API request/response models."""

from helpdesk.schemas.auth import UserSession
from helpdesk.schemas.ticket import (
    BulkAssignData,
    BulkAssignRequest,
    BulkOperationResponse,
    BulkStatusData,
    BulkStatusRequest,
    TicketPatchRequest,
    TicketRead,
)
