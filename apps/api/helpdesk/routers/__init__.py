"""API routers."""

from helpdesk.routers.department_tickets import router as department_tickets_router
from helpdesk.routers.websocket import router as websocket_router
