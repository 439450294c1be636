"""Structured logging helpers."""

import logging
from typing import Any

from helpdesk.core.config import settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once at app start."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel((level or settings.LOG_LEVEL).upper())


def build_log_context(
    *,
    user_id: str | None = None,
    department: str | None = None,
    operation_id: str | None = None,
    endpoint: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict suitable for ``extra=``."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if department:
        context["department"] = department
    if operation_id:
        context["operation_id"] = operation_id
    if endpoint:
        context["endpoint"] = endpoint
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
