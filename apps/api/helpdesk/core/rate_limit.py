"""Rate limiting configuration for the helpdesk API."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from helpdesk.core.config import settings

logger = logging.getLogger(__name__)

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)
BULK_LIMIT = f"{settings.RATE_LIMIT_BULK}/minute"


def _storage_uri() -> str:
    # Shared storage is needed once more than one worker serves the API.
    if IS_TESTING or not settings.REDIS_URL:
        return "memory://"
    try:
        import redis

        client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        client.ping()
        return settings.REDIS_URL
    except Exception as e:
        logger.warning("Redis unavailable for rate limiting, using in-memory: %s", e)
        return "memory://"


limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_storage_uri(),
    default_limits=DEFAULT_LIMITS,
)
