"""
Endpoint health monitor (in-process circuit breaker).

Each endpoint moves Healthy -> Disabled once its error count reaches the
threshold, and back to Healthy (count reset) when the recovery timer fires.
Recovery is unconditional; there is no probe. State is process-local and is
lost on restart.

Recovery timers go through a ``RecoveryScheduler`` so tests can use
``ManualScheduler`` and fast-forward virtual time.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import Callable, Generator, Protocol

from fastapi import HTTPException, Request

from helpdesk.core.config import settings
from helpdesk.core.structured_logging import build_log_context

logger = logging.getLogger(__name__)

UNAVAILABLE_DETAIL = "This endpoint is temporarily unavailable. Please try again in a few minutes."


# =============================================================================
# Scheduling
# =============================================================================

class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class RecoveryScheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadingScheduler:
    """Runs callbacks on daemon timer threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class _ManualTask:
    def __init__(self, due: float, callback: Callable[[], None]):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual clock: callbacks fire only when ``advance`` moves past their due time."""

    def __init__(self):
        self.now = 0.0
        self._tasks: list[_ManualTask] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        task = _ManualTask(self.now + delay, callback)
        self._tasks.append(task)
        return task

    def advance(self, seconds: float) -> int:
        """Move time forward and run due callbacks in due order. Returns how many ran."""
        self.now += seconds
        due = sorted(
            (t for t in self._tasks if not t.cancelled and t.due <= self.now),
            key=lambda t: t.due,
        )
        self._tasks = [t for t in self._tasks if t not in due and not t.cancelled]
        for task in due:
            task.callback()
        return len(due)

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.cancelled)


# =============================================================================
# Monitor
# =============================================================================

@dataclass
class EndpointHealthRecord:
    error_count: int = 0
    disabled: bool = False
    recovery_handle: TimerHandle | None = None


class EndpointHealthMonitor:
    """Tracks per-endpoint errors and disables endpoints that keep failing."""

    def __init__(
        self,
        error_threshold: int | None = None,
        recovery_seconds: float | None = None,
        scheduler: RecoveryScheduler | None = None,
    ):
        self.error_threshold = error_threshold or settings.HEALTH_ERROR_THRESHOLD
        self.recovery_seconds = (
            recovery_seconds if recovery_seconds is not None else settings.HEALTH_RECOVERY_SECONDS
        )
        self.scheduler = scheduler or ThreadingScheduler()
        self._records: dict[str, EndpointHealthRecord] = {}
        # Sync endpoints run on a thread pool; guard the record map.
        self._lock = threading.Lock()

    def record_error(self, endpoint: str) -> bool:
        """Count one error; returns True if the endpoint is now disabled."""
        with self._lock:
            record = self._records.setdefault(endpoint, EndpointHealthRecord())
            record.error_count += 1
            if record.error_count >= self.error_threshold and not record.disabled:
                record.disabled = True
                record.recovery_handle = self.scheduler.call_later(
                    self.recovery_seconds, partial(self._recover, endpoint)
                )
                logger.warning(
                    "Disabling endpoint %s after %d errors",
                    endpoint,
                    record.error_count,
                    extra=build_log_context(endpoint=endpoint),
                )
            return record.disabled

    def is_disabled(self, endpoint: str) -> bool:
        with self._lock:
            record = self._records.get(endpoint)
            return bool(record and record.disabled)

    def error_count(self, endpoint: str) -> int:
        with self._lock:
            record = self._records.get(endpoint)
            return record.error_count if record else 0

    def reset(self, endpoint: str | None = None) -> None:
        """Forget state for one endpoint (or all), cancelling pending recoveries."""
        with self._lock:
            names = [endpoint] if endpoint is not None else list(self._records)
            for name in names:
                record = self._records.pop(name, None)
                if record and record.recovery_handle:
                    record.recovery_handle.cancel()

    def snapshot(self) -> dict[str, dict[str, int | bool]]:
        with self._lock:
            return {
                name: {"error_count": record.error_count, "disabled": record.disabled}
                for name, record in self._records.items()
            }

    def shutdown(self) -> None:
        self.reset()

    def _recover(self, endpoint: str) -> None:
        with self._lock:
            record = self._records.get(endpoint)
            if record is None:
                return
            record.disabled = False
            record.error_count = 0
            record.recovery_handle = None
        logger.info("Re-enabling endpoint %s", endpoint, extra=build_log_context(endpoint=endpoint))


# =============================================================================
# FastAPI integration
# =============================================================================

def get_health_monitor(request: Request) -> EndpointHealthMonitor:
    return request.app.state.health_monitor


def endpoint_guard(endpoint: str):
    """
    Dependency factory: short-circuit disabled endpoints with 503 and count
    server-side failures of the guarded route.

    Client errors (4xx) do not count toward the threshold.

    Usage:
        @router.post("/bulk-assign", dependencies=[Depends(endpoint_guard("bulk-assign"))])
    """
    def dependency(request: Request) -> Generator[None, None, None]:
        monitor = get_health_monitor(request)
        if monitor.is_disabled(endpoint):
            raise HTTPException(status_code=503, detail=UNAVAILABLE_DETAIL)
        try:
            yield
        except HTTPException as exc:
            if exc.status_code >= 500:
                monitor.record_error(endpoint)
            raise
        except Exception:
            monitor.record_error(endpoint)
            raise

    return dependency
