"""Transaction executor - atomic units of work with retry and fallback.

Runs a unit of work (``work(session) -> result``) inside a database
transaction:
- Fresh session per attempt, closed on every exit path
- Bounded retry on transient conflicts (serialization failure, deadlock,
  lost connection during commit), sleeping ``retry_delay_ms * attempt``
- Deployments without multi-statement transactions (statement-mode poolers,
  AUTOCOMMIT engines) are detected and can run the same work as independent
  auto-committed statements instead

Callers that need "atomic when possible, best-effort otherwise" use
``TransactionExecutor.execute``, which returns a ``TransactionOutcome`` tagged
with the path that actually ran.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Generic, TypeVar

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from helpdesk.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})

UNSUPPORTED_MESSAGES = (
    "not allowed in statement pooling mode",
    "transactions are not supported",
)


class TransientTransactionError(Exception):
    """Raised by a unit of work to signal a retryable conflict."""


class TransactionsUnsupportedError(Exception):
    """The deployment cannot run multi-statement transactions."""


class ExecutionMode(str, Enum):
    TRANSACTIONAL = "transactional"
    FALLBACK = "fallback"


# Strongest level each dialect runs without extra locking when no override is set.
DEFAULT_ISOLATION_LEVELS = {"postgresql": "REPEATABLE READ"}


def execution_mode_of(session: Session) -> ExecutionMode:
    """Path the executor is running ``session`` on."""
    return session.info.get("execution_mode", ExecutionMode.TRANSACTIONAL)


@dataclass(frozen=True)
class TransactionOptions:
    """Per-call overrides; ``None`` fields fall back to settings."""

    isolation_level: str | None = None
    max_retries: int | None = None
    retry_delay_ms: int | None = None

    def resolved(self) -> "TransactionOptions":
        return replace(
            self,
            isolation_level=self.isolation_level or settings.transaction_isolation_level,
            max_retries=max(
                1,
                self.max_retries if self.max_retries is not None else settings.TRANSACTION_MAX_RETRIES,
            ),
            retry_delay_ms=(
                self.retry_delay_ms
                if self.retry_delay_ms is not None
                else settings.TRANSACTION_RETRY_DELAY_MS
            ),
        )


@dataclass(frozen=True)
class TransactionOutcome(Generic[T]):
    """Result of ``TransactionExecutor.execute`` tagged with the path taken."""

    mode: ExecutionMode
    result: T
    attempts: int = 1

    @property
    def atomic(self) -> bool:
        return self.mode == ExecutionMode.TRANSACTIONAL


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    # psycopg 3 exposes .sqlstate, psycopg2 .pgcode
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_transient_error(exc: BaseException) -> bool:
    """Return True when a failed transaction may succeed if simply retried."""
    if isinstance(exc, TransientTransactionError):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        # Connection dropped mid-transaction; commit result unknown.
        return True
    if _sqlstate(exc) in TRANSIENT_SQLSTATES:
        return True
    return isinstance(exc, OperationalError) and "database is locked" in str(exc.orig).lower()


def is_transactions_unsupported_error(exc: BaseException) -> bool:
    if isinstance(exc, TransactionsUnsupportedError):
        return True
    if isinstance(exc, DBAPIError):
        message = str(exc.orig).lower()
        return any(fragment in message for fragment in UNSUPPORTED_MESSAGES)
    return False


def _isolation_option(bind: Engine | Connection) -> str:
    level = bind.get_execution_options().get("isolation_level")
    if level is None:
        level = getattr(bind.dialect, "isolation_level", None)
    return str(level or "").upper()


class TransactionExecutor:
    """Runs units of work against one engine."""

    def __init__(
        self,
        bind: Engine,
        *,
        transactions_enabled: bool | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.bind = bind
        self._transactions_enabled = transactions_enabled
        self._sleep = sleep
        self._session_factory = sessionmaker(
            bind=bind, autoflush=False, expire_on_commit=False
        )

    def supports_transactions(self) -> bool:
        enabled = (
            settings.TRANSACTIONS_ENABLED
            if self._transactions_enabled is None
            else self._transactions_enabled
        )
        return enabled and _isolation_option(self.bind) != "AUTOCOMMIT"

    def with_transaction(
        self,
        work: Callable[[Session], T],
        options: TransactionOptions | None = None,
    ) -> T:
        """
        Run ``work`` atomically, retrying transient conflicts.

        Raises:
            TransactionsUnsupportedError: deployment cannot run transactions
            Exception: whatever ``work`` or the commit raised, once retries
                are exhausted or the error is not transient
        """
        result, _attempts = self._run_transactional(work, (options or TransactionOptions()).resolved())
        return result

    def run_without_transaction(self, work: Callable[[Session], T]) -> T:
        """
        Run ``work`` with every statement committed on its own.

        Best-effort: statements that already ran are not undone if a later one
        fails.
        """
        autocommit_bind = self.bind.execution_options(isolation_level="AUTOCOMMIT")
        with Session(bind=autocommit_bind, autoflush=False, expire_on_commit=False) as session:
            session.info["execution_mode"] = ExecutionMode.FALLBACK
            result = work(session)
            session.commit()
            return result

    def execute(
        self,
        work: Callable[[Session], T],
        options: TransactionOptions | None = None,
    ) -> TransactionOutcome[T]:
        """Run ``work`` atomically when possible, otherwise as a best-effort sequence."""
        if self.supports_transactions():
            try:
                result, attempts = self._run_transactional(
                    work, (options or TransactionOptions()).resolved()
                )
                return TransactionOutcome(ExecutionMode.TRANSACTIONAL, result, attempts)
            except TransactionsUnsupportedError as exc:
                logger.warning("Transactions unavailable, falling back to non-atomic writes: %s", exc)
        else:
            logger.info("Transactions disabled for this deployment; running non-atomic writes")

        return TransactionOutcome(ExecutionMode.FALLBACK, self.run_without_transaction(work))

    def isolation_level_for(self, options: TransactionOptions) -> str | None:
        """Explicit override, else the dialect default, else the engine's own."""
        return options.isolation_level or DEFAULT_ISOLATION_LEVELS.get(self.bind.dialect.name)

    def _run_transactional(
        self, work: Callable[[Session], T], opts: TransactionOptions
    ) -> tuple[T, int]:
        if not self.supports_transactions():
            raise TransactionsUnsupportedError("Multi-statement transactions are disabled")

        attempt = 0
        while True:
            attempt += 1
            started = time.monotonic()
            with self._session_factory() as session:
                session.info["execution_mode"] = ExecutionMode.TRANSACTIONAL
                try:
                    isolation_level = self.isolation_level_for(opts)
                    if isolation_level:
                        session.connection(
                            execution_options={"isolation_level": isolation_level}
                        )
                    result = work(session)
                    session.commit()
                except Exception as exc:
                    self._rollback(session)

                    if is_transactions_unsupported_error(exc):
                        if isinstance(exc, TransactionsUnsupportedError):
                            raise
                        raise TransactionsUnsupportedError(str(exc)) from exc

                    if is_transient_error(exc) and attempt < opts.max_retries:
                        delay_ms = opts.retry_delay_ms * attempt
                        logger.warning(
                            "Transaction retry %d/%d in %dms: %s",
                            attempt,
                            opts.max_retries - 1,
                            delay_ms,
                            exc,
                        )
                        self._sleep(delay_ms / 1000)
                        continue

                    logger.error(
                        "Transaction failed after %d attempt(s): %s", attempt, exc
                    )
                    raise

            logger.debug(
                "Transaction committed in %.1fms (retries=%d)",
                (time.monotonic() - started) * 1000,
                attempt - 1,
            )
            return result, attempt

    @staticmethod
    def _rollback(session: Session) -> None:
        try:
            session.rollback()
        except SQLAlchemyError as rollback_exc:
            # The original error is re-raised by the caller.
            logger.warning("Rollback failed: %s", rollback_exc)
