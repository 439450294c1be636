"""Tests for the transaction executor: atomicity, retry bound, fallback."""

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from helpdesk.db.enums import TicketStatus
from helpdesk.db.models import Ticket
from helpdesk.services.transaction_service import (
    ExecutionMode,
    TransactionExecutor,
    TransactionOptions,
    TransactionsUnsupportedError,
    TransientTransactionError,
    execution_mode_of,
    is_transactions_unsupported_error,
    is_transient_error,
)


class _PgError(Exception):
    def __init__(self, sqlstate: str, message: str = "conflict"):
        super().__init__(message)
        self.sqlstate = sqlstate


def _status(db, ticket_id):
    db.expire_all()
    return db.execute(select(Ticket.status).where(Ticket.id == ticket_id)).scalar_one()


def test_commits_work_and_returns_result(db, executor, make_ticket):
    ticket = make_ticket()

    def work(session):
        return session.execute(
            update(Ticket).where(Ticket.id == ticket.id).values(status=TicketStatus.ASSIGNED)
        ).rowcount

    assert executor.with_transaction(work) == 1
    assert _status(db, ticket.id) == TicketStatus.ASSIGNED


def test_failure_after_first_write_stage_leaves_nothing_modified(db, executor, make_ticket):
    first = make_ticket()
    second = make_ticket()

    def work(session):
        session.execute(
            update(Ticket).where(Ticket.id == first.id).values(status=TicketStatus.ASSIGNED)
        )
        raise RuntimeError("second stage failed")

    with pytest.raises(RuntimeError, match="second stage failed"):
        executor.with_transaction(work)

    assert _status(db, first.id) == TicketStatus.OPEN
    assert _status(db, second.id) == TicketStatus.OPEN


def test_transient_error_is_attempted_exactly_max_retries(executor, sleeps):
    attempts = []

    def work(session):
        attempts.append(session)
        raise TransientTransactionError("write conflict")

    with pytest.raises(TransientTransactionError):
        executor.with_transaction(
            work, TransactionOptions(max_retries=4, retry_delay_ms=100)
        )

    assert len(attempts) == 4
    # retry_delay * attempt_number, strictly increasing
    assert sleeps.calls == [0.1, 0.2, 0.3]
    # Fresh session per attempt
    assert len({id(s) for s in attempts}) == 4


def test_defaults_come_from_settings(executor, sleeps):
    calls = []

    def work(session):
        calls.append(1)
        raise TransientTransactionError("conflict")

    with pytest.raises(TransientTransactionError):
        executor.with_transaction(work)

    assert len(calls) == 3
    assert sleeps.calls == [0.1, 0.2]


def test_transient_error_recovers_on_retry(db, executor, make_ticket, sleeps):
    ticket = make_ticket()
    calls = []

    def work(session):
        calls.append(1)
        session.execute(
            update(Ticket).where(Ticket.id == ticket.id).values(status=TicketStatus.IN_PROGRESS)
        )
        if len(calls) == 1:
            raise TransientTransactionError("conflict")
        return "done"

    assert executor.with_transaction(work) == "done"
    assert len(calls) == 2
    assert sleeps.calls == [0.1]
    assert _status(db, ticket.id) == TicketStatus.IN_PROGRESS


def test_non_transient_error_is_not_retried(executor, sleeps):
    calls = []

    def work(session):
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        executor.with_transaction(work)

    assert calls == [1]
    assert sleeps.calls == []


def test_sessions_closed_on_every_exit_path(engine, executor):
    def read(session):
        return session.execute(select(Ticket.id)).all()

    def fail(session):
        raise ValueError("bad input")

    def conflict(session):
        raise TransientTransactionError("conflict")

    executor.with_transaction(read)
    with pytest.raises(ValueError):
        executor.with_transaction(fail)
    with pytest.raises(TransientTransactionError):
        executor.with_transaction(conflict)

    assert engine.pool.checkedout() == 0





def test_isolation_level_override(db, executor, make_ticket):
    ticket = make_ticket()

    def work(session):
        return session.execute(select(Ticket.subject).where(Ticket.id == ticket.id)).scalar_one()

    assert (
        executor.with_transaction(work, TransactionOptions(isolation_level="SERIALIZABLE"))
        == "Projector not working"
    )


def test_postgres_defaults_to_repeatable_read(executor):
    postgres = TransactionExecutor(create_engine("postgresql+psycopg://helpdesk@localhost/helpdesk"))
    defaults = TransactionOptions().resolved()

    assert postgres.isolation_level_for(defaults) == "REPEATABLE READ"
    assert postgres.isolation_level_for(TransactionOptions(isolation_level="SERIALIZABLE")) == "SERIALIZABLE"
    assert executor.isolation_level_for(defaults) is None


def test_sessions_are_tagged_with_execution_mode(executor, fallback_executor):
    assert executor.with_transaction(execution_mode_of) == ExecutionMode.TRANSACTIONAL
    assert fallback_executor.run_without_transaction(execution_mode_of) == ExecutionMode.FALLBACK


# =============================================================================
# Transaction support detection and fallback
# =============================================================================

def test_disabled_transactions_raise_unsupported(fallback_executor):
    assert fallback_executor.supports_transactions() is False
    with pytest.raises(TransactionsUnsupportedError):
        fallback_executor.with_transaction(lambda session: None)


def test_autocommit_engine_is_detected_as_unsupported(engine):
    executor = TransactionExecutor(
        engine.execution_options(isolation_level="AUTOCOMMIT"), transactions_enabled=True
    )
    assert executor.supports_transactions() is False


def test_execute_uses_transactional_path_when_supported(executor):
    outcome = executor.execute(lambda session: 42)

    assert outcome.mode == ExecutionMode.TRANSACTIONAL
    assert outcome.atomic is True
    assert outcome.result == 42
    assert outcome.attempts == 1


def test_execute_falls_back_when_unsupported(db, fallback_executor, make_ticket):
    ticket = make_ticket()

    def work(session):
        return session.execute(
            update(Ticket).where(Ticket.id == ticket.id).values(status=TicketStatus.RESOLVED)
        ).rowcount

    outcome = fallback_executor.execute(work)

    assert outcome.mode == ExecutionMode.FALLBACK
    assert outcome.atomic is False
    assert outcome.result == 1
    assert _status(db, ticket.id) == TicketStatus.RESOLVED


def test_execute_falls_back_when_store_reports_unsupported(db, executor, make_ticket):
    ticket = make_ticket()
    calls = []

    def work(session):
        calls.append(1)
        if len(calls) == 1:
            raise TransactionsUnsupportedError("statement pooling")
        return session.execute(
            update(Ticket).where(Ticket.id == ticket.id).values(status=TicketStatus.CLOSED)
        ).rowcount

    outcome = executor.execute(work)

    assert outcome.mode == ExecutionMode.FALLBACK
    assert calls == [1, 1]
    assert _status(db, ticket.id) == TicketStatus.CLOSED


def test_fallback_writes_are_not_undone_on_partial_failure(db, fallback_executor, make_ticket):
    first = make_ticket()

    def work(session):
        session.execute(
            update(Ticket).where(Ticket.id == first.id).values(status=TicketStatus.ASSIGNED)
        )
        raise RuntimeError("second stage failed")

    with pytest.raises(RuntimeError):
        fallback_executor.execute(work)

    assert _status(db, first.id) == TicketStatus.ASSIGNED


# =============================================================================
# Error classification
# =============================================================================

@pytest.mark.parametrize("sqlstate", ["40001", "40P01"])
def test_serialization_and_deadlock_are_transient(sqlstate):
    exc = OperationalError("UPDATE tickets", {}, _PgError(sqlstate))
    assert is_transient_error(exc) is True


def test_sqlite_lock_is_transient():
    exc = OperationalError("UPDATE tickets", {}, Exception("database is locked"))
    assert is_transient_error(exc) is True


def test_invalidated_connection_is_transient():
    exc = OperationalError(
        "COMMIT", {}, Exception("server closed the connection"), connection_invalidated=True
    )
    assert is_transient_error(exc) is True


def test_constraint_violation_is_not_transient():
    exc = IntegrityError("INSERT", {}, _PgError("23505", "duplicate key"))
    assert is_transient_error(exc) is False
    assert is_transient_error(ValueError("nope")) is False


def test_statement_pooling_message_is_unsupported():
    exc = OperationalError(
        "BEGIN", {}, Exception("transaction blocks not allowed in statement pooling mode")
    )
    assert is_transactions_unsupported_error(exc) is True
    assert is_transactions_unsupported_error(RuntimeError("other")) is False
