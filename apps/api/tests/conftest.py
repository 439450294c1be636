"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite database file per test (separate sessions get separate
  connections, so concurrency and fallback paths behave like a real server)
- User/ticket factories and department fixtures
- A recording push channel
- HTTPX AsyncClient with dependency overrides, JWT cookie and CSRF header
"""
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Callable, Generator

# Settings are read at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["TESTING"] = "1"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from helpdesk.core.deps import COOKIE_NAME, get_db, get_push_channel, get_transaction_executor
from helpdesk.core.health import EndpointHealthMonitor, ManualScheduler
from helpdesk.core.rate_limit import limiter
from helpdesk.core.security import create_session_token
from helpdesk.db.base import Base
from helpdesk.db.enums import Department, Role, TicketStatus
from helpdesk.db.models import Ticket, User
from helpdesk.main import app
from helpdesk.schemas.auth import UserSession
from helpdesk.services.transaction_service import TransactionExecutor


# =============================================================================
# Database
# =============================================================================

def make_engine(path) -> Engine:
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def engine(tmp_path) -> Generator[Engine, None, None]:
    engine = make_engine(tmp_path / "helpdesk.db")
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture(scope="function")
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(scope="function")
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(scope="function")
def executor(engine: Engine, sleeps: RecordingSleep) -> TransactionExecutor:
    return TransactionExecutor(engine, transactions_enabled=True, sleep=sleeps)


@pytest.fixture(scope="function")
def fallback_executor(engine: Engine, sleeps: RecordingSleep) -> TransactionExecutor:
    return TransactionExecutor(engine, transactions_enabled=False, sleep=sleeps)


# =============================================================================
# Push channel
# =============================================================================

@dataclass
class PushedEvent:
    target: Any
    event: str
    payload: dict


@dataclass
class RecordingChannel:
    """Push channel double: records every attempt, delivers to ``online`` users only."""

    online: set = field(default_factory=set)
    events: list[PushedEvent] = field(default_factory=list)
    department_events: list[PushedEvent] = field(default_factory=list)

    def try_deliver(self, user_id, event, payload) -> bool:
        self.events.append(PushedEvent(user_id, event, payload))
        return user_id in self.online

    def try_deliver_to_department(self, department, event, payload) -> int:
        self.department_events.append(PushedEvent(department, event, payload))
        return 0

    def names(self, user_id=None) -> list[str]:
        return [e.event for e in self.events if user_id is None or e.target == user_id]

    def of(self, event: str) -> list[PushedEvent]:
        return [e for e in self.events if e.event == event]


@pytest.fixture(scope="function")
def channel() -> RecordingChannel:
    return RecordingChannel()


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture(scope="function")
def make_user(db: Session) -> Callable[..., User]:
    def _make(
        *,
        name: str = "User",
        role: Role = Role.DEPARTMENT_USER,
        department: Department | None = Department.OPERATIONS,
        is_head: bool = False,
    ) -> User:
        user = User(
            id=uuid.uuid4(),
            email=f"{uuid.uuid4().hex[:8]}@test.edu",
            name=name,
            role=role,
            department=department,
            is_head=is_head,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture(scope="function")
def make_ticket(db: Session) -> Callable[..., Ticket]:
    def _make(
        *,
        creator: User | None = None,
        status: TicketStatus = TicketStatus.OPEN,
        department: Department = Department.OPERATIONS,
        subject: str = "Projector not working",
        assignee: User | None = None,
    ) -> Ticket:
        ticket = Ticket(
            id=uuid.uuid4(),
            subject=subject,
            description="",
            status=status,
            department=department,
            created_by_id=creator.id if creator else None,
            created_by_name=creator.name if creator else None,
            assigned_to_id=assignee.id if assignee else None,
            assigned_to_name=assignee.name if assignee else None,
        )
        db.add(ticket)
        db.commit()
        return ticket

    return _make


@pytest.fixture(scope="function")
def head(make_user) -> User:
    return make_user(name="Hana Head", is_head=True)


@pytest.fixture(scope="function")
def staff(make_user) -> User:
    return make_user(name="Sam Staff")


@pytest.fixture(scope="function")
def student(make_user) -> User:
    return make_user(name="Stu Dent", role=Role.USER, department=None)


def session_for(user: User) -> UserSession:
    return UserSession.from_user(user)


@pytest.fixture(scope="function")
def head_session(head: User) -> UserSession:
    return session_for(head)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def health_monitor() -> Generator[EndpointHealthMonitor, None, None]:
    monitor = EndpointHealthMonitor(
        error_threshold=3, recovery_seconds=300, scheduler=ManualScheduler()
    )
    previous = app.state.health_monitor
    app.state.health_monitor = monitor
    yield monitor
    app.state.health_monitor = previous


@pytest.fixture(scope="function")
def api_overrides(session_factory, executor, channel, health_monitor):
    """Route app dependencies to the per-test database, executor and channel."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_transaction_executor] = lambda: executor
    app.dependency_overrides[get_push_channel] = lambda: channel
    limiter.reset()
    yield app.dependency_overrides
    app.dependency_overrides.clear()


def auth_cookies(user: User) -> dict[str, str]:
    token = create_session_token(
        user_id=user.id,
        role=user.role.value,
        token_version=user.token_version,
    )
    return {COOKIE_NAME: token}


@pytest.fixture(scope="function")
def client_for(api_overrides):
    """
    Build an AsyncClient authenticated as ``user`` with the CSRF header set.

    App exceptions come back as 500 responses instead of being raised.
    """

    def _client(user: User | None = None, csrf: bool = True) -> AsyncClient:
        return AsyncClient(
            transport=ASGITransport(app=app, raise_app_exceptions=False),
            base_url="http://test",
            cookies=auth_cookies(user) if user else None,
            headers={"X-Requested-With": "XMLHttpRequest"} if csrf else None,
        )

    return _client


@pytest.fixture(scope="function")
async def head_client(client_for, head: User) -> AsyncGenerator[AsyncClient, None]:
    async with client_for(head) as c:
        yield c


@pytest.fixture(scope="function")
def engine_factory(tmp_path) -> Generator[Callable[[str], Engine], None, None]:
    """Extra databases in the same tmp dir, disposed after the test."""
    engines: list[Engine] = []

    def _make(name: str) -> Engine:
        engine = make_engine(tmp_path / name)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.dispose()


@pytest.fixture(scope="function")
def as_session() -> Callable[[User], UserSession]:
    return session_for


@pytest.fixture(scope="function")
def channel_factory() -> Callable[[], RecordingChannel]:
    return RecordingChannel
