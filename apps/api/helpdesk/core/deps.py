"""FastAPI dependencies: database session, identity, role gates, CSRF."""

from typing import Generator
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from helpdesk.core.security import decode_session_token
from helpdesk.core.websocket import WebSocketPushChannel, push_channel
from helpdesk.db.enums import Role
from helpdesk.db.models import User
from helpdesk.db.session import SessionLocal, engine
from helpdesk.schemas.auth import UserSession
from helpdesk.services.transaction_service import TransactionExecutor

COOKIE_NAME = "helpdesk_session"
CSRF_HEADER = "X-Requested-With"
CSRF_HEADER_VALUE = "XMLHttpRequest"


def get_db() -> Generator[Session, None, None]:
    """Request-scoped database session, closed after the response."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_transaction_executor() -> TransactionExecutor:
    """Executor for multi-record writes, bound to the application engine."""
    return TransactionExecutor(engine)


def get_push_channel() -> WebSocketPushChannel:
    return push_channel


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail)


def session_token_from(request: Request) -> str | None:
    """Session cookie first, then ``Authorization: Bearer``."""
    token = request.cookies.get(COOKIE_NAME)
    if token:
        return token
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Resolve the active user behind the request's session token.

    Raises:
        HTTPException 401: missing/invalid/expired token, unknown or disabled
            user, or a token issued before the user's sessions were revoked
    """
    token = session_token_from(request)
    if not token:
        raise _unauthorized("Not authenticated")

    try:
        claims = decode_session_token(token)
        user_id = UUID(str(claims["sub"]))
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Session expired")
    except (jwt.InvalidTokenError, ValueError):
        raise _unauthorized("Invalid session")

    user = db.get(User, user_id)
    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise _unauthorized("Account disabled")
    if user.token_version != claims["token_version"]:
        raise _unauthorized("Session revoked")
    return user


def get_current_session(user: User = Depends(get_current_user)) -> UserSession:
    """Identity context (id, role, department, head flag) for most endpoints."""
    return UserSession.from_user(user)


def require_department_head(session: UserSession = Depends(get_current_session)) -> UserSession:
    """
    Department-wide ticket operations are reserved to heads of a department.

    Raises:
        HTTPException 403: Not a department head
    """
    if not session.is_department_head:
        raise HTTPException(status_code=403, detail="Department head access required")
    return session


def require_department_member(session: UserSession = Depends(get_current_session)) -> UserSession:
    """Department staff (heads included)."""
    if session.role != Role.DEPARTMENT_USER or session.department is None:
        raise HTTPException(status_code=403, detail="Department staff access required")
    return session


def require_csrf_header(request: Request) -> None:
    """
    Mutations must carry the CSRF header browsers cannot set cross-site.

    Raises:
        HTTPException 403: Missing or invalid CSRF header
    """
    if request.headers.get(CSRF_HEADER) != CSRF_HEADER_VALUE:
        raise HTTPException(
            status_code=403,
            detail=f"Missing CSRF header. Include '{CSRF_HEADER}: {CSRF_HEADER_VALUE}'",
        )
