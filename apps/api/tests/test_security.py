"""Tests for session tokens and the identity dependencies."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import HTTPException

from helpdesk.core.config import settings
from helpdesk.core.deps import require_department_head, require_department_member
from helpdesk.core.security import create_session_token, decode_session_token
from helpdesk.db.enums import Department, Role


def test_token_round_trip_carries_version(head):
    token = create_session_token(head.id, head.role.value, head.token_version)

    payload = decode_session_token(token)

    assert payload["sub"] == str(head.id)
    assert payload["role"] == "DEPARTMENT_USER"
    assert payload["token_version"] == 1


def test_previous_secret_still_accepted(monkeypatch, head):
    claims = {"sub": str(head.id), "token_version": 1, "exp": datetime.now(timezone.utc) + timedelta(hours=1)}
    old = jwt.encode(claims, "old-secret", algorithm="HS256")
    monkeypatch.setattr(settings, "JWT_SECRET_PREVIOUS", "old-secret")

    assert decode_session_token(old)["sub"] == str(head.id)


def test_unknown_secret_rejected():
    token = jwt.encode({"sub": "x"}, "someone-else", algorithm="HS256")

    with pytest.raises(jwt.InvalidTokenError):
        decode_session_token(token)


def test_department_head_gate(as_session, head, staff):
    assert require_department_head(as_session(head)).is_department_head is True

    with pytest.raises(HTTPException) as exc_info:
        require_department_head(as_session(staff))
    assert exc_info.value.status_code == 403


def test_department_member_gate(as_session, staff, student, make_user):
    assert require_department_member(as_session(staff)).department == Department.OPERATIONS

    with pytest.raises(HTTPException):
        require_department_member(as_session(student))

    admin = make_user(name="Admin", role=Role.ADMIN, department=None)
    with pytest.raises(HTTPException):
        require_department_member(as_session(admin))


def test_expired_token_raises_expired(head):
    token = create_session_token(
        head.id, head.role.value, head.token_version, expires_in=timedelta(seconds=-5)
    )

    with pytest.raises(jwt.ExpiredSignatureError):
        decode_session_token(token)


def test_token_without_version_rejected(head):
    claims = {"sub": str(head.id), "exp": datetime.now(timezone.utc) + timedelta(hours=1)}
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm="HS256")

    with pytest.raises(jwt.MissingRequiredClaimError):
        decode_session_token(token)
