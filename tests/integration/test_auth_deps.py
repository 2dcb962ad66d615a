"""Authentication dependencies."""
import asyncio
from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from chaptersmith.api import deps
from chaptersmith.core.config import settings
from chaptersmith.models.user import User
from chaptersmith.services.auth import AuthService
from chaptersmith.services.credits import CreditLedger


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_dev_user_created_once_with_signup_credits(db: Session, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_DISABLED", True)

    first = asyncio.run(deps.get_current_user(credentials=None, db=db))
    second = asyncio.run(deps.get_current_user(credentials=None, db=db))

    assert first.id == second.id == deps.DEV_USER_ID
    assert CreditLedger(db).get_balance(first.id).balance == settings.FREE_SIGNUP_CREDITS


def test_valid_token_resolves_user(db: Session, test_user: User, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_DISABLED", False)
    token = AuthService.create_access_token({"sub": str(test_user.id)})

    user = asyncio.run(deps.get_current_user(credentials=_bearer(token), db=db))

    assert user.id == test_user.id


def test_missing_token_is_401(db: Session, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_DISABLED", False)

    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(deps.get_current_user(credentials=None, db=db))
    assert exc_info.value.status_code == 401


def test_expired_token_is_401(db: Session, test_user: User, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_DISABLED", False)
    token = AuthService.create_access_token(
        {"sub": str(test_user.id)}, expires_delta=timedelta(minutes=-1)
    )

    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(deps.get_current_user(credentials=_bearer(token), db=db))
    assert exc_info.value.status_code == 401


def test_placeholder_token_is_401(db: Session, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_DISABLED", False)

    with pytest.raises(HTTPException):
        asyncio.run(deps.get_current_user(credentials=_bearer("undefined"), db=db))
