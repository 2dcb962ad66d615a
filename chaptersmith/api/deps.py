"""API Dependencies for dependency injection."""

import logging
import uuid
from collections.abc import Generator
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chaptersmith.core.config import settings
from chaptersmith.db.base import SessionLocal
from chaptersmith.models.user import User
from chaptersmith.services import job_queue
from chaptersmith.services.auth import AuthService
from chaptersmith.services.content_generator import ContentGeneratorFactory, get_content_generator
from chaptersmith.services.credits import CreditLedger

logger = logging.getLogger(__name__)

# Security scheme - auto_error=False allows us to handle missing auth gracefully
security = HTTPBearer(auto_error=False)

DEV_USER_EMAIL = "dev@chaptersmith.local"
DEV_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_or_create_dev_user(db: Session) -> User:
    """Get or create a development user; new users receive the signup credits."""
    dev_user = db.query(User).filter(User.email == DEV_USER_EMAIL).first()
    if dev_user:
        return dev_user

    dev_user = User(
        id=DEV_USER_ID,
        email=DEV_USER_EMAIL,
        username="dev",
        hashed_password="not-used-in-dev-mode",
        full_name="Development User",
        is_active=True,
    )
    try:
        db.add(dev_user)
        db.commit()
        logger.info(f"[Auth] Created development user: {DEV_USER_EMAIL}")
    except IntegrityError:
        db.rollback()
        # Created concurrently by another request
        dev_user = db.query(User).filter(User.email == DEV_USER_EMAIL).first()
        if not dev_user:
            raise
        return dev_user

    CreditLedger(db).grant_free_signup_credits(dev_user.id)
    return db.get(User, DEV_USER_ID)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current authenticated user.

    When AUTH_DISABLED=true, returns a development user without requiring a token.
    """
    if settings.AUTH_DISABLED:
        return get_or_create_dev_user(db)

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    if not token or token in ("undefined", "null"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token format",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = AuthService.verify_token(token)
    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = uuid.UUID(str(token_data.user_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Inactive user")
    return user


def get_generator_factory() -> ContentGeneratorFactory:
    """Content generator factory used by the streaming endpoints."""
    return get_content_generator


def get_job_queue() -> job_queue.JobQueue:
    return job_queue.get_job_queue()
