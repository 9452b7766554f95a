"""
Account registration, login and refresh-token rotation.
"""
import logging
import uuid
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.core.auth import (
    create_access_token, create_refresh_token, decode_token, hash_password, verify_password,
)
from examdesk.core.config import Settings
from examdesk.core.database import as_utc, utcnow
from examdesk.core.errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from examdesk.models.orm import RefreshToken, User, UserRole

logger = logging.getLogger(__name__)


async def _issue_tokens(db: AsyncSession, user: User, settings: Settings) -> dict:
    role = user.role.value
    access = create_access_token(str(user.id), user.email, role, settings)
    refresh = create_refresh_token(str(user.id), user.email, role, settings)
    db.add(RefreshToken(
        user_id=user.id,
        token=refresh,
        expires_at=utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    ))
    await db.flush()
    return {"access_token": access, "refresh_token": refresh, "token_type": "bearer"}


async def register(db: AsyncSession, settings: Settings, name: str, email: str, password: str,
                   role: UserRole) -> dict:
    email = email.lower()
    existing = await db.scalar(select(User).where(User.email == email))
    if existing:
        raise ConflictError("Email already registered")
    user = User(name=name, email=email, password_hash=hash_password(password), role=role)
    db.add(user)
    await db.flush()
    logger.info("Registered %s user %s", role.value, user.id)
    tokens = await _issue_tokens(db, user, settings)
    return {"user": user.to_dict(), **tokens}


async def login(db: AsyncSession, settings: Settings, email: str, password: str) -> dict:
    user = await db.scalar(select(User).where(User.email == email.lower()))
    if not user or not verify_password(password, user.password_hash):
        raise UnauthorizedError("Invalid email or password")
    tokens = await _issue_tokens(db, user, settings)
    return {"user": user.to_dict(), **tokens}


async def refresh(db: AsyncSession, settings: Settings, refresh_token: str) -> dict:
    """Rotate a refresh token: the presented one is consumed."""
    try:
        data = decode_token(refresh_token, "refresh", settings)
    except UnauthorizedError:
        raise UnauthorizedError("Invalid refresh token")
    stored = await db.scalar(select(RefreshToken).where(RefreshToken.token == refresh_token))
    if not stored:
        raise UnauthorizedError("Refresh token has been revoked")
    if as_utc(stored.expires_at) < utcnow():
        await db.delete(stored)
        await db.commit()
        raise UnauthorizedError("Refresh token expired")
    user = await db.get(User, data.user_id)
    if not user:
        raise UnauthorizedError("User not found")
    await db.delete(stored)
    return await _issue_tokens(db, user, settings)


async def logout(db: AsyncSession, user_id: uuid.UUID, refresh_token: str) -> None:
    await db.execute(delete(RefreshToken).where(
        RefreshToken.token == refresh_token, RefreshToken.user_id == user_id
    ))


async def logout_all(db: AsyncSession, user_id: uuid.UUID) -> None:
    await db.execute(delete(RefreshToken).where(RefreshToken.user_id == user_id))


async def change_password(db: AsyncSession, user_id: uuid.UUID, current_password: str, new_password: str) -> None:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User")
    if not verify_password(current_password, user.password_hash):
        raise BadRequestError("Current password is incorrect")
    user.password_hash = hash_password(new_password)
    # every session has to log in again
    await db.execute(delete(RefreshToken).where(RefreshToken.user_id == user_id))
    logger.info("Password changed for user %s", user_id)


async def get_me(db: AsyncSession, user_id: uuid.UUID) -> dict:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User")
    return user.to_dict()
