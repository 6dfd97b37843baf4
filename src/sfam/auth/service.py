"""
Authentication business logic.

Handles account creation, credential checks, refresh-token rotation and the
password reset flow. Reset tokens live in Redis with a TTL; only their
SHA-256 hash is stored.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func, select, update

from sfam.auth.password import (
    check_needs_rehash,
    hash_password,
    validate_password_strength,
    verify_password,
)
from sfam.db.models import RefreshToken, User, UserSettings
from sfam.storage.service import get_or_create_storage
from sfam.wallet.service import get_or_create_wallet

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

PASSWORD_RESET_TTL_SECONDS = 3600


class AuthError(ValueError):
    """Invalid credentials or token."""


class DuplicateAccountError(ValueError):
    """Email or username already taken."""


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


# ---------------------------------------------------------------------------
# User queries
# ---------------------------------------------------------------------------


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    """Fetch a user by email (case-insensitive)."""
    result = await db.execute(select(User).where(func.lower(User.email) == email.lower().strip()))
    return result.scalar_one_or_none()


async def get_user_by_username(db: AsyncSession, username: str) -> User | None:
    result = await db.execute(select(User).where(User.username_normalized == username.lower().strip()))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Registration / login
# ---------------------------------------------------------------------------


async def register_user(
    db: AsyncSession,
    email: str,
    password: str,
    username: str,
    first_name: str | None = None,
    last_name: str | None = None,
) -> User:
    """
    Create an account together with its settings, wallet and storage rows.

    Raises:
        PasswordStrengthError: If the password is too weak.
        DuplicateAccountError: If the email or username is taken.
    """
    validate_password_strength(password)

    if await get_user_by_email(db, email) is not None:
        msg = "Email already registered"
        raise DuplicateAccountError(msg)
    if await get_user_by_username(db, username) is not None:
        msg = "Username already taken"
        raise DuplicateAccountError(msg)

    now = datetime.now(timezone.utc)
    user = User(
        email=email.lower().strip(),
        username=username.strip(),
        username_normalized=username.lower().strip(),
        first_name=first_name,
        last_name=last_name,
        password_hash=hash_password(password),
        role="user",
        created_at=now,
        last_login=now,
    )
    db.add(user)
    await db.flush()

    db.add(UserSettings(user_id=user.id, notifications={}, updated_at=now))
    await get_or_create_wallet(db, user.id)
    await get_or_create_storage(db, user.id)
    await db.flush()
    logger.info("user_created", user_id=user.id)
    return user


async def authenticate_user(db: AsyncSession, email: str, password: str) -> User:
    """
    Check email + password.

    Raises:
        AuthError: If credentials are invalid.
        PermissionError: If the account is banned.
    """
    user = await get_user_by_email(db, email)
    if user is None or not verify_password(password, user.password_hash or ""):
        msg = "Invalid email or password"
        raise AuthError(msg)
    if user.is_banned:
        msg = "Account is banned"
        raise PermissionError(msg)

    user.last_login = datetime.now(timezone.utc)
    if user.password_hash and check_needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
        logger.info("password_rehashed", user_id=user.id)
    await db.flush()
    return user


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


async def store_refresh_token(
    db: AsyncSession,
    user_id: int,
    token_id: str,
    token_hash: str,
    expires_at: datetime,
) -> RefreshToken:
    token = RefreshToken(
        id=token_id,
        user_id=user_id,
        token_hash=token_hash,
        issued_at=datetime.now(timezone.utc),
        expires_at=expires_at,
    )
    db.add(token)
    await db.flush()
    return token


async def get_refresh_token(db: AsyncSession, token_id: str) -> RefreshToken | None:
    result = await db.execute(select(RefreshToken).where(RefreshToken.id == token_id))
    return result.scalar_one_or_none()


async def rotate_refresh_token(
    db: AsyncSession,
    old_token: RefreshToken,
    new_token_id: str,
    new_token_hash: str,
    new_expires_at: datetime,
) -> RefreshToken:
    """Revoke old token and create its replacement."""
    old_token.is_revoked = True
    old_token.revoked_at = datetime.now(timezone.utc)
    old_token.replaced_by = new_token_id
    return await store_refresh_token(
        db,
        user_id=old_token.user_id,
        token_id=new_token_id,
        token_hash=new_token_hash,
        expires_at=new_expires_at,
    )


async def revoke_refresh_token(db: AsyncSession, token_id: str) -> bool:
    """Revoke a specific refresh token. Returns True if found."""
    token = await get_refresh_token(db, token_id)
    if token is None:
        return False
    token.is_revoked = True
    token.revoked_at = datetime.now(timezone.utc)
    await db.flush()
    return True


async def revoke_all_tokens(db: AsyncSession, user_id: int) -> int:
    """Revoke all refresh tokens for a user. Returns count revoked."""
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id)
        .where(RefreshToken.is_revoked == False)  # noqa: E712
        .values(is_revoked=True, revoked_at=datetime.now(timezone.utc))
    )
    await db.flush()
    return result.rowcount  # type: ignore[return-value]


def refresh_expiry(days: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


async def create_reset_token(redis: Redis, user_id: int) -> str:
    """Store a single-use reset token; returns the raw token for the email link."""
    raw_token = secrets.token_urlsafe(48)
    await redis.set(f"pwreset:{hash_token(raw_token)}", str(user_id), ex=PASSWORD_RESET_TTL_SECONDS)
    return raw_token


async def reset_password(db: AsyncSession, redis: Redis, raw_token: str, new_password: str) -> User:
    """
    Consume a reset token and set a new password.

    All refresh tokens are revoked so other sessions must log in again.
    """
    validate_password_strength(new_password)
    user_id = await redis.getdel(f"pwreset:{hash_token(raw_token)}")
    if user_id is None:
        msg = "Invalid or expired reset token"
        raise AuthError(msg)

    user = await get_user_by_id(db, int(user_id))
    if user is None:
        msg = "Invalid or expired reset token"
        raise AuthError(msg)

    user.password_hash = hash_password(new_password)
    await revoke_all_tokens(db, user.id)
    logger.info("password_reset", user_id=user.id)
    return user
