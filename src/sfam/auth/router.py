"""Authentication router: all /api/v1/auth/* endpoints."""

from __future__ import annotations

import uuid

import jwt as pyjwt
import structlog
from fastapi import APIRouter, Depends, HTTPException
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.auth.dependencies import get_current_user
from sfam.auth.jwt import create_access_token, create_refresh_token, verify_token
from sfam.auth.password import PasswordStrengthError
from sfam.auth.schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
)
from sfam.auth.service import (
    AuthError,
    DuplicateAccountError,
    authenticate_user,
    create_reset_token,
    get_refresh_token,
    get_user_by_email,
    get_user_by_id,
    hash_token,
    refresh_expiry,
    register_user,
    reset_password,
    revoke_all_tokens,
    revoke_refresh_token,
    rotate_refresh_token,
    store_refresh_token,
)
from sfam.config import get_settings
from sfam.database import get_session
from sfam.db.models import User
from sfam.dependencies import get_redis_dep
from sfam.email.service import get_email_service

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


async def _issue_tokens(db: AsyncSession, user: User) -> TokenResponse:
    """Create access + refresh tokens and store the refresh token hash."""
    settings = get_settings()
    token_id = str(uuid.uuid4())
    access_token = create_access_token(user.id, user.email, user.role)
    refresh_token = create_refresh_token(user.id, user.email, user.role, token_id=token_id)

    await store_refresh_token(
        db,
        user_id=user.id,
        token_id=token_id,
        token_hash=hash_token(refresh_token),
        expires_at=refresh_expiry(settings.jwt_refresh_token_expire_days),
    )
    await db.commit()

    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=settings.jwt_access_token_expire_minutes * 60,
        user=UserResponse.model_validate(user),
    )


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    body: RegisterRequest,
    db: AsyncSession = Depends(get_session),
) -> TokenResponse:
    try:
        user = await register_user(
            db,
            email=body.email,
            password=body.password,
            username=body.username,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    except PasswordStrengthError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except DuplicateAccountError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e

    try:
        await get_email_service().send_template(
            to=user.email,
            template_name="welcome",
            context={"name": user.first_name or user.username},
        )
    except Exception:
        logger.exception("welcome_email_failed", user_id=user.id)

    return await _issue_tokens(db, user)


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    db: AsyncSession = Depends(get_session),
) -> TokenResponse:
    try:
        user = await authenticate_user(db, body.email, body.password)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e)) from e
    return await _issue_tokens(db, user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    body: RefreshRequest,
    db: AsyncSession = Depends(get_session),
) -> TokenResponse:
    """Rotate a refresh token; replaying a revoked one revokes every session."""
    try:
        payload = verify_token(body.refresh_token, expected_type="refresh")
    except pyjwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    jti = payload.get("jti")
    if not jti:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    old_token = await get_refresh_token(db, jti)
    if old_token is None or old_token.token_hash != hash_token(body.refresh_token):
        raise HTTPException(status_code=401, detail="Refresh token not found")
    if old_token.is_revoked:
        await revoke_all_tokens(db, old_token.user_id)
        await db.commit()
        raise HTTPException(status_code=401, detail="Refresh token has been revoked")

    user = await get_user_by_id(db, old_token.user_id)
    if user is None or user.is_banned:
        raise HTTPException(status_code=401, detail="User not found")

    settings = get_settings()
    new_token_id = str(uuid.uuid4())
    new_access = create_access_token(user.id, user.email, user.role)
    new_refresh = create_refresh_token(user.id, user.email, user.role, token_id=new_token_id)
    await rotate_refresh_token(
        db,
        old_token=old_token,
        new_token_id=new_token_id,
        new_token_hash=hash_token(new_refresh),
        new_expires_at=refresh_expiry(settings.jwt_refresh_token_expire_days),
    )
    await db.commit()

    return TokenResponse(
        access_token=new_access,
        refresh_token=new_refresh,
        expires_in=settings.jwt_access_token_expire_minutes * 60,
        user=UserResponse.model_validate(user),
    )


@router.post("/logout")
async def logout(
    body: LogoutRequest,
    db: AsyncSession = Depends(get_session),
) -> dict[str, str]:
    try:
        payload = verify_token(body.refresh_token, expected_type="refresh")
    except pyjwt.InvalidTokenError:
        return {"status": "logged_out"}

    jti = payload.get("jti")
    if jti:
        await revoke_refresh_token(db, jti)
        await db.commit()
    return {"status": "logged_out"}


@router.post("/logout-all")
async def logout_all(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, int | str]:
    count = await revoke_all_tokens(db, user.id)
    await db.commit()
    return {"status": "all_sessions_revoked", "revoked_count": count}


@router.post("/forgot-password")
async def forgot_password(
    body: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_session),
    redis: Redis = Depends(get_redis_dep),  # type: ignore[assignment]
) -> dict[str, str]:
    """Always returns 200 so the endpoint cannot be used to probe accounts."""
    user = await get_user_by_email(db, body.email)
    if user is not None:
        try:
            raw_token = await create_reset_token(redis, user.id)
            reset_url = f"{get_settings().frontend_base_url}/auth/reset-password?token={raw_token}"
            await get_email_service().send_template(
                to=user.email,
                template_name="password_reset",
                context={"name": user.first_name or user.username, "reset_url": reset_url},
            )
        except Exception:
            logger.exception("password_reset_email_failed", user_id=user.id)
    return {"status": "reset_email_sent"}


@router.post("/reset-password")
async def reset_password_endpoint(
    body: ResetPasswordRequest,
    db: AsyncSession = Depends(get_session),
    redis: Redis = Depends(get_redis_dep),  # type: ignore[assignment]
) -> dict[str, str]:
    try:
        await reset_password(db, redis, body.token, body.new_password)
    except (AuthError, PasswordStrengthError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return {"status": "password_reset"}
