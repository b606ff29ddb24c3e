from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header

from tokenwarden.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetResponse,
    RegisterRequest,
    TokenRefreshRequest,
    UserResponse,
)
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import UserNotFound
from tokenwarden.service.lifecycle import AuthContext, AuthResult
from tokenwarden.service.runtime import get_runtime
from tokenwarden.storage.models import User

logger = get_logger(__name__)

router = APIRouter()

_RESET_REQUESTED_MESSAGE = "if the account exists, a password reset link has been sent"


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(id=user.id, name=user.name, email=user.email)


def _auth_response(result: AuthResult) -> AuthResponse:
    settings = get_runtime().settings
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=settings.access_token_ttl_hours * 3600,
        user=_user_to_response(result.user),
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.lifecycle.authenticate, authorization)


@router.get("/health", response_model=Envelope, tags=["system"])
async def health():
    return Envelope(status="ok", data={"status": "ok"})


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a new account and return its first token pair.

    Raises:
        409: If the email is already registered
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.lifecycle.register, body.name, body.email, body.password
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.lifecycle.login, body.email, body.password
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    """Exchange a refresh token for a new token pair.

    Raises:
        401: If the refresh token is invalid, expired or superseded
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.lifecycle.refresh_tokens, body.refresh_token
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    # Blocking SMTP runs in the worker thread along with the manager call
    token = await asyncio.to_thread(runtime.lifecycle.forgot_password, body.email)
    # Same response whether or not the account exists
    data = PasswordResetResponse(message=_RESET_REQUESTED_MESSAGE)
    if runtime.settings.expose_reset_token:
        data.reset_token = token
    return Envelope(status="ok", data=data)


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    """Set a new password using a reset token.

    Raises:
        401: If the token is invalid, expired or already used
        404: If the account no longer exists
    """
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.lifecycle.reset_password, body.token, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(message="password has been reset"))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.lifecycle.blacklist_token, principal.raw_token)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.get_user, principal.subject_id)
    if not user:
        raise UserNotFound()
    return Envelope(status="ok", data=_user_to_response(user))
