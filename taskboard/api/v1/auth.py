"""
Authentication endpoints.

- Email/Password signup & signin
- Opaque session cookie management (signout, current user)
- Password reset request/confirm
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Response

from taskboard.core.auth import (
    AuthContext,
    get_db,
    get_notifications,
    require_session,
    session_cookie,
)
from taskboard.core.config import get_settings
from taskboard.core.credentials import generate_csrf_token
from taskboard.core.database import Database
from taskboard.core.notifications import NotificationDispatcher
from taskboard.services import accounts
from taskboard.services.sessions import delete_session
from taskboard_shared.schemas.auth import (
    AuthResponse,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    SigninRequest,
    SignupRequest,
    UserPublic,
)
from taskboard_shared.schemas.organizations import OrgResponse

log = structlog.get_logger()
settings = get_settings()
router = APIRouter()

RESET_REQUESTED = "If an account exists for that email, a reset link has been sent"

# Cookie config
COOKIE_KWARGS = {
    "secure": not settings.debug,  # allow non-HTTPS in dev
    "samesite": "lax",
    "path": "/",
    "max_age": settings.session_duration_days * 24 * 60 * 60,
}


def _set_session_cookies(response: Response, token: str, csrf: str) -> None:
    """Set the session token and CSRF cookies on a response."""
    response.set_cookie(key=settings.session_cookie_name, value=token, httponly=True, **COOKIE_KWARGS)
    # JS must read the CSRF cookie to echo it back in the header
    response.set_cookie(key=settings.csrf_cookie_name, value=csrf, httponly=False, **COOKIE_KWARGS)


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(settings.session_cookie_name, path="/")
    response.delete_cookie(settings.csrf_cookie_name, path="/")


# ---------------------------------------------------------------------------
# Signup / signin
# ---------------------------------------------------------------------------

@router.post("/signup", response_model=AuthResponse, status_code=201)
async def signup(
    body: SignupRequest,
    response: Response,
    db: Database = Depends(get_db),
    notifications: NotificationDispatcher = Depends(get_notifications),
):
    """Register a user. Every new user gets an organization of their own."""
    user, tenant, login = await accounts.signup(
        db, body.email, body.username, body.password, notifications=notifications
    )
    _set_session_cookies(response, login.token, generate_csrf_token())
    return AuthResponse(
        user=UserPublic.model_validate(user),
        organization=OrgResponse.model_validate(tenant),
    )


@router.post("/signin", response_model=AuthResponse)
async def signin(
    body: SigninRequest,
    response: Response,
    db: Database = Depends(get_db),
):
    """Authenticate with email or username and receive a session cookie."""
    user, login, tenant = await accounts.signin(db, body.identifier, body.password)
    _set_session_cookies(response, login.token, generate_csrf_token())
    return AuthResponse(
        user=UserPublic.model_validate(user),
        organization=OrgResponse.model_validate(tenant) if tenant else None,
    )


# ---------------------------------------------------------------------------
# Session Management
# ---------------------------------------------------------------------------

@router.post("/signout", response_model=MessageResponse)
async def signout(
    response: Response,
    token: str | None = Depends(session_cookie),
    db: Database = Depends(get_db),
):
    """Delete the current session, if any, and clear cookies."""
    if token:
        await delete_session(db, token)
    _clear_session_cookies(response)
    return MessageResponse(message="Signed out")


@router.get("/me", response_model=AuthResponse)
async def me(ctx: AuthContext = Depends(require_session)):
    return AuthResponse(
        user=UserPublic.model_validate(ctx.user),
        organization=OrgResponse.model_validate(ctx.tenant) if ctx.tenant else None,
    )


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------

@router.post("/password-reset/request", response_model=MessageResponse, status_code=202)
async def request_password_reset(
    body: PasswordResetRequest,
    db: Database = Depends(get_db),
    notifications: NotificationDispatcher = Depends(get_notifications),
):
    """Same response whether or not the email belongs to an account."""
    await accounts.request_password_reset(db, body.email, notifications=notifications)
    return MessageResponse(message=RESET_REQUESTED)


@router.post("/password-reset/confirm", response_model=MessageResponse)
async def confirm_password_reset(
    body: PasswordResetConfirm,
    response: Response,
    db: Database = Depends(get_db),
):
    """Set a new password. Every existing session of the user is ended."""
    await accounts.reset_password(db, body.token, body.password)
    _clear_session_cookies(response)
    return MessageResponse(message="Password has been reset. Please sign in again.")
