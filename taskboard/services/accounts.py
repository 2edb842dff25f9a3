"""
Account service: signup, signin, the password-reset boundary, and machine keys.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from taskboard.core.config import get_settings
from taskboard.core.credentials import (
    MACHINE_KEY_PREFIX,
    MAX_SECRET_BYTES,
    fits_bcrypt,
    generate_machine_key,
    generate_token,
    hash_password,
    hash_secret,
    is_machine_key,
    key_hint,
    verify_dummy,
    verify_password,
    verify_secret,
)
from taskboard.core.database import Database
from taskboard.core.errors import BadRequest, Conflict, Unauthorized
from taskboard.core.notifications import (
    PASSWORD_RESET_REQUESTED,
    USER_WELCOME,
    Notification,
    NotificationDispatcher,
)
from taskboard.models.api_key import ApiKey
from taskboard.models.base import as_utc, utcnow
from taskboard.models.password_reset import PasswordResetToken
from taskboard.models.session import LoginSession
from taskboard.models.tenant import Tenant
from taskboard.models.user import User
from taskboard.services.sessions import create_session, new_session
from taskboard.services.tenants import add_tenant_with_owner, get_default_tenant

log = structlog.get_logger()

MIN_PASSWORD_LENGTH = 8
INVALID_CREDENTIALS = "Invalid credentials"


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise BadRequest(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not fits_bcrypt(password):
        raise BadRequest(f"Password must be at most {MAX_SECRET_BYTES} bytes")


# ---------------------------------------------------------------------------
# Signup / signin
# ---------------------------------------------------------------------------

async def signup(
    db: Database,
    email: str,
    username: str,
    password: str,
    *,
    notifications: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> tuple[User, Tenant, LoginSession]:
    """Create a user, their own organization, and a session, in one transaction."""
    _check_password(password)
    email = email.strip().lower()

    async with db.system() as session:
        result = await session.execute(
            select(User.email, User.username).where(
                or_(User.email == email, User.username == username)
            )
        )
        for taken_email, taken_username in result.all():
            if taken_email == email:
                raise Conflict("An account with this email already exists")
            if taken_username == username:
                raise Conflict("This username is already taken")

    user = User(email=email, username=username, password_hash=hash_password(password))
    tenant_id = uuid.uuid4()
    login = new_session(user.id, tenant_id, now=now)
    async with db.executor.tenant_transaction(tenant_id) as session:
        session.add(user)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise Conflict("An account with this email or username already exists") from exc
        tenant, _ = await add_tenant_with_owner(
            session, tenant_id, user.id, f"{username}'s Organization"
        )
        session.add(login)
        await session.flush()

    log.info("user.signed_up", user_id=str(user.id), tenant_id=str(tenant.id))
    if notifications is not None:
        notifications.emit(
            Notification(
                kind=USER_WELCOME,
                recipient=user.email,
                data={"username": user.username, "organization_name": tenant.name},
            )
        )
    return user, tenant, login


async def signin(
    db: Database, identifier: str, password: str, *, now: datetime | None = None
) -> tuple[User, LoginSession, Optional[Tenant]]:
    """Authenticate by email or username. Unknown users and wrong passwords look the same."""
    ident = identifier.strip()
    async with db.system() as session:
        result = await session.execute(
            select(User).where(or_(User.email == ident.lower(), User.username == ident))
        )
        user = result.scalars().first()

    if user is None:
        verify_dummy(password)
        log.warning("auth.signin_failure", reason="unknown_user")
        raise Unauthorized(INVALID_CREDENTIALS)
    if not verify_password(password, user.password_hash):
        log.warning("auth.signin_failure", user_id=str(user.id), reason="bad_password")
        raise Unauthorized(INVALID_CREDENTIALS)

    tenant = await get_default_tenant(db, user.id)
    login = await create_session(db, user.id, tenant.id if tenant else None, now=now)
    log.info("auth.signin", user_id=str(user.id))
    return user, login, tenant


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------

async def request_password_reset(
    db: Database,
    email: str,
    *,
    notifications: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> None:
    """Issue a reset token if the account exists. The caller's response never differs."""
    now = now or utcnow()
    email = email.strip().lower()
    async with db.system() as session:
        result = await session.execute(select(User).where(User.email == email))
        user = result.scalars().first()
        if user is None:
            log.info("password_reset.unknown_email")
            return
        reset = PasswordResetToken(
            user_id=user.id,
            token=generate_token(),
            expires_at=now + timedelta(hours=get_settings().password_reset_expiry_hours),
            created_at=now,
        )
        session.add(reset)

    log.info("password_reset.requested", user_id=str(user.id))
    if notifications is not None:
        notifications.emit(
            Notification(
                kind=PASSWORD_RESET_REQUESTED,
                recipient=user.email,
                data={"token": reset.token, "expires_at": reset.expires_at.isoformat()},
            )
        )


async def reset_password(
    db: Database, token: str, new_password: str, *, now: datetime | None = None
) -> User:
    """Set a new password and end every session of the user."""
    _check_password(new_password)
    now = now or utcnow()
    async with db.system() as session:
        result = await session.execute(
            select(PasswordResetToken).where(PasswordResetToken.token == token).with_for_update()
        )
        reset = result.scalars().first()
        if reset is None or reset.used_at is not None or as_utc(reset.expires_at) <= now:
            raise BadRequest("Invalid or expired reset token")

        user = await session.get(User, reset.user_id)
        user.password_hash = hash_password(new_password)
        user.updated_at = now
        session.add(user)
        reset.used_at = now
        session.add(reset)
        await session.execute(delete(LoginSession).where(LoginSession.user_id == user.id))

    log.info("password_reset.completed", user_id=str(user.id))
    return user


# ---------------------------------------------------------------------------
# Machine keys
# ---------------------------------------------------------------------------

class ApiKeyState:
    """A validated machine key with the one tenant it is bound to."""

    def __init__(self, api_key: ApiKey, tenant: Tenant, user: Optional[User] = None):
        self.api_key = api_key
        self.tenant = tenant
        self.user = user
        self.tenant_id = tenant.id


async def create_api_key(
    db: Database,
    tenant_id: uuid.UUID,
    *,
    name: str | None = None,
    expires_at: datetime | None = None,
    user_id: uuid.UUID | None = None,
) -> tuple[str, ApiKey]:
    """Create a key. The plaintext is returned once and never stored."""
    plaintext = generate_machine_key()
    api_key = ApiKey(
        tenant_id=tenant_id,
        user_id=user_id,
        key_hint=key_hint(plaintext),
        key_hash=hash_secret(plaintext),
        name=name,
        expires_at=expires_at,
    )
    async with db.executor.tenant_transaction(tenant_id) as session:
        session.add(api_key)

    log.info(
        "api_key.created",
        tenant_id=str(tenant_id),
        api_key_id=str(api_key.id),
        prefix=MACHINE_KEY_PREFIX,
    )
    return plaintext, api_key


async def validate_api_key(
    db: Database, key: str | None, *, now: datetime | None = None
) -> Optional[ApiKeyState]:
    """Resolve a key to its tenant. ``None`` for unknown, wrong, expired or inactive keys alike."""
    if not key or not is_machine_key(key):
        verify_dummy(key or "")
        return None
    now = now or utcnow()

    async with db.system() as session:
        result = await session.execute(
            select(ApiKey, Tenant)
            .join(Tenant, Tenant.id == ApiKey.tenant_id)
            .where(
                ApiKey.key_hint == key_hint(key),
                ApiKey.is_active == True,  # noqa: E712
                Tenant.is_active == True,  # noqa: E712
            )
        )
        candidates = [
            (api_key, tenant)
            for api_key, tenant in result.all()
            if api_key.expires_at is None or as_utc(api_key.expires_at) > now
        ]
        if not candidates:
            verify_dummy(key)
            return None

        for api_key, tenant in candidates:
            if not verify_secret(key, api_key.key_hash):
                continue
            api_key.last_used_at = now
            session.add(api_key)
            user = await session.get(User, api_key.user_id) if api_key.user_id else None
            return ApiKeyState(api_key=api_key, tenant=tenant, user=user)

    log.warning("api_key.rejected", prefix=MACHINE_KEY_PREFIX)
    return None
