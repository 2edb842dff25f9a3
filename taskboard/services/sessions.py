"""
Session service: opaque login sessions and the selected tenant they carry.

Sessions belong to users, not tenants, so lookups go through the system
engine. Expiry is fixed at creation and never slides.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, update
from sqlmodel import select

from taskboard.core.config import get_settings
from taskboard.core.credentials import generate_token
from taskboard.core.database import Database
from taskboard.core.errors import Forbidden, Unauthorized
from taskboard.models.base import as_utc, utcnow
from taskboard.models.session import LoginSession
from taskboard.models.tenant import Tenant
from taskboard.models.user import User
from taskboard.services.memberships import get_role
from taskboard.services.tenants import get_default_tenant

log = structlog.get_logger()


class SessionState:
    """A validated session with its user and (optional) selected tenant."""

    def __init__(self, user: User, session: LoginSession, tenant: Optional[Tenant]):
        self.user = user
        self.session = session
        self.tenant = tenant
        self.user_id = user.id
        self.tenant_id = tenant.id if tenant else None


def new_session(
    user_id: uuid.UUID, tenant_id: Optional[uuid.UUID], *, now: datetime | None = None
) -> LoginSession:
    now = now or utcnow()
    return LoginSession(
        user_id=user_id,
        tenant_id=tenant_id,
        token=generate_token(),
        expires_at=now + timedelta(days=get_settings().session_duration_days),
        created_at=now,
    )


async def create_session(
    db: Database,
    user_id: uuid.UUID,
    tenant_id: Optional[uuid.UUID] = None,
    *,
    now: datetime | None = None,
) -> LoginSession:
    login = new_session(user_id, tenant_id, now=now)
    async with db.system() as session:
        session.add(login)
    log.info("session.created", user_id=str(user_id), tenant_id=str(tenant_id) if tenant_id else None)
    return login


async def validate_session(
    db: Database, token: str | None, *, now: datetime | None = None
) -> Optional[SessionState]:
    """Resolve a token to its session, or ``None`` if unknown or expired."""
    if not token:
        return None
    now = now or utcnow()
    async with db.system() as session:
        result = await session.execute(
            select(LoginSession, User)
            .join(User, User.id == LoginSession.user_id)
            .where(LoginSession.token == token)
        )
        row = result.first()
        if row is None:
            return None
        login, user = row
        if as_utc(login.expires_at) <= now:
            return None

        tenant = None
        if login.tenant_id is not None:
            tenant = await session.get(Tenant, login.tenant_id)
            if tenant is not None and not tenant.is_active:
                tenant = None
    return SessionState(user=user, session=login, tenant=tenant)


async def switch_tenant(
    db: Database, token: str, tenant_id: uuid.UUID, *, now: datetime | None = None
) -> SessionState:
    """Point the session at another tenant the user belongs to. The token is unchanged."""
    state = await validate_session(db, token, now=now)
    if state is None:
        raise Unauthorized("Invalid or expired session")
    if await get_role(db, state.user_id, tenant_id) is None:
        raise Forbidden("You do not have access to this organization")

    async with db.system() as session:
        await session.execute(
            update(LoginSession).where(LoginSession.token == token).values(tenant_id=tenant_id)
        )
        tenant = await session.get(Tenant, tenant_id)

    log.info("session.tenant_switched", user_id=str(state.user_id), tenant_id=str(tenant_id))
    state.session.tenant_id = tenant_id
    return SessionState(user=state.user, session=state.session, tenant=tenant)


async def delete_session(db: Database, token: str) -> None:
    async with db.system() as session:
        await session.execute(delete(LoginSession).where(LoginSession.token == token))


async def delete_all_sessions_for(db: Database, user_id: uuid.UUID) -> int:
    async with db.system() as session:
        result = await session.execute(delete(LoginSession).where(LoginSession.user_id == user_id))
    log.info("session.revoked_all", user_id=str(user_id), count=result.rowcount)
    return result.rowcount


async def reselect_tenant(
    db: Database, user_id: uuid.UUID, removed_tenant_id: uuid.UUID
) -> Optional[uuid.UUID]:
    """Repoint the user's sessions away from a tenant they no longer belong to."""
    fallback = await get_default_tenant(db, user_id)
    fallback_id = fallback.id if fallback else None
    async with db.system() as session:
        await session.execute(
            update(LoginSession)
            .where(LoginSession.user_id == user_id, LoginSession.tenant_id == removed_tenant_id)
            .values(tenant_id=fallback_id)
        )
    return fallback_id
