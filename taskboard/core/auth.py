"""
Authorization middleware for Taskboard, as FastAPI dependencies.

Supports:
- Machine auth: ``Authorization: Bearer tk_...`` keys bound to one tenant
- Human auth: opaque session token cookie carrying the selected tenant
- Unified guard: session first, then a user-bound machine key
- Role-based authorization on the session's selected tenant

Guards only read; the single write is the ``last_used_at`` stamp on a key.
"""

from __future__ import annotations

from typing import Iterable, Optional

import structlog
from fastapi import Depends, Request
from fastapi.security import APIKeyCookie, APIKeyHeader

from taskboard.core.config import get_settings
from taskboard.core.database import Database
from taskboard.core.errors import BadRequest, Forbidden, Unauthorized
from taskboard.core.notifications import NotificationDispatcher
from taskboard.models.api_key import ApiKey
from taskboard.models.session import LoginSession
from taskboard.models.tenant import Tenant
from taskboard.models.user import User
from taskboard.services.accounts import validate_api_key
from taskboard.services.memberships import get_role
from taskboard.services.sessions import validate_session
from taskboard_shared.schemas.common import MANAGER_ROLES, Role

log = structlog.get_logger()
settings = get_settings()

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)
session_cookie = APIKeyCookie(name=settings.session_cookie_name, auto_error=False)

NO_TENANT = "No organization context. Please select an organization."
NO_ACCESS = "You do not have access to this organization"


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

def get_db(request: Request) -> Database:
    return request.app.state.db


def get_notifications(request: Request) -> NotificationDispatcher:
    return request.app.state.notifications


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

class AuthContext:
    """Container for the resolved identity and its tenant context."""

    def __init__(
        self,
        *,
        user: Optional[User] = None,
        session: Optional[LoginSession] = None,
        tenant: Optional[Tenant] = None,
        api_key: Optional[ApiKey] = None,
        role: Optional[Role] = None,
        is_admin: bool = False,
    ):
        self.user = user
        self.session = session
        self.tenant = tenant
        self.api_key = api_key
        self.role = role
        self.is_admin = is_admin

    @property
    def user_id(self):
        return self.user.id if self.user else None

    @property
    def tenant_id(self):
        return self.tenant.id if self.tenant else None


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

async def require_tenant_key(
    authorization: Optional[str] = Depends(api_key_header),
    db: Database = Depends(get_db),
) -> AuthContext:
    """Machine callers: the key alone determines the tenant."""
    key = _bearer(authorization)
    if not key:
        raise Unauthorized("Missing API key")
    state = await validate_api_key(db, key)
    if state is None:
        raise Unauthorized("Invalid API key")
    return AuthContext(user=state.user, tenant=state.tenant, api_key=state.api_key)


async def require_session(
    token: Optional[str] = Depends(session_cookie),
    db: Database = Depends(get_db),
) -> AuthContext:
    """Human callers: the session carries the user and the selected tenant (maybe none)."""
    if not token:
        raise Unauthorized("Not authenticated")
    state = await validate_session(db, token)
    if state is None:
        raise Unauthorized("Invalid or expired session")
    return AuthContext(user=state.user, session=state.session, tenant=state.tenant)


async def require_user(
    token: Optional[str] = Depends(session_cookie),
    authorization: Optional[str] = Depends(api_key_header),
    db: Database = Depends(get_db),
) -> AuthContext:
    """Either a live session or a machine key that is bound to a user."""
    if token:
        state = await validate_session(db, token)
        if state is not None:
            return AuthContext(user=state.user, session=state.session, tenant=state.tenant)

    key = _bearer(authorization)
    if key:
        key_state = await validate_api_key(db, key)
        if key_state is not None and key_state.user is not None:
            return AuthContext(
                user=key_state.user, tenant=key_state.tenant, api_key=key_state.api_key
            )
        raise Unauthorized("Invalid API key")

    if token:
        raise Unauthorized("Invalid or expired session")
    raise Unauthorized("Not authenticated")


# ---------------------------------------------------------------------------
# Authorization (role checks)
# ---------------------------------------------------------------------------

def authorize_role(ctx: AuthContext, role: Optional[Role], allowed: Iterable[Role]) -> AuthContext:
    """Pure role decision: attaches ``role`` to ``ctx`` or raises."""
    if ctx.tenant is None:
        raise BadRequest(NO_TENANT)
    if role is None:
        raise Forbidden(NO_ACCESS)
    if role not in tuple(allowed):
        raise Forbidden("Insufficient permissions for this organization")
    ctx.role = role
    return ctx


def require_role(*roles: Role):
    """Dependency factory: the session's selected tenant must grant one of ``roles``."""
    allowed = tuple(Role(r) for r in roles) or tuple(Role)

    async def dependency(
        ctx: AuthContext = Depends(require_session),
        db: Database = Depends(get_db),
    ) -> AuthContext:
        if ctx.tenant is None:
            raise BadRequest(NO_TENANT)
        role = await get_role(db, ctx.user.id, ctx.tenant.id)
        if role is None:
            log.warning(
                "auth.tenant_access_denied",
                user_id=str(ctx.user.id),
                tenant_id=str(ctx.tenant.id),
            )
        return authorize_role(ctx, role, allowed)

    return dependency


require_member = require_role(Role.OWNER, Role.ADMIN, Role.MEMBER)
require_manager = require_role(*MANAGER_ROLES)
require_owner = require_role(Role.OWNER)
