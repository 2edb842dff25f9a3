"""
Tenant service: organization creation, slugs, and membership-based listing.
"""

from __future__ import annotations

import re
import uuid
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from taskboard.core.database import Database
from taskboard.core.errors import Conflict, NotFound
from taskboard.models.membership import Membership
from taskboard.models.tenant import Tenant
from taskboard.services.memberships import get_role
from taskboard_shared.schemas.common import Role

log = structlog.get_logger()

SLUG_MAX_LENGTH = 100
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    slug = _NON_ALNUM.sub("-", name.lower()).strip("-")[:SLUG_MAX_LENGTH].strip("-")
    return slug or "org"


async def unique_slug(session: AsyncSession, name: str) -> str:
    """First free slug among ``base``, ``base-1``, ``base-2``..."""
    base = slugify(name)
    candidate = base
    counter = 0
    while True:
        result = await session.execute(select(Tenant.id).where(Tenant.slug == candidate))
        if result.first() is None:
            return candidate
        counter += 1
        suffix = f"-{counter}"
        candidate = f"{base[: SLUG_MAX_LENGTH - len(suffix)]}{suffix}"


async def add_tenant_with_owner(
    session: AsyncSession, tenant_id: uuid.UUID, owner_id: uuid.UUID, name: str
) -> tuple[Tenant, Membership]:
    """Insert a tenant and its owner membership on a session already bound to ``tenant_id``."""
    tenant = Tenant(id=tenant_id, name=name, slug=await unique_slug(session, name))
    session.add(tenant)
    membership = Membership(user_id=owner_id, tenant_id=tenant_id, role=Role.OWNER.value)
    session.add(membership)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise Conflict("Organization slug already taken, please retry") from exc
    return tenant, membership


async def create_tenant(
    db: Database, owner_id: uuid.UUID, name: str
) -> tuple[Tenant, Membership]:
    """Create a tenant and make ``owner_id`` its owner, atomically."""
    tenant_id = uuid.uuid4()
    async with db.executor.tenant_transaction(tenant_id) as session:
        tenant, membership = await add_tenant_with_owner(session, tenant_id, owner_id, name)

    log.info("tenant.created", tenant_id=str(tenant.id), slug=tenant.slug, owner=str(owner_id))
    return tenant, membership


async def get_tenant(db: Database, tenant_id: uuid.UUID) -> Tenant:
    """Get an active tenant; raises 404 otherwise."""
    async with db.system() as session:
        tenant = await session.get(Tenant, tenant_id)
    if tenant is None or not tenant.is_active:
        raise NotFound("Organization not found")
    return tenant


async def list_user_tenants(db: Database, user_id: uuid.UUID) -> list[dict]:
    """Active tenants the user belongs to, with role, oldest membership first."""
    async with db.system() as session:
        result = await session.execute(
            select(Tenant, Membership.role, Membership.created_at)
            .join(Membership, Membership.tenant_id == Tenant.id)
            .where(Membership.user_id == user_id, Tenant.is_active == True)  # noqa: E712
            .order_by(Membership.created_at, Tenant.created_at)
        )
        rows = result.all()
    return [
        {
            "id": tenant.id,
            "name": tenant.name,
            "slug": tenant.slug,
            "role": Role(role),
            "joined_at": joined_at,
        }
        for tenant, role, joined_at in rows
    ]


async def get_default_tenant(db: Database, user_id: uuid.UUID) -> Optional[Tenant]:
    async with db.system() as session:
        result = await session.execute(
            select(Tenant)
            .join(Membership, Membership.tenant_id == Tenant.id)
            .where(Membership.user_id == user_id, Tenant.is_active == True)  # noqa: E712
            .order_by(Membership.created_at, Tenant.created_at)
            .limit(1)
        )
        return result.scalars().first()


async def user_belongs_to_tenant(
    db: Database, user_id: uuid.UUID, tenant_id: uuid.UUID
) -> bool:
    return await get_role(db, user_id, tenant_id) is not None

