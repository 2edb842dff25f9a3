"""
Membership service: roles, member management and ownership transfer.

Every operation runs inside one tenant transaction, so row-level security
limits it to the tenant in question and any rejection rolls back.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from taskboard.core.database import Database
from taskboard.core.errors import BadRequest, Conflict, Forbidden, NotFound
from taskboard.models.membership import Membership
from taskboard.models.tenant import Tenant
from taskboard.models.user import User
from taskboard_shared.schemas.common import Role
from taskboard_shared.schemas.members import MemberResponse

log = structlog.get_logger()

NO_ACCESS = "You do not have access to this organization"


async def get_membership(
    session: AsyncSession,
    user_id: uuid.UUID,
    tenant_id: uuid.UUID,
    *,
    lock: bool = False,
) -> Optional[Membership]:
    """The user's membership in an active tenant, optionally locked for update."""
    stmt = (
        select(Membership)
        .join(Tenant, Tenant.id == Membership.tenant_id)
        .where(
            Membership.user_id == user_id,
            Membership.tenant_id == tenant_id,
            Tenant.is_active == True,  # noqa: E712
        )
    )
    if lock:
        stmt = stmt.with_for_update(of=Membership)
    result = await session.execute(stmt)
    return result.scalars().first()


async def _require_manager(
    session: AsyncSession, actor_id: uuid.UUID, tenant_id: uuid.UUID, detail: str
) -> Role:
    actor = await get_membership(session, actor_id, tenant_id)
    if actor is None:
        raise Forbidden(NO_ACCESS)
    role = Role(actor.role)
    if not role.at_least(Role.ADMIN):
        raise Forbidden(detail)
    return role


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_role(db: Database, user_id: uuid.UUID, tenant_id: uuid.UUID) -> Optional[Role]:
    async with db.executor.tenant_transaction(tenant_id) as session:
        membership = await get_membership(session, user_id, tenant_id)
    return Role(membership.role) if membership else None


async def list_members(
    db: Database, tenant_id: uuid.UUID, *, search: str | None = None
) -> list[MemberResponse]:
    """Members of an active tenant in the order they joined.

    ``search`` keeps members whose username or email contains it, ignoring case.
    """
    stmt = (
        select(User, Membership)
        .join(Membership, Membership.user_id == User.id)
        .join(Tenant, Tenant.id == Membership.tenant_id)
        .where(Membership.tenant_id == tenant_id, Tenant.is_active == True)  # noqa: E712
        .order_by(Membership.created_at, User.username)
    )
    term = (search or "").strip().lower()
    if term:
        stmt = stmt.where(
            or_(
                func.lower(User.username).contains(term, autoescape=True),
                func.lower(User.email).contains(term, autoescape=True),
            )
        )
    async with db.executor.tenant_transaction(tenant_id) as session:
        result = await session.execute(stmt)
        rows = result.all()
    return [
        MemberResponse(
            user_id=user.id,
            email=user.email,
            username=user.username,
            role=Role(m.role),
            joined_at=m.created_at,
        )
        for user, m in rows
    ]


async def count_owners(db: Database, tenant_id: uuid.UUID) -> int:
    async with db.executor.tenant_transaction(tenant_id) as session:
        result = await session.execute(
            select(func.count())
            .select_from(Membership)
            .where(Membership.tenant_id == tenant_id, Membership.role == Role.OWNER.value)
        )
        return result.scalar_one()


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

async def add_member(
    db: Database,
    tenant_id: uuid.UUID,
    actor_id: uuid.UUID,
    user_id: uuid.UUID,
    role: Role = Role.MEMBER,
) -> Membership:
    """Add an existing user to the tenant as admin or member."""
    role = Role(role)
    if role == Role.OWNER:
        raise BadRequest("Ownership can only be assigned by transferring it")

    async with db.executor.tenant_transaction(tenant_id) as session:
        await _require_manager(
            session, actor_id, tenant_id, "Only organization owners and admins can add members"
        )
        if await session.get(User, user_id) is None:
            raise NotFound("User not found")
        if await get_membership(session, user_id, tenant_id) is not None:
            raise Conflict("This user is already a member of the organization")

        membership = Membership(user_id=user_id, tenant_id=tenant_id, role=role.value)
        session.add(membership)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise Conflict("This user is already a member of the organization") from exc

    log.info(
        "membership.added",
        tenant_id=str(tenant_id),
        user_id=str(user_id),
        role=role.value,
        actor=str(actor_id),
    )
    return membership


async def remove_member(
    db: Database, tenant_id: uuid.UUID, actor_id: uuid.UUID, user_id: uuid.UUID
) -> None:
    if actor_id == user_id:
        raise BadRequest("Use leave to remove yourself from an organization")

    async with db.executor.tenant_transaction(tenant_id) as session:
        actor_role = await _require_manager(
            session, actor_id, tenant_id, "Only organization owners and admins can remove members"
        )
        target = await get_membership(session, user_id, tenant_id, lock=True)
        if target is None:
            raise NotFound("Member not found")
        target_role = Role(target.role)
        if target_role == Role.OWNER:
            raise Forbidden("Cannot remove the organization owner")
        if not actor_role.outranks(target_role):
            raise Forbidden("Admins can only remove members")

        await session.delete(target)
        await session.flush()

    log.info(
        "membership.removed",
        tenant_id=str(tenant_id),
        user_id=str(user_id),
        actor=str(actor_id),
    )


async def leave(db: Database, tenant_id: uuid.UUID, user_id: uuid.UUID) -> None:
    async with db.executor.tenant_transaction(tenant_id) as session:
        membership = await get_membership(session, user_id, tenant_id, lock=True)
        if membership is None:
            raise NotFound("You are not a member of this organization")
        if membership.role == Role.OWNER.value:
            raise BadRequest("Transfer ownership before leaving the organization")

        await session.delete(membership)
        await session.flush()

    log.info("membership.left", tenant_id=str(tenant_id), user_id=str(user_id))


async def change_role(
    db: Database,
    tenant_id: uuid.UUID,
    actor_id: uuid.UUID,
    user_id: uuid.UUID,
    new_role: Role,
) -> Membership:
    """
    Change a member's role.

    Owners may promote and demote admins and members. Admins may only promote
    members to admin. The owner role moves exclusively through
    ``transfer_ownership``.
    """
    new_role = Role(new_role)
    if new_role == Role.OWNER:
        raise BadRequest("Use transfer ownership to make someone the owner")
    if actor_id == user_id:
        raise BadRequest("You cannot change your own role")

    async with db.executor.tenant_transaction(tenant_id) as session:
        actor_role = await _require_manager(
            session, actor_id, tenant_id, "Only organization owners and admins can change roles"
        )
        target = await get_membership(session, user_id, tenant_id, lock=True)
        if target is None:
            raise NotFound("Member not found")
        old_role = Role(target.role)
        if old_role == Role.OWNER:
            raise Forbidden("Cannot change the role of the organization owner")
        if actor_role == Role.ADMIN:
            if old_role != Role.MEMBER:
                raise Forbidden("Admins can only change the role of members")
            if not new_role.at_least(old_role):
                raise Forbidden("Admins cannot demote members")

        target.role = new_role.value
        session.add(target)
        await session.flush()

    log.info(
        "membership.role_changed",
        tenant_id=str(tenant_id),
        user_id=str(user_id),
        old_role=old_role.value,
        new_role=new_role.value,
        actor=str(actor_id),
    )
    return target


async def transfer_ownership(
    db: Database,
    tenant_id: uuid.UUID,
    from_user_id: uuid.UUID,
    to_user_id: uuid.UUID,
) -> None:
    """Hand the owner role to another member; the old owner becomes an admin."""
    if from_user_id == to_user_id:
        raise BadRequest("You already own this organization")

    async with db.executor.tenant_transaction(tenant_id) as session:
        # Lock both rows in a stable order
        result = await session.execute(
            select(Membership)
            .join(Tenant, Tenant.id == Membership.tenant_id)
            .where(
                Membership.tenant_id == tenant_id,
                Membership.user_id.in_([from_user_id, to_user_id]),
                Tenant.is_active == True,  # noqa: E712
            )
            .order_by(Membership.user_id)
            .with_for_update(of=Membership)
        )
        rows = {m.user_id: m for m in result.scalars().all()}
        current = rows.get(from_user_id)
        target = rows.get(to_user_id)
        if current is None or current.role != Role.OWNER.value:
            raise Forbidden("Only the organization owner can transfer ownership")
        if target is None:
            raise NotFound("The new owner must already be a member of this organization")

        # Demote first: at most one owner row may exist at any time
        current.role = Role.ADMIN.value
        session.add(current)
        await session.flush()
        target.role = Role.OWNER.value
        session.add(target)
        await session.flush()

    log.info(
        "membership.ownership_transferred",
        tenant_id=str(tenant_id),
        from_user=str(from_user_id),
        to_user=str(to_user_id),
    )
