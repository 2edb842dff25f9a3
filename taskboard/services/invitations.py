"""
Invitation service: the invitation state machine.

    pending ──accept──▶ accepted
       │ ├───decline──▶ declined
       │ └───revoke───▶ revoked
       └ (expired: still stored as pending, rejected everywhere)

Expiry is evaluated lazily through ``is_expired``; nothing sweeps old rows.
Creating an invitation while a live pending one exists for the same email is
a conflict. An expired pending row does not block a new invitation: it is
marked revoked in the same transaction and superseded.
Notifications go out only after the owning transaction has committed.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from taskboard.core.config import get_settings
from taskboard.core.credentials import generate_token
from taskboard.core.database import Database
from taskboard.core.errors import BadRequest, Conflict, Forbidden, NotFound
from taskboard.core.notifications import (
    INVITATION_ACCEPTED,
    INVITATION_CREATED,
    Notification,
    NotificationDispatcher,
)
from taskboard.models.base import as_utc, utcnow
from taskboard.models.invitation import Invitation
from taskboard.models.membership import Membership
from taskboard.models.tenant import Tenant
from taskboard.models.user import User
from taskboard.services.memberships import get_membership
from taskboard_shared.schemas.common import (
    INVITATION_TRANSITIONS,
    InvitationRole,
    InvitationStatus,
    Role,
)
from taskboard_shared.schemas.invitations import (
    AcceptResponse,
    InvitationPublic,
    InvitationResponse,
)

log = structlog.get_logger()

NOT_FOUND = "Invitation not found"
EXPIRED = "This invitation has expired"
WRONG_EMAIL = "This invitation was sent to a different email address"
ALREADY_MEMBER = "You are already a member of this organization"
ALREADY_PENDING = "A pending invitation already exists for this email"


def is_expired(invitation: Invitation, now: datetime | None = None) -> bool:
    """The single expiry predicate used by every invitation operation."""
    return (now or utcnow()) > as_utc(invitation.expires_at)


def _already(status: str) -> BadRequest:
    return BadRequest(f"This invitation has already been {status}")


def _to_response(
    invitation: Invitation, inviter_name: Optional[str], now: datetime
) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        tenant_id=invitation.tenant_id,
        email=invitation.email,
        role=InvitationRole(invitation.role),
        status=InvitationStatus(invitation.status),
        invited_by=invitation.invited_by,
        inviter_name=inviter_name,
        expires_at=invitation.expires_at,
        is_expired=is_expired(invitation, now),
        accepted_at=invitation.accepted_at,
        created_at=invitation.created_at,
    )


async def _require_manager(
    session: AsyncSession, actor_id: uuid.UUID, tenant_id: uuid.UUID, detail: str
) -> Membership:
    actor = await get_membership(session, actor_id, tenant_id)
    if actor is None or not Role(actor.role).at_least(Role.ADMIN):
        raise Forbidden(detail)
    return actor


async def _tenant_for_token(db: Database, token: str) -> uuid.UUID:
    """Find which tenant owns a token; invitations are addressed before membership exists."""
    async with db.system() as session:
        result = await session.execute(
            select(Invitation.tenant_id).where(Invitation.token == token)
        )
        tenant_id = result.scalar_one_or_none()
    if tenant_id is None:
        raise NotFound(NOT_FOUND)
    return tenant_id


def _check_transition(invitation: Invitation, target: InvitationStatus, now: datetime) -> None:
    """Reject moves the state machine does not allow, and any move out of an expired invitation."""
    current = InvitationStatus(invitation.status)
    if target not in INVITATION_TRANSITIONS[current]:
        raise _already(current.value)
    if is_expired(invitation, now):
        raise BadRequest(EXPIRED)


def _check_claimable(
    invitation: Invitation, user: User, target: InvitationStatus, now: datetime
) -> None:
    _check_transition(invitation, target, now)
    if invitation.email.lower() != user.email.lower():
        raise Forbidden(WRONG_EMAIL)


# ---------------------------------------------------------------------------
# Create / list / revoke (tenant managers)
# ---------------------------------------------------------------------------

async def create_invitation(
    db: Database,
    tenant_id: uuid.UUID,
    actor_id: uuid.UUID,
    email: str,
    role: InvitationRole | str = InvitationRole.MEMBER,
    *,
    notifications: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> Invitation:
    try:
        role = InvitationRole(role)
    except ValueError:
        raise BadRequest("Invitations can only grant the admin or member role") from None
    email = email.strip().lower()
    now = now or utcnow()

    async with db.executor.tenant_transaction(tenant_id) as session:
        await _require_manager(
            session, actor_id, tenant_id, "Only organization owners and admins can send invitations"
        )

        result = await session.execute(
            select(Membership.user_id)
            .join(User, User.id == Membership.user_id)
            .where(Membership.tenant_id == tenant_id, User.email == email)
        )
        if result.first() is not None:
            raise Conflict("This user is already a member of the organization")

        result = await session.execute(
            select(Invitation)
            .where(
                Invitation.tenant_id == tenant_id,
                Invitation.email == email,
                Invitation.status == InvitationStatus.PENDING.value,
            )
            .with_for_update()
        )
        existing = result.scalars().first()
        if existing is not None:
            if not is_expired(existing, now):
                raise Conflict(ALREADY_PENDING)
            # Supersede the stale one so the pending index admits the new row
            existing.status = InvitationStatus.REVOKED.value
            session.add(existing)
            await session.flush()

        invitation = Invitation(
            tenant_id=tenant_id,
            email=email,
            role=role.value,
            token=generate_token(),
            invited_by=actor_id,
            status=InvitationStatus.PENDING.value,
            expires_at=now + timedelta(days=get_settings().invitation_expiry_days),
            created_at=now,
        )
        session.add(invitation)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise Conflict(ALREADY_PENDING) from exc

        tenant = await session.get(Tenant, tenant_id)
        inviter = await session.get(User, actor_id)

    log.info(
        "invitation.created",
        tenant_id=str(tenant_id),
        invitation_id=str(invitation.id),
        role=role.value,
        actor=str(actor_id),
    )
    if notifications is not None:
        notifications.emit(
            Notification(
                kind=INVITATION_CREATED,
                recipient=email,
                data={
                    "token": invitation.token,
                    "organization_name": tenant.name,
                    "inviter_name": inviter.username,
                    "role": role.value,
                    "expires_at": invitation.expires_at.isoformat(),
                },
            )
        )
    return invitation


async def list_invitations(
    db: Database,
    tenant_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> list[InvitationResponse]:
    now = now or utcnow()
    async with db.executor.tenant_transaction(tenant_id) as session:
        await _require_manager(
            session, actor_id, tenant_id, "Only organization owners and admins can view invitations"
        )
        result = await session.execute(
            select(Invitation, User.username)
            .join(User, User.id == Invitation.invited_by, isouter=True)
            .where(Invitation.tenant_id == tenant_id)
            .order_by(Invitation.created_at.desc())
        )
        rows = result.all()
    return [_to_response(inv, inviter_name, now) for inv, inviter_name in rows]


async def revoke_invitation(
    db: Database,
    tenant_id: uuid.UUID,
    invitation_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> Invitation:
    now = now or utcnow()
    async with db.executor.tenant_transaction(tenant_id) as session:
        await _require_manager(
            session, actor_id, tenant_id, "Only organization owners and admins can revoke invitations"
        )
        result = await session.execute(
            select(Invitation)
            .where(Invitation.id == invitation_id, Invitation.tenant_id == tenant_id)
            .with_for_update()
        )
        invitation = result.scalars().first()
        if invitation is None:
            raise NotFound(NOT_FOUND)
        _check_transition(invitation, InvitationStatus.REVOKED, now)

        invitation.status = InvitationStatus.REVOKED.value
        session.add(invitation)
        await session.flush()

    log.info(
        "invitation.revoked",
        tenant_id=str(tenant_id),
        invitation_id=str(invitation_id),
        actor=str(actor_id),
    )
    return invitation


# ---------------------------------------------------------------------------
# Token holder operations
# ---------------------------------------------------------------------------

async def get_invitation_by_token(
    db: Database, token: str, *, now: datetime | None = None
) -> Optional[InvitationPublic]:
    """Public, redacted view of an invitation. Never exposes ids or the inviter's email."""
    now = now or utcnow()
    async with db.system() as session:
        result = await session.execute(
            select(Invitation, Tenant.name, User.username)
            .join(Tenant, Tenant.id == Invitation.tenant_id)
            .join(User, User.id == Invitation.invited_by)
            .where(Invitation.token == token, Tenant.is_active == True)  # noqa: E712
        )
        row = result.first()
    if row is None:
        return None
    invitation, organization_name, inviter_name = row
    return InvitationPublic(
        organization_name=organization_name,
        inviter_name=inviter_name,
        role=InvitationRole(invitation.role),
        expires_at=invitation.expires_at,
        is_expired=is_expired(invitation, now),
        status=InvitationStatus(invitation.status),
    )


async def accept_invitation(
    db: Database,
    token: str,
    user: User,
    *,
    notifications: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> AcceptResponse:
    """
    Accept an invitation on behalf of ``user``.

    The invitation row is locked for the whole transaction, so of two
    concurrent accepts one succeeds and the other sees a non-pending status.
    """
    now = now or utcnow()
    tenant_id = await _tenant_for_token(db, token)

    async with db.executor.tenant_transaction(tenant_id) as session:
        result = await session.execute(
            select(Invitation).where(Invitation.token == token).with_for_update()
        )
        invitation = result.scalars().first()
        tenant = await session.get(Tenant, tenant_id)
        if invitation is None or tenant is None or not tenant.is_active:
            raise NotFound(NOT_FOUND)
        _check_claimable(invitation, user, InvitationStatus.ACCEPTED, now)
        if await get_membership(session, user.id, tenant_id) is not None:
            raise Conflict(ALREADY_MEMBER)

        role = InvitationRole(invitation.role).as_role()
        session.add(Membership(user_id=user.id, tenant_id=tenant_id, role=role.value, created_at=now))
        invitation.status = InvitationStatus.ACCEPTED.value
        invitation.accepted_at = now
        session.add(invitation)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise Conflict(ALREADY_MEMBER) from exc

        inviter = await session.get(User, invitation.invited_by)
        organization_name = tenant.name

    log.info(
        "invitation.accepted",
        tenant_id=str(tenant_id),
        invitation_id=str(invitation.id),
        user_id=str(user.id),
        role=role.value,
    )
    if notifications is not None and inviter is not None:
        notifications.emit(
            Notification(
                kind=INVITATION_ACCEPTED,
                recipient=inviter.email,
                data={
                    "organization_name": organization_name,
                    "member_name": user.username,
                    "role": role.value,
                },
            )
        )
    return AcceptResponse(tenant_id=tenant_id, organization_name=organization_name, role=role)


async def decline_invitation(
    db: Database,
    token: str,
    user: User,
    *,
    now: datetime | None = None,
) -> None:
    now = now or utcnow()
    tenant_id = await _tenant_for_token(db, token)

    async with db.executor.tenant_transaction(tenant_id) as session:
        result = await session.execute(select(Invitation).where(Invitation.token == token))
        invitation = result.scalars().first()
        if invitation is None:
            raise NotFound(NOT_FOUND)
        _check_claimable(invitation, user, InvitationStatus.DECLINED, now)

        # Conditional on still being pending; a concurrent accept wins
        result = await session.execute(
            update(Invitation)
            .where(
                Invitation.id == invitation.id,
                Invitation.status == InvitationStatus.PENDING.value,
            )
            .values(status=InvitationStatus.DECLINED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise BadRequest("This invitation is no longer pending")

    log.info(
        "invitation.declined",
        tenant_id=str(tenant_id),
        invitation_id=str(invitation.id),
        user_id=str(user.id),
    )
