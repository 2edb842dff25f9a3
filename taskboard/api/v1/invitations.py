"""
Invitation API endpoints.

POST   /api/v1/invitations                      Invite an email (owner/admin)
GET    /api/v1/invitations                      List the org's invitations (owner/admin)
POST   /api/v1/invitations/{id}/revoke          Revoke a pending invitation (owner/admin)
GET    /api/v1/invitations/token/{token}        Public, redacted lookup
POST   /api/v1/invitations/token/{token}/accept
POST   /api/v1/invitations/token/{token}/decline
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends

from taskboard.core.auth import (
    AuthContext,
    get_db,
    get_notifications,
    require_manager,
    require_user,
)
from taskboard.core.database import Database
from taskboard.core.errors import NotFound
from taskboard.core.notifications import NotificationDispatcher
from taskboard.services import invitations as invitation_service
from taskboard_shared.schemas.auth import MessageResponse
from taskboard_shared.schemas.invitations import (
    AcceptResponse,
    InvitationCreateRequest,
    InvitationListResponse,
    InvitationPublic,
    InvitationResponse,
)

log = structlog.get_logger()
router = APIRouter()


# ---------------------------------------------------------------------------
# Tenant managers
# ---------------------------------------------------------------------------

@router.post("", response_model=InvitationResponse, status_code=201)
async def create_invitation(
    body: InvitationCreateRequest,
    ctx: AuthContext = Depends(require_manager),
    db: Database = Depends(get_db),
    notifications: NotificationDispatcher = Depends(get_notifications),
):
    invitation = await invitation_service.create_invitation(
        db,
        ctx.tenant.id,
        ctx.user.id,
        body.email,
        body.role,
        notifications=notifications,
    )
    return InvitationResponse(
        id=invitation.id,
        tenant_id=invitation.tenant_id,
        email=invitation.email,
        role=invitation.role,
        status=invitation.status,
        invited_by=invitation.invited_by,
        inviter_name=ctx.user.username,
        expires_at=invitation.expires_at,
        accepted_at=invitation.accepted_at,
        created_at=invitation.created_at,
    )


@router.get("", response_model=InvitationListResponse)
async def list_invitations(
    ctx: AuthContext = Depends(require_manager),
    db: Database = Depends(get_db),
):
    items = await invitation_service.list_invitations(db, ctx.tenant.id, ctx.user.id)
    return InvitationListResponse(data=items)


@router.post("/{invitation_id}/revoke", response_model=MessageResponse)
async def revoke_invitation(
    invitation_id: uuid.UUID,
    ctx: AuthContext = Depends(require_manager),
    db: Database = Depends(get_db),
):
    await invitation_service.revoke_invitation(db, ctx.tenant.id, invitation_id, ctx.user.id)
    return MessageResponse(message="Invitation revoked")


# ---------------------------------------------------------------------------
# Token holders
# ---------------------------------------------------------------------------

@router.get("/token/{token}", response_model=InvitationPublic)
async def get_invitation_by_token(token: str, db: Database = Depends(get_db)):
    """Public lookup; shows only what the invitee needs to decide."""
    invitation = await invitation_service.get_invitation_by_token(db, token)
    if invitation is None:
        raise NotFound("Invitation not found")
    return invitation


@router.post("/token/{token}/accept", response_model=AcceptResponse)
async def accept_invitation(
    token: str,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
    notifications: NotificationDispatcher = Depends(get_notifications),
):
    return await invitation_service.accept_invitation(
        db, token, ctx.user, notifications=notifications
    )


@router.post("/token/{token}/decline", response_model=MessageResponse)
async def decline_invitation(
    token: str,
    ctx: AuthContext = Depends(require_user),
    db: Database = Depends(get_db),
):
    await invitation_service.decline_invitation(db, token, ctx.user)
    return MessageResponse(message="Invitation declined")
