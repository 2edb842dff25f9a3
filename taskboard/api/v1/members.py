"""
Membership API endpoints. All act on the session's selected organization.

GET    /api/v1/members?search=             List members, optionally filtered
PATCH  /api/v1/members/{userId}            Change a member's role
DELETE /api/v1/members/{userId}            Remove a member
POST   /api/v1/members/transfer-ownership  Hand the owner role to another member
POST   /api/v1/members/leave               Leave the organization
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Response

from taskboard.core.auth import AuthContext, get_db, require_manager, require_member, require_owner
from taskboard.core.database import Database
from taskboard.core.errors import NotFound
from taskboard.services import memberships as membership_service
from taskboard.services.sessions import reselect_tenant
from taskboard_shared.schemas.members import (
    MemberListResponse,
    MemberResponse,
    RoleChangeRequest,
    TransferOwnershipRequest,
)

log = structlog.get_logger()
router = APIRouter()


@router.get("", response_model=MemberListResponse)
async def list_members(
    search: Optional[str] = Query(None, max_length=255, description="Filter by username or email"),
    ctx: AuthContext = Depends(require_member),
    db: Database = Depends(get_db),
):
    members = await membership_service.list_members(db, ctx.tenant.id, search=search)
    return MemberListResponse(data=members)


@router.patch("/{userId}", response_model=MemberResponse)
async def change_member_role(
    userId: uuid.UUID,
    body: RoleChangeRequest,
    ctx: AuthContext = Depends(require_manager),
    db: Database = Depends(get_db),
):
    await membership_service.change_role(db, ctx.tenant.id, ctx.user.id, userId, body.role)
    members = await membership_service.list_members(db, ctx.tenant.id)
    member = next((m for m in members if m.user_id == userId), None)
    if member is None:
        raise NotFound("Member not found")
    return member


@router.delete("/{userId}", status_code=204)
async def remove_member(
    userId: uuid.UUID,
    ctx: AuthContext = Depends(require_manager),
    db: Database = Depends(get_db),
):
    await membership_service.remove_member(db, ctx.tenant.id, ctx.user.id, userId)
    await reselect_tenant(db, userId, ctx.tenant.id)
    return Response(status_code=204)


@router.post("/transfer-ownership", status_code=204)
async def transfer_ownership(
    body: TransferOwnershipRequest,
    ctx: AuthContext = Depends(require_owner),
    db: Database = Depends(get_db),
):
    await membership_service.transfer_ownership(db, ctx.tenant.id, ctx.user.id, body.user_id)
    return Response(status_code=204)


@router.post("/leave", status_code=204)
async def leave_org(
    ctx: AuthContext = Depends(require_member),
    db: Database = Depends(get_db),
):
    await membership_service.leave(db, ctx.tenant.id, ctx.user.id)
    await reselect_tenant(db, ctx.user.id, ctx.tenant.id)
    return Response(status_code=204)
