"""
Organization API endpoints.

GET    /api/v1/orgs          List orgs for the signed-in user
POST   /api/v1/orgs          Create a new org (creator becomes owner)
POST   /api/v1/orgs/switch   Select another org for this session
GET    /api/v1/orgs/current  The session's selected org and role
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from taskboard.core.auth import AuthContext, get_db, require_session
from taskboard.core.database import Database
from taskboard.services import tenants as tenant_service
from taskboard.services.memberships import get_role
from taskboard.services.sessions import switch_tenant
from taskboard_shared.schemas.common import Role
from taskboard_shared.schemas.organizations import (
    CurrentOrgResponse,
    OrgCreateRequest,
    OrgCreateResponse,
    OrgListItem,
    OrgListResponse,
    OrgResponse,
    OrgSwitchRequest,
)

log = structlog.get_logger()
router = APIRouter()


@router.get("", response_model=OrgListResponse)
async def list_orgs(
    ctx: AuthContext = Depends(require_session),
    db: Database = Depends(get_db),
):
    """List orgs the signed-in user belongs to."""
    items = await tenant_service.list_user_tenants(db, ctx.user.id)
    return OrgListResponse(data=[OrgListItem(**item) for item in items])


@router.post("", response_model=OrgCreateResponse, status_code=201)
async def create_org(
    body: OrgCreateRequest,
    ctx: AuthContext = Depends(require_session),
    db: Database = Depends(get_db),
):
    """Create a new organization. The creator becomes its owner."""
    tenant, membership = await tenant_service.create_tenant(db, ctx.user.id, body.name)
    return OrgCreateResponse(
        organization=OrgResponse.model_validate(tenant),
        role=Role(membership.role),
    )


@router.post("/switch", response_model=CurrentOrgResponse)
async def switch_org(
    body: OrgSwitchRequest,
    ctx: AuthContext = Depends(require_session),
    db: Database = Depends(get_db),
):
    state = await switch_tenant(db, ctx.session.token, body.tenant_id)
    role = await get_role(db, ctx.user.id, body.tenant_id)
    return CurrentOrgResponse(
        organization=OrgResponse.model_validate(state.tenant) if state.tenant else None,
        role=role,
    )


@router.get("/current", response_model=CurrentOrgResponse)
async def current_org(
    ctx: AuthContext = Depends(require_session),
    db: Database = Depends(get_db),
):
    if ctx.tenant is None:
        return CurrentOrgResponse()
    return CurrentOrgResponse(
        organization=OrgResponse.model_validate(ctx.tenant),
        role=await get_role(db, ctx.user.id, ctx.tenant.id),
    )
