"""
Machine-key endpoint.

GET /api/v1/tenant  The tenant the presented key is bound to
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from taskboard.core.auth import AuthContext, require_tenant_key
from taskboard_shared.schemas.organizations import OrgResponse

router = APIRouter()


@router.get("", response_model=OrgResponse)
async def get_key_tenant(ctx: AuthContext = Depends(require_tenant_key)):
    return OrgResponse.model_validate(ctx.tenant)
