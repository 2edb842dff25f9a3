"""
API v1 Router

Tenant-scoped endpoints act on the tenant selected by the caller's session,
or, for machine callers, the tenant their key is bound to.
"""

from fastapi import APIRouter

from . import invitations, members, organizations, tenant

router = APIRouter()

router.include_router(organizations.router, prefix="/orgs", tags=["Organizations"])
router.include_router(members.router, prefix="/members", tags=["Members"])
router.include_router(invitations.router, prefix="/invitations", tags=["Invitations"])
router.include_router(tenant.router, prefix="/tenant", tags=["Tenant"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/orgs",
            "/members",
            "/invitations",
            "/tenant",
        ],
    }
