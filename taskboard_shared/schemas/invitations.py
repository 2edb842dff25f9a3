"""
Invitation schemas.

The public view returned by the token lookup is deliberately narrow: it never
carries the invitation id or the inviter's email.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr

from .common import InvitationRole, InvitationStatus, Role


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class InvitationCreateRequest(BaseModel):
    email: EmailStr
    role: InvitationRole = InvitationRole.MEMBER


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class InvitationResponse(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    email: str
    role: InvitationRole
    status: InvitationStatus
    invited_by: uuid.UUID
    inviter_name: Optional[str] = None
    expires_at: datetime
    is_expired: bool = False
    accepted_at: Optional[datetime] = None
    created_at: datetime


class InvitationListResponse(BaseModel):
    data: List[InvitationResponse]


class InvitationPublic(BaseModel):
    """Redacted view for the unauthenticated token lookup."""
    organization_name: str
    inviter_name: str
    role: InvitationRole
    expires_at: datetime
    is_expired: bool
    status: InvitationStatus


class AcceptResponse(BaseModel):
    tenant_id: uuid.UUID
    organization_name: str
    role: Role
