"""
Organization (tenant) schemas shared between server and clients.

Covers: organization create/switch requests, list and detail responses.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .common import Role


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, description="Organization display name")


class OrgSwitchRequest(BaseModel):
    tenant_id: uuid.UUID = Field(..., description="Organization to select for this session")


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrgResponse(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OrgListItem(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    role: Role  # the requesting user's role in this org
    joined_at: datetime


class OrgListResponse(BaseModel):
    data: list[OrgListItem]


class OrgCreateResponse(BaseModel):
    organization: OrgResponse
    role: Role


class CurrentOrgResponse(BaseModel):
    organization: Optional[OrgResponse] = None
    role: Optional[Role] = None
