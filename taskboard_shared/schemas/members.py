"""Membership management schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import List

from pydantic import BaseModel

from .common import Role


class RoleChangeRequest(BaseModel):
    """Change a member's role. Ownership moves only through a transfer."""
    role: Role


class TransferOwnershipRequest(BaseModel):
    user_id: uuid.UUID


class MemberResponse(BaseModel):
    user_id: uuid.UUID
    email: str
    username: str
    role: Role
    joined_at: datetime


class MemberListResponse(BaseModel):
    data: List[MemberResponse]
