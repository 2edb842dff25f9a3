"""Organization invitation (RLS-scoped). Never physically deleted."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow

_PENDING_ONLY = sa.text("status = 'pending'")


class Invitation(UUIDMixin, SQLModel, table=True):
    __tablename__ = "organization_invitations"
    __table_args__ = (
        # One pending invitation per (tenant, email)
        sa.Index(
            "uq_invitations_pending",
            "tenant_id",
            "email",
            unique=True,
            postgresql_where=_PENDING_ONLY,
            sqlite_where=_PENDING_ONLY,
        ),
    )

    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    email: str = Field(nullable=False, index=True, max_length=255)  # lower-cased
    role: str = Field(nullable=False, default="member")  # admin | member
    token: str = Field(unique=True, index=True, nullable=False)
    invited_by: uuid.UUID = Field(foreign_key="users.id", nullable=False)
    status: str = Field(nullable=False, default="pending")  # pending | accepted | declined | revoked
    expires_at: datetime = Field(nullable=False, sa_type=sa.DateTime(timezone=True))
    accepted_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )
