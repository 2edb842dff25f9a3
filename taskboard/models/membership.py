"""User-tenant membership (join table, RLS-scoped)."""

from datetime import datetime
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import utcnow

_OWNER_ONLY = sa.text("role = 'owner'")


class Membership(SQLModel, table=True):
    __tablename__ = "memberships"
    __table_args__ = (
        # At most one owner per tenant
        sa.Index(
            "uq_memberships_single_owner",
            "tenant_id",
            unique=True,
            postgresql_where=_OWNER_ONLY,
            sqlite_where=_OWNER_ONLY,
        ),
    )

    user_id: uuid.UUID = Field(foreign_key="users.id", primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", primary_key=True, index=True)
    role: str = Field(nullable=False, default="member")  # owner | admin | member
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )
