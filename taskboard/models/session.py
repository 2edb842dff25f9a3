"""Interactive login session. Owned by the user; weakly references a tenant."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class LoginSession(UUIDMixin, SQLModel, table=True):
    __tablename__ = "sessions"

    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    tenant_id: Optional[uuid.UUID] = Field(default=None, foreign_key="tenants.id", nullable=True)
    token: str = Field(unique=True, index=True, nullable=False)
    expires_at: datetime = Field(nullable=False, index=True, sa_type=sa.DateTime(timezone=True))
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )
