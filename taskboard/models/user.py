"""User model. Not RLS-scoped."""

from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class User(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "users"

    email: str = Field(unique=True, index=True, nullable=False, max_length=255)  # lower-cased
    username: str = Field(unique=True, index=True, nullable=False, max_length=30)
    password_hash: str = Field(nullable=False)
    email_verified: bool = Field(default=False, nullable=False)
