"""
Error taxonomy for the authority core.

Every rejection is an ``HTTPException`` subclass so services can raise it
directly and FastAPI renders ``{"detail": message}`` with the right status.
"""

from __future__ import annotations

from fastapi import HTTPException


class AuthorityError(HTTPException):
    status_code_default = 500
    retryable = False

    def __init__(self, detail: str, *, headers: dict[str, str] | None = None):
        super().__init__(status_code=self.status_code_default, detail=detail, headers=headers)


class BadRequest(AuthorityError):
    """Missing tenant selection, invalid transition, self-targeting operation."""
    status_code_default = 400


class Unauthorized(AuthorityError):
    """Missing or invalid credential or session."""
    status_code_default = 401


class Forbidden(AuthorityError):
    """Valid identity, insufficient role."""
    status_code_default = 403


class NotFound(AuthorityError):
    status_code_default = 404


class Conflict(AuthorityError):
    """Duplicate invitation, already-a-member."""
    status_code_default = 409


class StoreUnavailable(AuthorityError):
    """The connection pool could not hand out a connection. Safe to retry."""
    status_code_default = 503
    retryable = True
