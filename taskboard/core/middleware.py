"""
HTTP middleware for cookie-authenticated browsers.

``CSRFMiddleware`` enforces the double-submit pattern: the session cookie is
paired with a readable CSRF cookie whose value the client echoes in
``X-CSRF-Token``. Machine callers authenticate with a bearer key and are
never cookie-authenticated, so they are exempt.
"""

from __future__ import annotations

import secrets
from typing import Iterable, Mapping

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

log = structlog.get_logger()

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
CSRF_HEADER = "X-CSRF-Token"
CSRF_ERROR_CODE = "CSRF_VALIDATION_FAILED"

# Entry points a browser may hit while holding a stale session cookie
CSRF_EXEMPT_PATHS = frozenset({
    "/auth/signup",
    "/auth/signin",
    "/auth/password-reset/request",
    "/auth/password-reset/confirm",
})

# ---------------------------------------------------------------------------
# Security Headers
# ---------------------------------------------------------------------------

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "0",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none';",
}
HSTS_HEADER = ("Strict-Transport-Security", "max-age=63072000; includeSubDomains")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach security headers to every response, errors included."""

    def __init__(self, app, *, hsts: bool = True, headers: Mapping[str, str] | None = None):
        super().__init__(app)
        self.headers = dict(SECURITY_HEADERS if headers is None else headers)
        if hsts:
            self.headers.setdefault(*HSTS_HEADER)

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for header, value in self.headers.items():
            response.headers.setdefault(header, value)
        return response


# ---------------------------------------------------------------------------
# CSRF Protection (Double-Submit Cookie)
# ---------------------------------------------------------------------------

class CSRFMiddleware(BaseHTTPMiddleware):
    """Reject unsafe cookie-authenticated requests whose CSRF header does not match."""

    def __init__(
        self,
        app,
        session_cookie: str = "session_token",
        csrf_cookie: str = "csrf_token",
        exempt_paths: Iterable[str] = CSRF_EXEMPT_PATHS,
    ):
        super().__init__(app)
        self.session_cookie = session_cookie
        self.csrf_cookie = csrf_cookie
        self.exempt_paths = frozenset(exempt_paths)

    def _needs_check(self, request: Request) -> bool:
        if request.method in SAFE_METHODS or request.url.path in self.exempt_paths:
            return False
        if request.headers.get("Authorization"):
            return False
        return self.session_cookie in request.cookies

    async def dispatch(self, request: Request, call_next) -> Response:
        if not self._needs_check(request):
            return await call_next(request)

        cookie_token = request.cookies.get(self.csrf_cookie) or ""
        header_token = request.headers.get(CSRF_HEADER) or ""
        if cookie_token and header_token and secrets.compare_digest(cookie_token, header_token):
            return await call_next(request)

        log.warning(
            "csrf.rejected",
            path=request.url.path,
            method=request.method,
            reason="missing" if not (cookie_token and header_token) else "mismatch",
        )
        return JSONResponse(
            status_code=403,
            content={"detail": "Invalid or missing CSRF token", "code": CSRF_ERROR_CODE},
        )
