"""
Database connection management and the tenant-scoped executor.

Every read or write of tenant-owned rows goes through ``TenantScopedExecutor``,
which binds ``app.current_tenant_id`` on a single pooled connection so the
row-level security policies filter by it. The binding is cleared before the
connection returns to the pool; a connection whose binding cannot be shown to
be cleared is invalidated instead of reused.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, create_async_engine
from sqlmodel import SQLModel

from taskboard.core.config import Settings
from taskboard.core.errors import BadRequest, StoreUnavailable

log = structlog.get_logger()

T = TypeVar("T")

TENANT_SETTING = "app.current_tenant_id"

_BIND_LOCAL = text(f"SELECT set_config('{TENANT_SETTING}', :tenant_id, true)")
_BIND_SESSION = text(f"SELECT set_config('{TENANT_SETTING}', :tenant_id, false)")
_CLEAR = text(f"SELECT set_config('{TENANT_SETTING}', '', false)")
_PROBE = text(f"SELECT current_setting('{TENANT_SETTING}', true)")


async def acquire(engine: AsyncEngine) -> AsyncConnection:
    """Check a connection out of the pool, mapping exhaustion to a retryable error."""
    try:
        return await engine.connect()
    except (sa_exc.TimeoutError, sa_exc.DBAPIError, OSError) as exc:
        log.warning("db.acquire_failed", error=str(exc), error_type=type(exc).__name__)
        raise StoreUnavailable("Database temporarily unavailable, please retry") from exc


def _tenant_param(tenant_id: uuid.UUID | str | None) -> str:
    if not tenant_id:
        raise BadRequest("No organization context. Please select an organization.")
    return str(tenant_id)


# ---------------------------------------------------------------------------
# Tenant-scoped executor
# ---------------------------------------------------------------------------

class TenantScopedExecutor:
    """Runs units of work on one connection bound to one tenant."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @asynccontextmanager
    async def tenant_context(self, tenant_id: uuid.UUID | str) -> AsyncGenerator[AsyncSession, None]:
        """Connection-scoped binding. The yielded session commits on success."""
        tenant = _tenant_param(tenant_id)
        conn = await acquire(self.engine)
        discard = False
        try:
            try:
                await conn.execute(_BIND_SESSION, {"tenant_id": tenant})
                await conn.commit()
            except Exception:
                discard = True
                raise
            async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        finally:
            await self._release(conn, discard=discard)

    @asynccontextmanager
    async def tenant_transaction(self, tenant_id: uuid.UUID | str) -> AsyncGenerator[AsyncSession, None]:
        """Transaction-scoped binding. Commits when the block exits cleanly."""
        tenant = _tenant_param(tenant_id)
        conn = await acquire(self.engine)
        discard = False
        try:
            async with conn.begin():
                try:
                    await conn.execute(_BIND_LOCAL, {"tenant_id": tenant})
                except Exception:
                    discard = True
                    raise
                # Joins the outer transaction; committing it is left to conn.begin()
                session = AsyncSession(bind=conn, expire_on_commit=False)
                try:
                    yield session
                    await session.flush()
                finally:
                    await session.close()
        finally:
            await self._release(conn, discard=discard)

    async def with_tenant_context(
        self, tenant_id: uuid.UUID | str, fn: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        async with self.tenant_context(tenant_id) as session:
            return await fn(session)

    async def with_tenant_transaction(
        self, tenant_id: uuid.UUID | str, fn: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        async with self.tenant_transaction(tenant_id) as session:
            return await fn(session)

    async def _release(self, conn: AsyncConnection, *, discard: bool = False) -> None:
        """Clear the binding, prove it is gone, and hand the connection back."""
        reason = "bind_failed" if discard else None
        if reason is None:
            try:
                if conn.in_transaction():
                    await conn.rollback()
                await conn.execute(_CLEAR)
                leftover = (await conn.execute(_PROBE)).scalar()
                await conn.commit()
                if leftover:
                    reason = "binding_survived_clear"
            except Exception:
                log.warning("tenant_binding.clear_failed", exc_info=True)
                reason = "clear_failed"
        try:
            if reason is not None:
                log.warning("tenant_binding.discarded", reason=reason)
                await conn.invalidate()
        finally:
            await conn.close()


# ---------------------------------------------------------------------------
# Pool resource
# ---------------------------------------------------------------------------

class Database:
    """
    Explicit pool resource: the application engine (row-level security
    enforced) and the system engine (table owner) used for the few lookups
    that must cross tenants, such as resolving a session or invitation token.
    """

    def __init__(self, engine: AsyncEngine, system_engine: AsyncEngine | None = None):
        self.engine = engine
        self.system_engine = system_engine or engine
        self.executor = TenantScopedExecutor(engine)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        def _engine(url: str) -> AsyncEngine:
            return create_async_engine(
                url,
                echo=settings.debug,
                pool_size=settings.pool_size,
                max_overflow=settings.pool_max_overflow,
                pool_timeout=settings.pool_timeout_seconds,
                pool_recycle=settings.pool_recycle_seconds,
                pool_pre_ping=True,
            )

        return cls(_engine(settings.database_url), _engine(settings.system_database_url))

    @asynccontextmanager
    async def system(self) -> AsyncGenerator[AsyncSession, None]:
        """Unscoped session on the system engine, committed on success."""
        conn = await acquire(self.system_engine)
        try:
            async with AsyncSession(bind=conn, expire_on_commit=False) as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        finally:
            await conn.close()

    async def ping(self) -> None:
        conn = await acquire(self.engine)
        try:
            await conn.execute(text("SELECT 1"))
        finally:
            await conn.close()

    async def create_all(self) -> None:
        """Create all tables (development and tests only; use migrations in production)."""
        async with self.system_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
        if self.system_engine is not self.engine:
            await self.system_engine.dispose()
