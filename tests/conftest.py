"""
Shared fixtures: an in-memory SQLite store behind the real executor.

SQLite has no ``set_config``/``current_setting``; they are registered per
connection so the executor's bind, clear and probe statements run unchanged.
Row-level security itself is exercised in ``test_rls_integration.py``.
"""

from __future__ import annotations

import os

os.environ.setdefault("TB_BCRYPT_ROUNDS", "4")
os.environ.setdefault("TB_LOG_FORMAT", "text")

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

import taskboard.models  # noqa: F401
from taskboard.core.credentials import hash_password
from taskboard.core.database import Database
from taskboard.core.notifications import Notification, NotificationDispatcher
from taskboard.models.user import User
from taskboard.services.tenants import create_tenant

PASSWORD = "correct-horse-battery"


def _register_setting_functions(dbapi_conn, _record):
    settings: dict[str, str] = {}

    def set_config(name, value, is_local):
        settings[name] = value
        return value

    def current_setting(name, missing_ok):
        return settings.get(name, "")

    dbapi_conn.create_function("set_config", 3, set_config)
    dbapi_conn.create_function("current_setting", 2, current_setting)


class RecordingNotifier:
    def __init__(self):
        self.delivered: list[Notification] = []

    async def deliver(self, notification: Notification) -> None:
        self.delivered.append(notification)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    event.listen(eng.sync_engine, "connect", _register_setting_functions)
    yield eng
    await eng.dispose()


@pytest.fixture
async def db(engine):
    database = Database(engine)
    await database.create_all()
    return database


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def notifications(notifier):
    return NotificationDispatcher(notifier)


# ---------------------------------------------------------------------------
# Users and tenants
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db):
    async def _make(username: str, email: str | None = None) -> User:
        user = User(
            email=(email or f"{username}@example.com").lower(),
            username=username,
            password_hash=hash_password(PASSWORD),
        )
        async with db.system() as session:
            session.add(user)
        return user

    return _make


@pytest.fixture
async def owner(make_user):
    return await make_user("olivia")


@pytest.fixture
async def tenant(db, owner):
    t, _ = await create_tenant(db, owner.id, "Acme Corp")
    return t


@pytest.fixture
def password():
    return PASSWORD
