"""
Tests for the session authority.

Covers:
- Creation with fixed (non-sliding) expiry
- Validation of unknown, expired and inactive-tenant sessions
- Tenant switching keeps the token and checks membership
- Deletion and tenant reselection after a membership ends
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from taskboard.core.errors import Forbidden, Unauthorized
from taskboard.models.base import as_utc, utcnow
from taskboard.models.tenant import Tenant
from taskboard.services import memberships
from taskboard.services.sessions import (
    create_session,
    delete_all_sessions_for,
    delete_session,
    reselect_tenant,
    switch_tenant,
    validate_session,
)
from taskboard.services.tenants import create_tenant
from taskboard_shared.schemas.common import Role


class TestCreateAndValidate:
    async def test_round_trip(self, db, owner, tenant):
        login = await create_session(db, owner.id, tenant.id)
        state = await validate_session(db, login.token)
        assert state.user.id == owner.id
        assert state.tenant.id == tenant.id

    async def test_expiry_is_thirty_days(self, db, owner):
        now = utcnow()
        login = await create_session(db, owner.id, None, now=now)
        assert as_utc(login.expires_at) - now == timedelta(days=30)

    async def test_unknown_token(self, db):
        assert await validate_session(db, "no-such-token") is None
        assert await validate_session(db, None) is None

    async def test_expired_session(self, db, owner, tenant):
        now = utcnow()
        login = await create_session(db, owner.id, tenant.id, now=now)
        assert await validate_session(db, login.token, now=now + timedelta(days=29)) is not None
        assert await validate_session(db, login.token, now=now + timedelta(days=30)) is None

    async def test_validation_does_not_slide_expiry(self, db, owner, tenant):
        now = utcnow()
        login = await create_session(db, owner.id, tenant.id, now=now)
        state = await validate_session(db, login.token, now=now + timedelta(days=10))
        assert as_utc(state.session.expires_at) == as_utc(login.expires_at)

    async def test_session_without_tenant(self, db, owner):
        login = await create_session(db, owner.id, None)
        state = await validate_session(db, login.token)
        assert state.tenant is None

    async def test_inactive_tenant_reads_as_none(self, db, owner, tenant):
        login = await create_session(db, owner.id, tenant.id)
        async with db.system() as session:
            row = await session.get(Tenant, tenant.id)
            row.is_active = False
            session.add(row)

        state = await validate_session(db, login.token)
        assert state is not None
        assert state.tenant is None


class TestSwitchTenant:
    async def test_switch_keeps_token(self, db, owner, tenant):
        other, _ = await create_tenant(db, owner.id, "Second Org")
        login = await create_session(db, owner.id, tenant.id)

        state = await switch_tenant(db, login.token, other.id)
        assert state.tenant.id == other.id
        assert state.session.token == login.token
        assert (await validate_session(db, login.token)).tenant.id == other.id

    async def test_switch_to_foreign_tenant_forbidden(self, db, owner, tenant, make_user):
        stranger = await make_user("sam")
        foreign, _ = await create_tenant(db, stranger.id, "Foreign")
        login = await create_session(db, owner.id, tenant.id)

        with pytest.raises(Forbidden):
            await switch_tenant(db, login.token, foreign.id)
        assert (await validate_session(db, login.token)).tenant.id == tenant.id

    async def test_switch_with_expired_session(self, db, owner, tenant):
        now = utcnow() - timedelta(days=31)
        login = await create_session(db, owner.id, tenant.id, now=now)
        with pytest.raises(Unauthorized):
            await switch_tenant(db, login.token, tenant.id)


class TestDeletion:
    async def test_delete_session(self, db, owner, tenant):
        login = await create_session(db, owner.id, tenant.id)
        await delete_session(db, login.token)
        assert await validate_session(db, login.token) is None

    async def test_delete_all_sessions_for_user(self, db, owner, tenant, make_user):
        other = await make_user("otto")
        first = await create_session(db, owner.id, tenant.id)
        second = await create_session(db, owner.id, None)
        untouched = await create_session(db, other.id, None)

        assert await delete_all_sessions_for(db, owner.id) == 2
        assert await validate_session(db, first.token) is None
        assert await validate_session(db, second.token) is None
        assert await validate_session(db, untouched.token) is not None


class TestReselect:
    async def test_removed_member_falls_back_to_default(self, db, owner, tenant, make_user):
        user = await make_user("mia")
        home, _ = await create_tenant(db, user.id, "Mia Home")
        await memberships.add_member(db, tenant.id, owner.id, user.id, Role.MEMBER)
        login = await create_session(db, user.id, tenant.id)

        await memberships.remove_member(db, tenant.id, owner.id, user.id)
        assert await reselect_tenant(db, user.id, tenant.id) == home.id
        assert (await validate_session(db, login.token)).tenant.id == home.id

    async def test_no_remaining_tenant_clears_selection(self, db, owner, tenant, make_user):
        user = await make_user("mia")
        await memberships.add_member(db, tenant.id, owner.id, user.id, Role.MEMBER)
        login = await create_session(db, user.id, tenant.id)

        await memberships.leave(db, tenant.id, user.id)
        assert await reselect_tenant(db, user.id, tenant.id) is None
        assert (await validate_session(db, login.token)).tenant is None

    async def test_other_sessions_untouched(self, db, owner, tenant):
        unrelated = uuid.uuid4()
        login = await create_session(db, owner.id, tenant.id)
        await reselect_tenant(db, owner.id, unrelated)
        assert (await validate_session(db, login.token)).tenant.id == tenant.id
