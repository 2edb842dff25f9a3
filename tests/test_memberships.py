"""
Tests for the membership store and tenant lifecycle.

Covers:
- Role ladder ordering
- Tenant creation, unique slugs, listing and default selection
- add / remove / leave / change role permission rules
- Atomic ownership transfer and the single-owner invariant
"""

from __future__ import annotations

import uuid
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.core.errors import BadRequest, Conflict, Forbidden, NotFound
from taskboard.services import invitations, memberships
from taskboard.services.tenants import (
    create_tenant,
    get_default_tenant,
    get_tenant,
    list_user_tenants,
    slugify,
    user_belongs_to_tenant,
)
from taskboard.models.tenant import Tenant
from taskboard_shared.schemas.common import Role


@pytest.fixture
async def admin(db, tenant, owner, make_user):
    user = await make_user("adam")
    await memberships.add_member(db, tenant.id, owner.id, user.id, Role.ADMIN)
    return user


@pytest.fixture
async def member(db, tenant, owner, make_user):
    user = await make_user("mia")
    await memberships.add_member(db, tenant.id, owner.id, user.id, Role.MEMBER)
    return user


# ---------------------------------------------------------------------------
# Role ladder
# ---------------------------------------------------------------------------

class TestRoleLadder:
    def test_ranks(self):
        assert Role.OWNER.rank > Role.ADMIN.rank > Role.MEMBER.rank

    def test_at_least(self):
        assert Role.OWNER.at_least(Role.ADMIN)
        assert Role.ADMIN.at_least(Role.ADMIN)
        assert not Role.MEMBER.at_least(Role.ADMIN)

    def test_outranks(self):
        assert Role.ADMIN.outranks(Role.MEMBER)
        assert not Role.ADMIN.outranks(Role.ADMIN)

    def test_closed_set(self):
        with pytest.raises(ValueError):
            Role("superuser")


# ---------------------------------------------------------------------------
# Tenant lifecycle
# ---------------------------------------------------------------------------

class TestSlugs:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Acme Corp", "acme-corp"),
            ("  Hello,  World!! ", "hello-world"),
            ("Ünïcode Co", "n-code-co"),
            ("!!!", "org"),
        ],
    )
    def test_slugify(self, name, expected):
        assert slugify(name) == expected

    def test_slug_length_capped(self):
        assert len(slugify("a" * 300)) == 100

    async def test_collisions_get_counter(self, db, owner):
        first, _ = await create_tenant(db, owner.id, "Same Name")
        second, _ = await create_tenant(db, owner.id, "Same Name")
        third, _ = await create_tenant(db, owner.id, "Same Name")
        assert [first.slug, second.slug, third.slug] == ["same-name", "same-name-1", "same-name-2"]


class TestTenantLifecycle:
    async def test_creator_is_owner(self, db, tenant, owner):
        assert await memberships.get_role(db, owner.id, tenant.id) == Role.OWNER
        assert await memberships.count_owners(db, tenant.id) == 1

    async def test_list_user_tenants(self, db, owner, tenant, make_user):
        other_owner = await make_user("otto")
        other, _ = await create_tenant(db, other_owner.id, "Other Org")
        await memberships.add_member(db, other.id, other_owner.id, owner.id, Role.MEMBER)

        items = await list_user_tenants(db, owner.id)
        assert [(i["id"], i["role"]) for i in items] == [
            (tenant.id, Role.OWNER),
            (other.id, Role.MEMBER),
        ]

    async def test_default_tenant_is_oldest_membership(self, db, owner, tenant):
        await create_tenant(db, owner.id, "Later Org")
        default = await get_default_tenant(db, owner.id)
        assert default.id == tenant.id

    async def test_inactive_tenant_invisible(self, db, owner, tenant):
        async with db.system() as session:
            row = await session.get(Tenant, tenant.id)
            row.is_active = False
            session.add(row)

        assert await list_user_tenants(db, owner.id) == []
        assert await get_default_tenant(db, owner.id) is None
        assert await memberships.get_role(db, owner.id, tenant.id) is None
        assert not await user_belongs_to_tenant(db, owner.id, tenant.id)
        with pytest.raises(NotFound):
            await get_tenant(db, tenant.id)

    async def test_belongs_to_tenant(self, db, owner, tenant, make_user):
        stranger = await make_user("sam")
        assert await user_belongs_to_tenant(db, owner.id, tenant.id)
        assert not await user_belongs_to_tenant(db, stranger.id, tenant.id)


# ---------------------------------------------------------------------------
# Membership management
# ---------------------------------------------------------------------------

class TestAddMember:
    async def test_add_and_list(self, db, tenant, owner, admin, member):
        listed = await memberships.list_members(db, tenant.id)
        assert [(m.username, m.role) for m in listed] == [
            ("olivia", Role.OWNER),
            ("adam", Role.ADMIN),
            ("mia", Role.MEMBER),
        ]

    async def test_duplicate_is_conflict(self, db, tenant, owner, member):
        with pytest.raises(Conflict):
            await memberships.add_member(db, tenant.id, owner.id, member.id, Role.MEMBER)

    async def test_cannot_add_owner(self, db, tenant, owner, make_user):
        user = await make_user("zed")
        with pytest.raises(BadRequest):
            await memberships.add_member(db, tenant.id, owner.id, user.id, Role.OWNER)

    async def test_member_cannot_add(self, db, tenant, member, make_user):
        user = await make_user("zed")
        with pytest.raises(Forbidden):
            await memberships.add_member(db, tenant.id, member.id, user.id, Role.MEMBER)

    async def test_unknown_user(self, db, tenant, owner):
        with pytest.raises(NotFound):
            await memberships.add_member(db, tenant.id, owner.id, uuid.uuid4(), Role.MEMBER)


class TestRemoveMember:
    async def test_owner_removes_admin(self, db, tenant, owner, admin):
        await memberships.remove_member(db, tenant.id, owner.id, admin.id)
        assert await memberships.get_role(db, admin.id, tenant.id) is None

    async def test_admin_removes_member(self, db, tenant, admin, member):
        await memberships.remove_member(db, tenant.id, admin.id, member.id)
        assert await memberships.get_role(db, member.id, tenant.id) is None

    async def test_admin_cannot_remove_admin(self, db, tenant, owner, admin, make_user):
        other = await make_user("ada")
        await memberships.add_member(db, tenant.id, owner.id, other.id, Role.ADMIN)
        with pytest.raises(Forbidden):
            await memberships.remove_member(db, tenant.id, admin.id, other.id)

    async def test_nobody_removes_owner(self, db, tenant, owner, admin):
        with pytest.raises(Forbidden, match="Cannot remove the organization owner"):
            await memberships.remove_member(db, tenant.id, admin.id, owner.id)

    async def test_member_removes_nobody(self, db, tenant, member, admin):
        with pytest.raises(Forbidden):
            await memberships.remove_member(db, tenant.id, member.id, admin.id)

    async def test_self_removal_rejected(self, db, tenant, admin):
        with pytest.raises(BadRequest):
            await memberships.remove_member(db, tenant.id, admin.id, admin.id)

    async def test_missing_target(self, db, tenant, owner):
        with pytest.raises(NotFound):
            await memberships.remove_member(db, tenant.id, owner.id, uuid.uuid4())


class TestLeave:
    async def test_member_leaves(self, db, tenant, member):
        await memberships.leave(db, tenant.id, member.id)
        assert await memberships.get_role(db, member.id, tenant.id) is None

    async def test_owner_must_transfer_first(self, db, tenant, owner):
        with pytest.raises(BadRequest, match="Transfer ownership"):
            await memberships.leave(db, tenant.id, owner.id)
        assert await memberships.count_owners(db, tenant.id) == 1

    async def test_non_member(self, db, tenant, make_user):
        stranger = await make_user("sam")
        with pytest.raises(NotFound):
            await memberships.leave(db, tenant.id, stranger.id)


class TestChangeRole:
    async def test_owner_promotes_and_demotes(self, db, tenant, owner, member):
        await memberships.change_role(db, tenant.id, owner.id, member.id, Role.ADMIN)
        assert await memberships.get_role(db, member.id, tenant.id) == Role.ADMIN
        await memberships.change_role(db, tenant.id, owner.id, member.id, Role.MEMBER)
        assert await memberships.get_role(db, member.id, tenant.id) == Role.MEMBER

    async def test_admin_promotes_member(self, db, tenant, admin, member):
        await memberships.change_role(db, tenant.id, admin.id, member.id, Role.ADMIN)
        assert await memberships.get_role(db, member.id, tenant.id) == Role.ADMIN

    async def test_admin_cannot_demote_admin(self, db, tenant, owner, admin, make_user):
        other = await make_user("ada")
        await memberships.add_member(db, tenant.id, owner.id, other.id, Role.ADMIN)
        with pytest.raises(Forbidden):
            await memberships.change_role(db, tenant.id, admin.id, other.id, Role.MEMBER)

    async def test_member_cannot_change_roles(self, db, tenant, member, admin):
        with pytest.raises(Forbidden):
            await memberships.change_role(db, tenant.id, member.id, admin.id, Role.MEMBER)

    async def test_owner_role_not_assignable(self, db, tenant, owner, member):
        with pytest.raises(BadRequest):
            await memberships.change_role(db, tenant.id, owner.id, member.id, Role.OWNER)

    async def test_owner_role_not_changeable(self, db, tenant, owner, admin):
        with pytest.raises(Forbidden):
            await memberships.change_role(db, tenant.id, admin.id, owner.id, Role.MEMBER)

    async def test_self_change_rejected(self, db, tenant, admin):
        with pytest.raises(BadRequest):
            await memberships.change_role(db, tenant.id, admin.id, admin.id, Role.MEMBER)


class TestTransferOwnership:
    async def test_transfer_to_member(self, db, tenant, owner, member):
        """Owner O hands over to member M: O becomes admin, M owner, still one owner."""
        await memberships.transfer_ownership(db, tenant.id, owner.id, member.id)

        assert await memberships.get_role(db, owner.id, tenant.id) == Role.ADMIN
        assert await memberships.get_role(db, member.id, tenant.id) == Role.OWNER
        assert await memberships.count_owners(db, tenant.id) == 1

    async def test_only_owner_can_transfer(self, db, tenant, admin, member):
        with pytest.raises(Forbidden):
            await memberships.transfer_ownership(db, tenant.id, admin.id, member.id)

    async def test_target_must_be_member(self, db, tenant, owner, make_user):
        stranger = await make_user("sam")
        with pytest.raises(NotFound):
            await memberships.transfer_ownership(db, tenant.id, owner.id, stranger.id)
        assert await memberships.get_role(db, owner.id, tenant.id) == Role.OWNER

    async def test_self_transfer_rejected(self, db, tenant, owner):
        with pytest.raises(BadRequest):
            await memberships.transfer_ownership(db, tenant.id, owner.id, owner.id)

    async def test_transfer_back(self, db, tenant, owner, member):
        await memberships.transfer_ownership(db, tenant.id, owner.id, member.id)
        await memberships.transfer_ownership(db, tenant.id, member.id, owner.id)
        assert await memberships.get_role(db, owner.id, tenant.id) == Role.OWNER
        assert await memberships.get_role(db, member.id, tenant.id) == Role.ADMIN
        assert await memberships.count_owners(db, tenant.id) == 1

    async def test_failed_promotion_keeps_original_owner(self, db, tenant, owner, member):
        """If the promote write fails, the demote is rolled back with it."""
        real_flush = AsyncSession.flush
        calls = 0

        async def flush_failing_second_time(self, *args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("write failed")
            return await real_flush(self, *args, **kwargs)

        with patch.object(AsyncSession, "flush", flush_failing_second_time):
            with pytest.raises(RuntimeError, match="write failed"):
                await memberships.transfer_ownership(db, tenant.id, owner.id, member.id)

        assert calls == 2
        assert await memberships.get_role(db, owner.id, tenant.id) == Role.OWNER
        assert await memberships.get_role(db, member.id, tenant.id) == Role.MEMBER
        assert await memberships.count_owners(db, tenant.id) == 1


class TestOwnershipHandoff:
    async def test_invited_admin_takes_over_and_owner_leaves(self, db, tenant, owner, make_user):
        successor = await make_user("uma")
        inv = await invitations.create_invitation(
            db, tenant.id, owner.id, successor.email, "admin"
        )
        await invitations.accept_invitation(db, inv.token, successor)
        assert await memberships.get_role(db, successor.id, tenant.id) == Role.ADMIN

        with pytest.raises(Forbidden, match="Cannot remove the organization owner"):
            await memberships.remove_member(db, tenant.id, successor.id, owner.id)
        with pytest.raises(BadRequest):
            await memberships.leave(db, tenant.id, owner.id)

        await memberships.transfer_ownership(db, tenant.id, owner.id, successor.id)
        await memberships.leave(db, tenant.id, owner.id)

        assert await memberships.get_role(db, owner.id, tenant.id) is None
        assert await memberships.get_role(db, successor.id, tenant.id) == Role.OWNER
        assert await memberships.count_owners(db, tenant.id) == 1
        assert [m.user_id for m in await memberships.list_members(db, tenant.id)] == [successor.id]


class TestMemberSearch:
    @pytest.fixture
    async def team(self, db, tenant, owner, make_user):
        for username, email in (("mia", "mia@example.com"), ("bob", "Robert@Corp.io"), ("al_x", "alx@example.com")):
            user = await make_user(username, email)
            await memberships.add_member(db, tenant.id, owner.id, user.id, Role.MEMBER)

    async def test_matches_username_ignoring_case(self, db, tenant, team):
        found = await memberships.list_members(db, tenant.id, search="MI")
        assert [m.username for m in found] == ["mia"]

    async def test_matches_email(self, db, tenant, team):
        found = await memberships.list_members(db, tenant.id, search="corp.io")
        assert [m.username for m in found] == ["bob"]

    async def test_wildcards_are_literal(self, db, tenant, team):
        found = await memberships.list_members(db, tenant.id, search="_")
        assert [m.username for m in found] == ["al_x"]

    async def test_blank_search_lists_everyone(self, db, tenant, team):
        assert len(await memberships.list_members(db, tenant.id, search="  ")) == 4
