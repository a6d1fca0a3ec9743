"""
Tests for the membership mutation guard.

Covers:
- Last-admin protection on org removal and demotion
- Self-modification block on project memberships, for every role
- Actor authorization and not-found masking
- Org membership prerequisite for project membership
- Compare-and-swap on the organization's membership version
- Org-level membership defaults for adds without a role
"""

from __future__ import annotations

import asyncio
import uuid

import pytest
from pydantic import ValidationError
from sqlmodel import select

from conftest import principal_for
from tenantgate.core.errors import (
    ConcurrentMembershipChange,
    DuplicateMembership,
    Forbidden,
    LastAdminViolation,
    MembershipNotFound,
    NotFound,
    NotOrganizationMember,
    SelfModificationViolation,
)
from tenantgate.models.organization import Organization
from tenantgate.models.project_membership import ProjectMembership
from tenantgate.services import guard
from tenantgate.services.memberships import (
    get_org_membership,
    get_project_membership,
    list_org_admin_ids,
)
from tenantgate_shared.schemas.common import ASSIGNABLE_PROJECT_ROLES, OrgRole, Role
from tenantgate_shared.schemas.organizations import MembershipDefaults


class TestLastAdmin:
    @pytest.mark.asyncio
    async def test_removing_sole_admin_fails(self, session, seed):
        u1 = await seed.user()
        org = await seed.org(admins=[u1])
        org_id, u1_id = org.id, u1.id

        with pytest.raises(LastAdminViolation):
            await guard.remove_org_member(session, principal_for(u1), org_id, u1_id)
        await session.rollback()
        assert await list_org_admin_ids(session, org_id) == {u1_id}

    @pytest.mark.asyncio
    async def test_demoting_sole_admin_fails(self, session, seed):
        u1 = await seed.user()
        org = await seed.org(admins=[u1])

        with pytest.raises(LastAdminViolation):
            await guard.change_org_role(
                session, principal_for(u1), org.id, u1.id, OrgRole.MEMBER
            )

    @pytest.mark.asyncio
    async def test_platform_admin_cannot_remove_last_admin_either(self, session, seed):
        root = await seed.user(platform_admin=True)
        u1 = await seed.user()
        org = await seed.org(admins=[u1])

        with pytest.raises(LastAdminViolation):
            await guard.remove_org_member(session, principal_for(root), org.id, u1.id)

    @pytest.mark.asyncio
    async def test_add_second_admin_then_remove_first(self, session, seed):
        """Org1 admins {U1}; add U2 as admin, then removing U1 succeeds."""
        u1 = await seed.user()
        u2 = await seed.user()
        org = await seed.org(admins=[u1])
        org_id, u1_id, u2_id = org.id, u1.id, u2.id
        actor = principal_for(u1)

        with pytest.raises(LastAdminViolation):
            await guard.remove_org_member(session, actor, org_id, u1_id)
        await session.rollback()

        await guard.add_org_member(session, actor, org_id, u2_id, OrgRole.ADMIN)
        await session.commit()
        await guard.remove_org_member(session, actor, org_id, u1_id)
        await session.commit()

        assert await list_org_admin_ids(session, org_id) == {u2_id}

    @pytest.mark.asyncio
    async def test_with_two_admins_demotion_succeeds(self, session, seed):
        u1 = await seed.user()
        u2 = await seed.user()
        org = await seed.org(admins=[u1, u2])

        membership = await guard.change_org_role(
            session, principal_for(u1), org.id, u2.id, OrgRole.MEMBER
        )
        await session.commit()
        assert membership.role == "member"
        assert await list_org_admin_ids(session, org.id) == {u1.id}

    @pytest.mark.asyncio
    async def test_removing_plain_member_is_fine(self, session, seed):
        u1 = await seed.user()
        member = await seed.user()
        org = await seed.org(admins=[u1], members=[member])

        await guard.remove_org_member(session, principal_for(u1), org.id, member.id)
        await session.commit()
        membership = await get_org_membership(session, member.id, org.id)
        assert membership.is_active is False


class TestOrgMembers:
    @pytest.mark.asyncio
    async def test_member_cannot_add_members(self, session, seed):
        admin = await seed.user()
        member = await seed.user()
        newcomer = await seed.user()
        org = await seed.org(admins=[admin], members=[member])

        with pytest.raises(Forbidden):
            await guard.add_org_member(session, principal_for(member), org.id, newcomer.id)

    @pytest.mark.asyncio
    async def test_outsider_gets_not_found(self, session, seed):
        admin = await seed.user()
        outsider = await seed.user()
        org = await seed.org(admins=[admin])

        with pytest.raises(NotFound):
            await guard.add_org_member(session, principal_for(outsider), org.id, outsider.id)

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, session, seed):
        admin = await seed.user()
        member = await seed.user()
        org = await seed.org(admins=[admin], members=[member])

        with pytest.raises(DuplicateMembership):
            await guard.add_org_member(session, principal_for(admin), org.id, member.id)

    @pytest.mark.asyncio
    async def test_re_adding_reactivates_row(self, session, seed):
        admin = await seed.user()
        member = await seed.user()
        org = await seed.org(admins=[admin], members=[member])
        actor = principal_for(admin)
        original = await get_org_membership(session, member.id, org.id)
        original_id = original.id

        await guard.remove_org_member(session, actor, org.id, member.id)
        await session.commit()
        again = await guard.add_org_member(session, actor, org.id, member.id, OrgRole.ADMIN)
        await session.commit()

        assert again.id == original_id
        assert again.is_active is True
        assert again.role == "admin"

    @pytest.mark.asyncio
    async def test_unknown_user(self, session, seed):
        admin = await seed.user()
        org = await seed.org(admins=[admin])

        with pytest.raises(NotFound):
            await guard.add_org_member(session, principal_for(admin), org.id, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_removing_missing_membership(self, session, seed):
        admin = await seed.user()
        stranger = await seed.user()
        org = await seed.org(admins=[admin])

        with pytest.raises(MembershipNotFound):
            await guard.remove_org_member(session, principal_for(admin), org.id, stranger.id)


class TestSelfModification:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", sorted(r.value for r in ASSIGNABLE_PROJECT_ROLES))
    async def test_cannot_remove_self(self, session, seed, role):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        project = await seed.project(org)
        await seed.project_member(project, user, role)

        with pytest.raises(SelfModificationViolation):
            await guard.remove_project_member(session, principal_for(user), project.id, user.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", sorted(r.value for r in ASSIGNABLE_PROJECT_ROLES))
    async def test_cannot_change_own_role(self, session, seed, role):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        project = await seed.project(org)
        await seed.project_member(project, user, role)

        for target in (Role.ADMIN, Role.VIEWER):
            with pytest.raises(SelfModificationViolation):
                await guard.change_project_role(
                    session, principal_for(user), project.id, user.id, target
                )

    @pytest.mark.asyncio
    async def test_org_admin_cannot_remove_self_from_project(self, session, seed):
        owner = await seed.user()
        org = await seed.org(admins=[owner])
        project = await seed.project(org)
        await seed.project_member(project, owner, "admin")

        with pytest.raises(SelfModificationViolation):
            await guard.remove_project_member(session, principal_for(owner), project.id, owner.id)
        membership = await get_project_membership(session, owner.id, project.id)
        assert membership is not None


class TestProjectMembers:
    @pytest.mark.asyncio
    async def test_add_change_remove(self, session, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        project = await seed.project(org)
        actor = principal_for(owner)

        added = await guard.add_project_member(session, actor, project.id, user.id, Role.CONTRIBUTOR)
        await session.commit()
        assert added.role == "contributor"

        changed = await guard.change_project_role(session, actor, project.id, user.id, Role.SUPPLIER_PM)
        await session.commit()
        assert changed.role == "supplier_pm"

        await guard.remove_project_member(session, actor, project.id, user.id)
        await session.commit()
        assert await get_project_membership(session, user.id, project.id) is None

    @pytest.mark.asyncio
    async def test_project_admin_can_manage_members(self, session, seed):
        owner = await seed.user()
        lead = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[lead, user])
        project = await seed.project(org)
        await seed.project_member(project, lead, "admin")

        added = await guard.add_project_member(
            session, principal_for(lead), project.id, user.id, Role.VIEWER
        )
        assert added.role == "viewer"

    @pytest.mark.asyncio
    async def test_contributor_cannot_manage_members(self, session, seed):
        owner = await seed.user()
        worker = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[worker, user])
        project = await seed.project(org)
        await seed.project_member(project, worker, "contributor")

        with pytest.raises(Forbidden):
            await guard.add_project_member(session, principal_for(worker), project.id, user.id)

    @pytest.mark.asyncio
    async def test_non_member_sees_not_found(self, session, seed):
        owner = await seed.user()
        outsider = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        project = await seed.project(org)

        with pytest.raises(NotFound):
            await guard.add_project_member(session, principal_for(outsider), project.id, user.id)
        with pytest.raises(NotFound):
            await guard.add_project_member(session, principal_for(owner), uuid.uuid4(), user.id)

    @pytest.mark.asyncio
    async def test_must_be_org_member_first(self, session, seed):
        owner = await seed.user()
        stranger = await seed.user()
        org = await seed.org(admins=[owner])
        project = await seed.project(org)

        with pytest.raises(NotOrganizationMember):
            await guard.add_project_member(session, principal_for(owner), project.id, stranger.id)

    @pytest.mark.asyncio
    async def test_one_role_per_project(self, session, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        project = await seed.project(org)
        await seed.project_member(project, user, "viewer")

        with pytest.raises(DuplicateMembership):
            await guard.add_project_member(session, principal_for(owner), project.id, user.id, Role.ADMIN)

    @pytest.mark.asyncio
    async def test_unassigned_cannot_be_assigned(self, session, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        project = await seed.project(org)

        with pytest.raises(ValueError):
            await guard.add_project_member(
                session, principal_for(owner), project.id, user.id, Role.UNASSIGNED
            )

    @pytest.mark.asyncio
    async def test_missing_membership(self, session, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        project = await seed.project(org)

        with pytest.raises(MembershipNotFound):
            await guard.change_project_role(session, principal_for(owner), project.id, user.id, Role.VIEWER)

    @pytest.mark.asyncio
    async def test_set_default_project(self, session, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        p1 = await seed.project(org, "p1")
        p2 = await seed.project(org, "p2")
        await seed.project_member(p1, user, "viewer", is_default=True)
        await seed.project_member(p2, user, "viewer")

        await guard.set_default_project(session, principal_for(user), p2.id)
        await session.commit()

        result = await session.execute(
            select(ProjectMembership.project_id, ProjectMembership.is_default).where(
                ProjectMembership.user_id == user.id
            )
        )
        assert dict(result.all()) == {p1.id: False, p2.id: True}


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_every_mutation_bumps_version(self, session, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner])
        project = await seed.project(org)
        actor = principal_for(owner)

        await guard.add_org_member(session, actor, org.id, user.id)
        await guard.add_project_member(session, actor, project.id, user.id)
        await guard.change_project_role(session, actor, project.id, user.id, Role.ADMIN)
        await session.commit()

        locked = await guard.lock_organization(session, org.id)
        assert locked.membership_version == 3

    @pytest.mark.asyncio
    async def test_lost_race_raises(self, session_factory, seed):
        """Two sessions read the same version; only the first writer commits."""
        u1 = await seed.user()
        u2 = await seed.user()
        org = await seed.org(admins=[u1, u2])

        async with session_factory() as first, session_factory() as second:
            org_seen_by_first = await guard.lock_organization(first, org.id)
            expected = org_seen_by_first.membership_version

            # The second request removes an admin and commits first
            await guard.remove_org_member(second, principal_for(u2), org.id, u1.id)
            await second.commit()

            with pytest.raises(ConcurrentMembershipChange):
                await guard.bump_membership_version(first, org.id, expected)
            await first.rollback()

        async with session_factory() as check:
            assert await list_org_admin_ids(check, org.id) == {u2.id}

    @pytest.mark.asyncio
    async def test_stale_remover_cannot_remove_last_admin(self, session_factory, seed):
        """After one admin is removed, a request built on the old count is refused."""
        u1 = await seed.user()
        u2 = await seed.user()
        org = await seed.org(admins=[u1, u2])

        async with session_factory() as first:
            await guard.remove_org_member(first, principal_for(u1), org.id, u1.id)
            await first.commit()

        async with session_factory() as second:
            with pytest.raises(LastAdminViolation):
                await guard.remove_org_member(second, principal_for(u2), org.id, u2.id)

    @pytest.mark.asyncio
    async def test_interleaved_removals_keep_one_admin(self, session_factory, seed, monkeypatch):
        """Both removals count two admins before either writes; only one commits."""
        u1 = await seed.user()
        u2 = await seed.user()
        org = await seed.org(admins=[u1, u2])
        org_id = org.id

        real_count = guard.count_org_admins
        counts: list[int] = []
        both_counted = asyncio.Event()
        first_done = asyncio.Event()

        async def count_then_wait(session, oid):
            total = await real_count(session, oid)
            counts.append(total)
            position = len(counts)
            if position == 2:
                both_counted.set()
            await both_counted.wait()
            if position == 2:
                await first_done.wait()
            return total

        monkeypatch.setattr(guard, "count_org_admins", count_then_wait)

        async def remove_self(user):
            async with session_factory() as s:
                try:
                    await guard.remove_org_member(s, principal_for(user), org_id, user.id)
                    await s.commit()
                    return "ok"
                except ConcurrentMembershipChange:
                    await s.rollback()
                    return "conflict"
                finally:
                    first_done.set()

        results = await asyncio.gather(remove_self(u1), remove_self(u2))

        assert counts == [2, 2]
        assert sorted(results) == ["conflict", "ok"]
        async with session_factory() as check:
            assert len(await list_org_admin_ids(check, org_id)) == 1

    @pytest.mark.asyncio
    async def test_missing_org(self, session):
        with pytest.raises(NotFound):
            await guard.lock_organization(session, uuid.uuid4())
        with pytest.raises(ConcurrentMembershipChange):
            await guard.bump_membership_version(session, uuid.uuid4(), 0)


class TestOrganizationRow:
    @pytest.mark.asyncio
    async def test_version_starts_at_zero(self, session, seed):
        admin = await seed.user()
        org = await seed.org(admins=[admin])
        result = await session.execute(select(Organization).where(Organization.id == org.id))
        assert result.scalar_one().membership_version == 0


class TestMembershipDefaults:
    @pytest.mark.asyncio
    async def test_builtin_defaults(self, session, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner])
        project = await seed.project(org)
        actor = principal_for(owner)

        org_membership = await guard.add_org_member(session, actor, org.id, user.id)
        project_membership = await guard.add_project_member(session, actor, project.id, user.id)

        assert org_membership.role == "member"
        assert project_membership.role == "viewer"

    @pytest.mark.asyncio
    async def test_org_settings_apply_when_role_omitted(self, session, seed):
        owner = await seed.user()
        user = await seed.user()
        other = await seed.user()
        org = await seed.org(admins=[owner])
        org.settings = {
            "membership_defaults": {
                "default_org_role": "admin",
                "default_project_role": "contributor",
            }
        }
        session.add(org)
        await session.commit()
        project = await seed.project(org)
        actor = principal_for(owner)

        org_membership = await guard.add_org_member(session, actor, org.id, user.id)
        project_membership = await guard.add_project_member(session, actor, project.id, user.id)
        await guard.add_org_member(session, actor, org.id, other.id, OrgRole.MEMBER)
        explicit = await guard.add_project_member(
            session, actor, project.id, other.id, Role.CUSTOMER_PM
        )

        assert org_membership.role == "admin"
        assert project_membership.role == "contributor"
        assert explicit.role == "customer_pm"

    def test_unassigned_is_not_a_valid_default(self):
        with pytest.raises(ValidationError):
            MembershipDefaults(default_project_role="unassigned")
        with pytest.raises(ValidationError):
            MembershipDefaults(default_project_role="owner")
