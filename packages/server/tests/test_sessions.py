"""
Tests for the session service: login boundary, per-request recomputation,
project switching, View As and logout.
"""

from __future__ import annotations

import uuid

import pytest

from conftest import principal_for
from tenantgate.core.auth import is_jwt_revoked
from tenantgate.core.errors import Forbidden, NotFound, SessionNotStarted
from tenantgate.services import guard
from tenantgate.services.sessions import SessionService, SessionStore
from tenantgate_shared.schemas.common import Role

ALLOW = [Role.ADMIN, Role.SUPPLIER_PM]


@pytest.fixture
def service(session, fake_redis):
    return SessionService(session, fake_redis, allow_list=ALLOW)


class TestStart:
    @pytest.mark.asyncio
    async def test_defaults_to_default_project(self, service, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        p1 = await seed.project(org, "p1")
        p2 = await seed.project(org, "p2")
        await seed.project_member(p1, user, "viewer")
        await seed.project_member(p2, user, "supplier_pm", is_default=True)

        ctx = await service.start_session(principal_for(user))
        assert ctx.active_project_id == p2.id
        assert ctx.actual_role == Role.SUPPLIER_PM
        assert ctx.effective_role == Role.SUPPLIER_PM

    @pytest.mark.asyncio
    async def test_no_membership_means_no_project(self, service, seed):
        user = await seed.user()
        ctx = await service.start_session(principal_for(user))
        assert ctx.active_project_id is None
        assert ctx.actual_role == Role.UNASSIGNED

    @pytest.mark.asyncio
    async def test_explicit_inaccessible_project_is_not_found(self, service, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner])
        project = await seed.project(org)

        with pytest.raises(NotFound):
            await service.start_session(principal_for(user), project.id)

    @pytest.mark.asyncio
    async def test_state_saved_with_token_ttl(self, service, seed, fake_redis):
        user = await seed.user()
        principal = principal_for(user)
        await service.start_session(principal)
        key = f"tg:session:{principal.session_id}"
        assert key in fake_redis.data
        assert fake_redis.ttls[key] == principal.token_ttl


class TestLoadContext:
    @pytest.mark.asyncio
    async def test_requires_started_session(self, service, seed):
        user = await seed.user()
        with pytest.raises(SessionNotStarted):
            await service.load_context(principal_for(user))

    @pytest.mark.asyncio
    async def test_demotion_mid_session_visible_on_next_request(self, service, session, seed):
        owner = await seed.user()
        lead = await seed.user()
        org = await seed.org(admins=[owner], members=[lead])
        project = await seed.project(org)
        await seed.project_member(project, lead, "supplier_pm")
        principal = principal_for(lead)

        await service.start_session(principal, project.id)
        await service.begin_view_as(principal, Role.VIEWER)

        # Another admin demotes the lead
        await guard.change_project_role(
            session, principal_for(owner), project.id, lead.id, Role.CONTRIBUTOR
        )
        await session.commit()

        ctx = await service.load_context(principal)
        assert ctx.actual_role == Role.CONTRIBUTOR
        assert ctx.state.view_as_role is None
        assert ctx.effective_role == Role.CONTRIBUTOR

        stored = await SessionStore(service.client).load(principal.session_id)
        assert stored.actual_role == Role.CONTRIBUTOR

    @pytest.mark.asyncio
    async def test_removed_from_project_drops_active_project(self, service, session, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        project = await seed.project(org)
        await seed.project_member(project, user, "viewer")
        principal = principal_for(user)
        await service.start_session(principal, project.id)

        await guard.remove_project_member(session, principal_for(owner), project.id, user.id)
        await session.commit()

        ctx = await service.load_context(principal)
        assert ctx.active_project_id is None
        assert ctx.actual_role == Role.UNASSIGNED


class TestSwitchProject:
    @pytest.mark.asyncio
    async def test_switch_clears_view_as_when_no_longer_eligible(self, service, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        led = await seed.project(org, "led")
        worked = await seed.project(org, "worked")
        await seed.project_member(led, user, "admin")
        await seed.project_member(worked, user, "contributor")
        principal = principal_for(user)

        await service.start_session(principal, led.id)
        ctx = await service.begin_view_as(principal, Role.VIEWER)
        assert ctx.effective_role == Role.VIEWER

        ctx = await service.switch_project(principal, worked.id)
        assert ctx.active_project_id == worked.id
        assert ctx.actual_role == Role.CONTRIBUTOR
        assert ctx.state.view_as_role is None

    @pytest.mark.asyncio
    async def test_switch_keeps_view_as_when_still_eligible(self, service, seed):
        owner = await seed.user()
        org = await seed.org(admins=[owner])
        p1 = await seed.project(org, "p1")
        p2 = await seed.project(org, "p2")
        principal = principal_for(owner)

        await service.start_session(principal, p1.id)
        await service.begin_view_as(principal, Role.CUSTOMER_PM)
        ctx = await service.switch_project(principal, p2.id)
        assert ctx.actual_role == Role.ADMIN
        assert ctx.effective_role == Role.CUSTOMER_PM

    @pytest.mark.asyncio
    async def test_switch_to_inaccessible_project(self, service, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner])
        project = await seed.project(org)
        principal = principal_for(user)
        await service.start_session(principal)

        with pytest.raises(NotFound):
            await service.switch_project(principal, project.id)
        with pytest.raises(NotFound):
            await service.switch_project(principal, uuid.uuid4())


class TestViewAs:
    @pytest.mark.asyncio
    async def test_contributor_denied(self, service, seed):
        owner = await seed.user()
        user = await seed.user()
        org = await seed.org(admins=[owner], members=[user])
        project = await seed.project(org)
        await seed.project_member(project, user, "contributor")
        principal = principal_for(user)
        await service.start_session(principal, project.id)

        with pytest.raises(Forbidden):
            await service.begin_view_as(principal, Role.ADMIN)

    @pytest.mark.asyncio
    async def test_end_view_as(self, service, seed):
        owner = await seed.user()
        org = await seed.org(admins=[owner])
        project = await seed.project(org)
        principal = principal_for(owner)
        await service.start_session(principal, project.id)
        await service.begin_view_as(principal, Role.VIEWER)

        ctx = await service.end_view_as(principal)
        assert ctx.effective_role == Role.ADMIN
        assert not ctx.state.is_impersonating

    @pytest.mark.asyncio
    async def test_disabled_by_org_setting(self, service, session, seed):
        owner = await seed.user()
        org = await seed.org(admins=[owner])
        org.settings = {"features": {"view_as_enabled": False}}
        session.add(org)
        await session.commit()
        project = await seed.project(org)
        principal = principal_for(owner)
        await service.start_session(principal, project.id)

        with pytest.raises(Forbidden):
            await service.begin_view_as(principal, Role.VIEWER)


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_revokes_and_drops_state(self, service, seed, fake_redis):
        owner = await seed.user()
        org = await seed.org(admins=[owner])
        project = await seed.project(org)
        principal = principal_for(owner)
        await service.start_session(principal, project.id)
        await service.begin_view_as(principal, Role.VIEWER)

        await service.logout(principal)

        assert await is_jwt_revoked(fake_redis, principal.session_id)
        with pytest.raises(SessionNotStarted):
            await service.load_context(principal)
