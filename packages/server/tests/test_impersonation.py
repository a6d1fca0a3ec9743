"""
Tests for the View As state machine.

Covers:
- Allow-list eligibility for starting View As
- Effective role vs actual role
- Central auto-clear on project switch, role recomputation and logout
- Stale role detection
"""

from __future__ import annotations

import uuid

import pytest
from pydantic import ValidationError

from tenantgate.core.errors import Forbidden, StaleRoleState
from tenantgate.services.impersonation import (
    ImpersonationState,
    SessionEvent,
    apply_transition,
    clear_impersonation,
    effective_role,
    ensure_current,
    start_impersonation,
)
from tenantgate_shared.schemas.common import Role

ALLOW = frozenset({Role.ADMIN, Role.SUPPLIER_PM})


def _state(role: Role, view_as=None) -> ImpersonationState:
    return ImpersonationState(
        active_project_id=uuid.uuid4(), actual_role=role, view_as_role=view_as
    )


class TestStart:
    @pytest.mark.parametrize("role", list(Role))
    def test_succeeds_iff_actual_role_allowed(self, role):
        state = _state(role)
        if role in ALLOW:
            assert start_impersonation(state, Role.VIEWER, ALLOW).view_as_role == Role.VIEWER
        else:
            with pytest.raises(Forbidden):
                start_impersonation(state, Role.VIEWER, ALLOW)

    def test_contributor_cannot_view_as_admin(self):
        with pytest.raises(Forbidden):
            start_impersonation(_state(Role.CONTRIBUTOR), Role.ADMIN, ALLOW)

    def test_admin_viewing_as_viewer(self):
        state = start_impersonation(_state(Role.ADMIN), Role.VIEWER, ALLOW)
        assert effective_role(state) == Role.VIEWER
        assert state.actual_role == Role.ADMIN
        assert state.is_impersonating

    def test_cannot_view_as_unassigned(self):
        with pytest.raises(Forbidden):
            start_impersonation(_state(Role.ADMIN), Role.UNASSIGNED, ALLOW)

    def test_original_state_untouched(self):
        state = _state(Role.ADMIN)
        start_impersonation(state, Role.VIEWER, ALLOW)
        assert state.view_as_role is None

    def test_state_is_immutable(self):
        state = _state(Role.ADMIN)
        with pytest.raises(ValidationError):
            state.view_as_role = Role.VIEWER


class TestClear:
    def test_clear_always_succeeds(self):
        state = _state(Role.ADMIN, view_as=Role.VIEWER)
        cleared = clear_impersonation(state)
        assert cleared.view_as_role is None
        assert effective_role(cleared) == Role.ADMIN
        assert clear_impersonation(cleared) == cleared

    def test_effective_role_defaults_to_actual(self):
        assert effective_role(_state(Role.CUSTOMER_PM)) == Role.CUSTOMER_PM


class TestTransitions:
    def test_switch_to_project_outside_allow_list_clears(self):
        state = _state(Role.ADMIN, view_as=Role.VIEWER)
        target = uuid.uuid4()
        new = apply_transition(
            state,
            SessionEvent.PROJECT_SWITCHED,
            ALLOW,
            actual_role=Role.CONTRIBUTOR,
            project_id=target,
        )
        assert new.active_project_id == target
        assert new.actual_role == Role.CONTRIBUTOR
        assert new.view_as_role is None

    def test_switch_to_project_inside_allow_list_keeps_view_as(self):
        state = _state(Role.ADMIN, view_as=Role.VIEWER)
        new = apply_transition(
            state,
            SessionEvent.PROJECT_SWITCHED,
            ALLOW,
            actual_role=Role.SUPPLIER_PM,
            project_id=uuid.uuid4(),
        )
        assert new.view_as_role == Role.VIEWER
        assert new.effective_role == Role.VIEWER

    def test_demotion_clears(self):
        state = _state(Role.ADMIN, view_as=Role.VIEWER)
        new = apply_transition(
            state, SessionEvent.ROLE_RECOMPUTED, ALLOW, actual_role=Role.VIEWER
        )
        assert new.active_project_id == state.active_project_id
        assert not new.is_impersonating

    @pytest.mark.parametrize("event", [SessionEvent.LOGOUT, SessionEvent.SESSION_ENDED])
    def test_logout_and_session_end_clear(self, event):
        state = _state(Role.ADMIN, view_as=Role.VIEWER)
        new = apply_transition(state, event, ALLOW)
        assert new.view_as_role is None
        assert new.actual_role == Role.ADMIN

    def test_recompute_requires_role(self):
        with pytest.raises(ValueError):
            apply_transition(_state(Role.ADMIN), SessionEvent.ROLE_RECOMPUTED, ALLOW)

    def test_switch_requires_project(self):
        with pytest.raises(ValueError):
            apply_transition(
                _state(Role.ADMIN),
                SessionEvent.PROJECT_SWITCHED,
                ALLOW,
                actual_role=Role.ADMIN,
            )


class TestStaleRole:
    def test_current_state_passes(self):
        state = _state(Role.SUPPLIER_PM)
        assert ensure_current(state, Role.SUPPLIER_PM) is state

    def test_changed_role_raises(self):
        with pytest.raises(StaleRoleState) as exc_info:
            ensure_current(_state(Role.ADMIN), Role.VIEWER)
        assert exc_info.value.context == {"stored_role": "admin", "current_role": "viewer"}
