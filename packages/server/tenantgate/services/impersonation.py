"""
View As (impersonation) controller.

``ImpersonationState`` is an immutable value. Every transition returns a new
state; nothing mutates one in place. All auto-clear triggers are evaluated
in ``apply_transition`` so there is exactly one place that decides when a
view-as role survives a session change.

The effective role only ever feeds the permission matrix. Data access is
decided by ``tenantgate.services.policy`` from the principal alone.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Collection, Optional

import structlog
from pydantic import BaseModel, ConfigDict

from tenantgate.core.errors import Forbidden, StaleRoleState
from tenantgate_shared.schemas.common import Role

log = structlog.get_logger()

_UNSET = object()


class ImpersonationState(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_project_id: Optional[uuid.UUID] = None
    actual_role: Role = Role.UNASSIGNED
    view_as_role: Optional[Role] = None

    @property
    def effective_role(self) -> Role:
        return self.view_as_role if self.view_as_role is not None else self.actual_role

    @property
    def is_impersonating(self) -> bool:
        return self.view_as_role is not None


class SessionEvent(str, Enum):
    PROJECT_SWITCHED = "project_switched"
    ROLE_RECOMPUTED = "role_recomputed"
    LOGOUT = "logout"
    SESSION_ENDED = "session_ended"


def can_impersonate(role: Role, allow_list: Collection[Role]) -> bool:
    return role in allow_list


def effective_role(state: ImpersonationState) -> Role:
    return state.effective_role


def start_impersonation(
    state: ImpersonationState,
    view_as_role: Role,
    allow_list: Collection[Role],
    *,
    user_id: Optional[uuid.UUID] = None,
) -> ImpersonationState:
    """Return a new state viewing as ``view_as_role``.

    Raises Forbidden unless the actual role is in ``allow_list``.
    """
    if not can_impersonate(state.actual_role, allow_list):
        log.warning(
            "security.impersonation_denied",
            user_id=str(user_id) if user_id else None,
            project_id=str(state.active_project_id) if state.active_project_id else None,
            actual_role=state.actual_role.value,
            requested_role=Role(view_as_role).value,
        )
        raise Forbidden(
            "Your role cannot use View As on this project",
            actual_role=state.actual_role.value,
        )
    view_as_role = Role(view_as_role)
    if view_as_role is Role.UNASSIGNED:
        raise Forbidden("Cannot view as 'unassigned'")

    log.info(
        "security.impersonation_started",
        user_id=str(user_id) if user_id else None,
        project_id=str(state.active_project_id) if state.active_project_id else None,
        actual_role=state.actual_role.value,
        view_as_role=view_as_role.value,
    )
    return state.model_copy(update={"view_as_role": view_as_role})


def clear_impersonation(state: ImpersonationState) -> ImpersonationState:
    if state.view_as_role is None:
        return state
    return state.model_copy(update={"view_as_role": None})


def apply_transition(
    state: ImpersonationState,
    event: SessionEvent,
    allow_list: Collection[Role],
    *,
    actual_role: Optional[Role] = None,
    project_id=_UNSET,
) -> ImpersonationState:
    """Central session-state transition.

    * LOGOUT / SESSION_ENDED: impersonation is cleared.
    * PROJECT_SWITCHED / ROLE_RECOMPUTED: the actual role (and, for a switch,
      the active project) is replaced; view-as is kept only while the new
      actual role is still in ``allow_list``.
    """
    if event in (SessionEvent.LOGOUT, SessionEvent.SESSION_ENDED):
        return clear_impersonation(state)

    if actual_role is None:
        raise ValueError(f"{event.value} requires the recomputed actual role")

    update: dict = {"actual_role": Role(actual_role)}
    if event is SessionEvent.PROJECT_SWITCHED:
        if project_id is _UNSET:
            raise ValueError("project_switched requires project_id")
        update["active_project_id"] = project_id

    new_state = state.model_copy(update=update)
    if new_state.is_impersonating and not can_impersonate(
        new_state.actual_role, allow_list
    ):
        log.info(
            "security.impersonation_cleared",
            trigger=event.value,
            project_id=str(new_state.active_project_id)
            if new_state.active_project_id
            else None,
            actual_role=new_state.actual_role.value,
        )
        new_state = clear_impersonation(new_state)
    return new_state


def ensure_current(state: ImpersonationState, recomputed: Role) -> ImpersonationState:
    """Raise StaleRoleState if ``recomputed`` differs from the stored actual role."""
    if state.actual_role != recomputed:
        raise StaleRoleState(
            stored_role=state.actual_role.value,
            current_role=Role(recomputed).value,
        )
    return state
