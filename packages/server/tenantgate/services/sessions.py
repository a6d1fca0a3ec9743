"""
Session service: explicit per-request access context.

Instead of an ambient "current project / current role", every request gets a
``RequestContext`` (principal + active project + impersonation state) built
by ``load_context``. The actual role inside it is always recomputed from
current membership; the copy kept in Redis only remembers which project is
active and whether View As is on.

Session state lives at ``tg:session:{jti}`` with the token's remaining TTL and
is dropped on logout.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Collection, Optional

import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.auth import Principal, revoke_jwt
from tenantgate.core.config import get_settings
from tenantgate.core.errors import Forbidden, NotFound, SessionNotStarted, StaleRoleState
from tenantgate.models.organization import Organization
from tenantgate.services import impersonation
from tenantgate.services.impersonation import ImpersonationState, SessionEvent
from tenantgate.services.memberships import find_default_project_id, get_project
from tenantgate.services.memberships import org_settings
from tenantgate.services.policy import PolicyEvaluator
from tenantgate.services.roles import resolve_actual_role
from tenantgate_shared.schemas.common import Role

log = structlog.get_logger()
settings = get_settings()


def _session_key(session_id: str) -> str:
    return f"tg:session:{session_id}"


class SessionStore:
    """Redis-backed storage for ``ImpersonationState``, keyed by token id."""

    def __init__(self, client: redis.Redis):
        self.client = client

    async def load(self, session_id: str) -> Optional[ImpersonationState]:
        raw = await self.client.get(_session_key(session_id))
        if raw is None:
            return None
        return ImpersonationState.model_validate_json(raw)

    async def save(
        self, session_id: str, state: ImpersonationState, ttl_seconds: int
    ) -> None:
        await self.client.set(
            _session_key(session_id), state.model_dump_json(), ex=max(ttl_seconds, 1)
        )

    async def delete(self, session_id: str) -> None:
        await self.client.delete(_session_key(session_id))


@dataclass(frozen=True)
class RequestContext:
    """Everything an access decision for one request may look at."""

    principal: Principal
    state: ImpersonationState

    @property
    def active_project_id(self) -> Optional[uuid.UUID]:
        return self.state.active_project_id

    @property
    def actual_role(self) -> Role:
        return self.state.actual_role

    @property
    def effective_role(self) -> Role:
        return self.state.effective_role


class SessionService:
    def __init__(
        self,
        session: AsyncSession,
        client: redis.Redis,
        allow_list: Optional[Collection[Role]] = None,
    ):
        self.session = session
        self.store = SessionStore(client)
        self.client = client
        self.allow_list = frozenset(
            allow_list if allow_list is not None else settings.impersonation_allow_list
        )

    def can_impersonate(self, state: ImpersonationState) -> bool:
        return impersonation.can_impersonate(state.actual_role, self.allow_list)

    async def _save(self, principal: Principal, state: ImpersonationState) -> None:
        await self.store.save(principal.session_id, state, principal.token_ttl)

    async def start_session(
        self, principal: Principal, project_id: Optional[uuid.UUID] = None
    ) -> RequestContext:
        """Login boundary: pick the active project and resolve the actual role."""
        if project_id is None:
            project_id = await find_default_project_id(self.session, principal.user_id)
        elif not await PolicyEvaluator(self.session, principal).can_access_project(
            project_id
        ):
            raise NotFound("Project not found", project_id=project_id)

        actual = await resolve_actual_role(self.session, principal, project_id)
        state = ImpersonationState(active_project_id=project_id, actual_role=actual)
        await self._save(principal, state)
        log.info(
            "session.started",
            user_id=str(principal.user_id),
            project_id=str(project_id) if project_id else None,
            actual_role=actual.value,
        )
        return RequestContext(principal=principal, state=state)

    async def load_context(self, principal: Principal) -> RequestContext:
        """Per-request context, recomputed from current membership."""
        state = await self.store.load(principal.session_id)
        if state is None:
            raise SessionNotStarted()

        project_id = state.active_project_id
        if project_id is not None and not await PolicyEvaluator(
            self.session, principal
        ).can_access_project(project_id):
            # Access to the active project was revoked since the last request
            actual = await resolve_actual_role(self.session, principal, None)
            state = impersonation.apply_transition(
                state,
                SessionEvent.PROJECT_SWITCHED,
                self.allow_list,
                actual_role=actual,
                project_id=None,
            )
            await self._save(principal, state)
            log.info("session.project_revoked", user_id=str(principal.user_id))
            return RequestContext(principal=principal, state=state)

        recomputed = await resolve_actual_role(self.session, principal, project_id)
        try:
            impersonation.ensure_current(state, recomputed)
        except StaleRoleState as exc:
            log.info(
                "session.role_recomputed",
                user_id=str(principal.user_id),
                **{k: str(v) for k, v in exc.context.items()},
            )
            state = impersonation.apply_transition(
                state,
                SessionEvent.ROLE_RECOMPUTED,
                self.allow_list,
                actual_role=recomputed,
            )
            await self._save(principal, state)
        return RequestContext(principal=principal, state=state)

    async def switch_project(
        self, principal: Principal, project_id: uuid.UUID
    ) -> RequestContext:
        if not await PolicyEvaluator(self.session, principal).can_access_project(
            project_id
        ):
            raise NotFound("Project not found", project_id=project_id)

        state = await self.store.load(principal.session_id)
        if state is None:
            raise SessionNotStarted()

        actual = await resolve_actual_role(self.session, principal, project_id)
        state = impersonation.apply_transition(
            state,
            SessionEvent.PROJECT_SWITCHED,
            self.allow_list,
            actual_role=actual,
            project_id=project_id,
        )
        await self._save(principal, state)
        log.info(
            "session.project_switched",
            user_id=str(principal.user_id),
            project_id=str(project_id),
            actual_role=actual.value,
        )
        return RequestContext(principal=principal, state=state)

    async def _view_as_enabled(self, project_id: Optional[uuid.UUID]) -> bool:
        if project_id is None:
            return True
        project = await get_project(self.session, project_id)
        if project is None:
            return False
        org = await self.session.get(Organization, project.organization_id)
        return org is not None and org_settings(org).features.view_as_enabled

    async def begin_view_as(self, principal: Principal, role: Role) -> RequestContext:
        ctx = await self.load_context(principal)
        if not await self._view_as_enabled(ctx.active_project_id):
            log.warning(
                "security.impersonation_denied",
                user_id=str(principal.user_id),
                project_id=str(ctx.active_project_id),
                reason="disabled_for_organization",
            )
            raise Forbidden("View As is disabled for this organization")
        state = impersonation.start_impersonation(
            ctx.state, role, self.allow_list, user_id=principal.user_id
        )
        await self._save(principal, state)
        return RequestContext(principal=principal, state=state)

    async def end_view_as(self, principal: Principal) -> RequestContext:
        ctx = await self.load_context(principal)
        state = impersonation.clear_impersonation(ctx.state)
        await self._save(principal, state)
        return RequestContext(principal=principal, state=state)

    async def logout(self, principal: Principal) -> None:
        await self.store.delete(principal.session_id)
        await revoke_jwt(self.client, principal.session_id, principal.token_ttl)
        log.info("session.logout", user_id=str(principal.user_id))
