"""
Role resolution: the application-layer view of "who is this principal here".

``resolve_actual_role`` walks an ordered precedence chain, first match wins:

1. platform admin                          -> admin
2. org admin of the project's organization -> admin
3. active project membership               -> that membership's role
4. nothing matched                         -> unassigned

Each rule is a separate coroutine so it can be tested on its own. The result
is never persisted or cached across requests; callers recompute it whenever
the active project changes.

``unassigned`` means no access. It is never granted by the permission matrix.
"""

from __future__ import annotations

import uuid
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.auth import Principal
from tenantgate.services.memberships import active_project_role_stmt, get_project
from tenantgate.services.policy import PolicyEvaluator
from tenantgate_shared.schemas.common import Role

log = structlog.get_logger()

RoleRule = Callable[
    [AsyncSession, Principal, Optional[uuid.UUID]], Awaitable[Optional[Role]]
]


async def platform_admin_rule(
    session: AsyncSession, principal: Principal, project_id: Optional[uuid.UUID]
) -> Optional[Role]:
    if await PolicyEvaluator(session, principal).is_platform_admin():
        return Role.ADMIN
    return None


async def org_admin_rule(
    session: AsyncSession, principal: Principal, project_id: Optional[uuid.UUID]
) -> Optional[Role]:
    if project_id is None:
        return None
    project = await get_project(session, project_id)
    if project is None:
        return None
    if await PolicyEvaluator(session, principal).is_org_admin(project.organization_id):
        return Role.ADMIN
    return None


async def project_membership_rule(
    session: AsyncSession, principal: Principal, project_id: Optional[uuid.UUID]
) -> Optional[Role]:
    if project_id is None:
        return None
    result = await session.execute(
        active_project_role_stmt(principal.user_id, project_id)
    )
    stored = result.scalar_one_or_none()
    if stored is None:
        return None
    try:
        return Role(stored)
    except ValueError:
        # Stored name unknown to this deployment's matrix: treat as no role
        log.warning(
            "roles.unknown_stored_role",
            user_id=str(principal.user_id),
            project_id=str(project_id),
            stored_role=stored,
        )
        return None


PRECEDENCE: tuple[RoleRule, ...] = (
    platform_admin_rule,
    org_admin_rule,
    project_membership_rule,
)


async def resolve_actual_role(
    session: AsyncSession,
    principal: Principal,
    project_id: Optional[uuid.UUID],
) -> Role:
    """Compute the principal's actual role on ``project_id`` from current membership."""
    for rule in PRECEDENCE:
        role = await rule(session, principal, project_id)
        if role is not None:
            return role
    return Role.UNASSIGNED
