"""
Policy evaluator: the persistence-layer access predicates.

Each predicate exists in two forms built from the same SQL:

* a clause builder (``can_access_project_clause(user_id, project_id)``) that a
  data-access query embeds so the check runs per row, inside the database;
* a scalar check on ``PolicyEvaluator`` that executes that same clause.

Every tenant-scoped read must filter with ``can_access_project_clause`` (or
``scope_to_accessible_projects``) and every write with
``can_manage_project_clause``. Re-implementing a direct membership join
instead silently drops org-admin and platform-admin access.

Predicates are parameterized by ids already known to the query and by the
principal's user id. They never accept a role, so View As can neither widen
nor narrow what data a principal reaches. They never raise: a missing id,
an unknown row or a database error evaluates to False.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlmodel import select

from tenantgate.core.auth import Principal
from tenantgate.models.org_membership import OrganizationMembership
from tenantgate.models.project import Project
from tenantgate.models.user import User
from tenantgate.services.memberships import active_project_role_stmt
from tenantgate_shared.schemas.common import OrgRole, Role

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Clause builders
# ---------------------------------------------------------------------------

def is_platform_admin_clause(user_id: uuid.UUID):
    u = aliased(User)
    return (
        select(u.id)
        .where(u.id == user_id, u.is_platform_admin.is_(True))
        .exists()
    )


def is_org_member_clause(user_id: uuid.UUID, org_id):
    om = aliased(OrganizationMembership)
    return (
        select(om.id)
        .where(
            om.user_id == user_id,
            om.organization_id == org_id,
            om.is_active.is_(True),
        )
        .exists()
    )


def is_org_admin_clause(user_id: uuid.UUID, org_id):
    om = aliased(OrganizationMembership)
    return (
        select(om.id)
        .where(
            om.user_id == user_id,
            om.organization_id == org_id,
            om.role == OrgRole.ADMIN.value,
            om.is_active.is_(True),
        )
        .exists()
    )


def _org_admin_of_project_clause(user_id: uuid.UUID, project_id):
    p = aliased(Project)
    return (
        select(p.id)
        .where(p.id == project_id, is_org_admin_clause(user_id, p.organization_id))
        .exists()
    )


def can_access_project_clause(user_id: uuid.UUID, project_id):
    """Platform admin OR org admin of the project's org OR active project member."""
    return or_(
        is_platform_admin_clause(user_id),
        _org_admin_of_project_clause(user_id, project_id),
        active_project_role_stmt(user_id, project_id).exists(),
    )


def can_manage_project_clause(user_id: uuid.UUID, project_id):
    """Platform admin OR org admin of the project's org OR project admin."""
    return or_(
        is_platform_admin_clause(user_id),
        _org_admin_of_project_clause(user_id, project_id),
        active_project_role_stmt(
            user_id, project_id, roles=[Role.ADMIN.value]
        ).exists(),
    )


def scope_to_accessible_projects(stmt, project_id_column, principal: Principal):
    """Restrict a SELECT to rows whose project the principal can access.

    ``project_id_column`` must come from the row itself (e.g.
    ``Timesheet.project_id``), never from a client-supplied value.
    """
    return stmt.where(can_access_project_clause(principal.user_id, project_id_column))


def scope_to_manageable_projects(stmt, project_id_column, principal: Principal):
    return stmt.where(can_manage_project_clause(principal.user_id, project_id_column))


# ---------------------------------------------------------------------------
# Scalar predicates
# ---------------------------------------------------------------------------

class PolicyEvaluator:
    """Scalar access checks for one principal.

    Stateless apart from the session and principal; cheap to build per
    request and safe to call per row.
    """

    def __init__(self, session: AsyncSession, principal: Principal):
        self.session = session
        self.principal = principal

    async def _evaluate(self, clause, check: str, **context: Any) -> bool:
        try:
            result = await self.session.execute(select(clause.label("allowed")))
            return bool(result.scalar())
        except (SQLAlchemyError, ValueError, TypeError) as exc:
            log.warning(
                "policy.evaluation_failed",
                check=check,
                user_id=str(self.principal.user_id),
                error=str(exc),
                **{k: str(v) for k, v in context.items()},
            )
            return False

    async def is_platform_admin(self) -> bool:
        return await self._evaluate(
            is_platform_admin_clause(self.principal.user_id), "is_platform_admin"
        )

    async def is_org_member(self, org_id: Optional[uuid.UUID]) -> bool:
        if org_id is None:
            return False
        return await self._evaluate(
            is_org_member_clause(self.principal.user_id, org_id),
            "is_org_member",
            org_id=org_id,
        )

    async def is_org_admin(self, org_id: Optional[uuid.UUID]) -> bool:
        if org_id is None:
            return False
        return await self._evaluate(
            is_org_admin_clause(self.principal.user_id, org_id),
            "is_org_admin",
            org_id=org_id,
        )

    async def can_access_project(self, project_id: Optional[uuid.UUID]) -> bool:
        if project_id is None:
            return False
        # A platform admin still cannot "access" a project that does not exist
        clause = and_(
            _project_exists_clause(project_id),
            can_access_project_clause(self.principal.user_id, project_id),
        )
        return await self._evaluate(clause, "can_access_project", project_id=project_id)

    async def can_manage_project(self, project_id: Optional[uuid.UUID]) -> bool:
        if project_id is None:
            return False
        clause = and_(
            _project_exists_clause(project_id),
            can_manage_project_clause(self.principal.user_id, project_id),
        )
        return await self._evaluate(clause, "can_manage_project", project_id=project_id)

    async def accessible_project_ids(self) -> set[uuid.UUID]:
        try:
            result = await self.session.execute(
                select(Project.id).where(
                    can_access_project_clause(self.principal.user_id, Project.id)
                )
            )
            return set(result.scalars().all())
        except SQLAlchemyError as exc:
            log.warning(
                "policy.evaluation_failed",
                check="accessible_project_ids",
                user_id=str(self.principal.user_id),
                error=str(exc),
            )
            return set()


def _project_exists_clause(project_id):
    p = aliased(Project)
    return select(p.id).where(p.id == project_id).exists()

