"""
Membership store, read side.

Pure reads over organizations, projects and their memberships. Nothing here
writes: every mutation goes through ``tenantgate.services.guard``.

A project membership only counts ("active") while the member also holds an
active membership of the project's organization. ``active_project_role_stmt``
is the one place that join is written; the policy evaluator and the role
resolver both build on it.
"""

from __future__ import annotations

import uuid
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlmodel import select

from tenantgate.models.org_membership import OrganizationMembership
from tenantgate.models.organization import Organization
from tenantgate.models.project import Project
from tenantgate.models.project_membership import ProjectMembership
from tenantgate.models.user import User
from tenantgate_shared.schemas.common import OrgRole
from tenantgate_shared.schemas.organizations import OrgSettings


def active_project_role_stmt(
    user_id: uuid.UUID, project_id, roles: Optional[Iterable[str]] = None
):
    """SELECT the user's role on a project, honoring org membership.

    ``project_id`` may be a value or a column from an enclosing query.
    Aliased tables keep the statement safe to embed as a correlated subquery.
    ``roles`` narrows the match to memberships holding one of those roles.
    """
    pm = aliased(ProjectMembership)
    p = aliased(Project)
    om = aliased(OrganizationMembership)
    stmt = (
        select(pm.role)
        .join(p, p.id == pm.project_id)
        .join(
            om,
            (om.organization_id == p.organization_id) & (om.user_id == pm.user_id),
        )
        .where(
            pm.user_id == user_id,
            pm.project_id == project_id,
            om.is_active.is_(True),
        )
    )
    if roles is not None:
        stmt = stmt.where(pm.role.in_(list(roles)))
    return stmt


def org_settings(org: Organization) -> OrgSettings:
    return OrgSettings.model_validate(org.settings or {})


async def get_project(session: AsyncSession, project_id: uuid.UUID) -> Optional[Project]:
    return await session.get(Project, project_id)


async def get_user(session: AsyncSession, user_id: uuid.UUID) -> Optional[User]:
    return await session.get(User, user_id)


async def get_org_membership(
    session: AsyncSession, user_id: uuid.UUID, org_id: uuid.UUID
) -> Optional[OrganizationMembership]:
    result = await session.execute(
        select(OrganizationMembership)
        .where(
            OrganizationMembership.user_id == user_id,
            OrganizationMembership.organization_id == org_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_project_membership(
    session: AsyncSession, user_id: uuid.UUID, project_id: uuid.UUID
) -> Optional[ProjectMembership]:
    result = await session.execute(
        select(ProjectMembership)
        .where(
            ProjectMembership.user_id == user_id,
            ProjectMembership.project_id == project_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def count_org_admins(session: AsyncSession, org_id: uuid.UUID) -> int:
    """Number of active admin memberships in an organization."""
    result = await session.execute(
        select(func.count())
        .select_from(OrganizationMembership)
        .where(
            OrganizationMembership.organization_id == org_id,
            OrganizationMembership.role == OrgRole.ADMIN.value,
            OrganizationMembership.is_active.is_(True),
        )
    )
    return int(result.scalar_one())


async def list_org_admin_ids(session: AsyncSession, org_id: uuid.UUID) -> set[uuid.UUID]:
    result = await session.execute(
        select(OrganizationMembership.user_id).where(
            OrganizationMembership.organization_id == org_id,
            OrganizationMembership.role == OrgRole.ADMIN.value,
            OrganizationMembership.is_active.is_(True),
        )
    )
    return set(result.scalars().all())


async def list_org_members(session: AsyncSession, org_id: uuid.UUID) -> list[dict]:
    """List all members of an organization with user info."""
    result = await session.execute(
        select(OrganizationMembership, User)
        .join(User, User.id == OrganizationMembership.user_id)
        .where(OrganizationMembership.organization_id == org_id)
        .order_by(OrganizationMembership.created_at)
    )
    return [
        {
            "user_id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "role": om.role,
            "is_active": om.is_active,
            "created_at": om.created_at,
        }
        for om, user in result.all()
    ]


async def list_project_members(session: AsyncSession, project_id: uuid.UUID) -> list[dict]:
    result = await session.execute(
        select(ProjectMembership, User)
        .join(User, User.id == ProjectMembership.user_id)
        .where(ProjectMembership.project_id == project_id)
        .order_by(ProjectMembership.created_at)
    )
    return [
        {
            "user_id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "role": pm.role,
            "is_default": pm.is_default,
            "created_at": pm.created_at,
        }
        for pm, user in result.all()
    ]


async def find_default_project_id(
    session: AsyncSession, user_id: uuid.UUID
) -> Optional[uuid.UUID]:
    """The user's default project, else their oldest active membership, else None."""
    pm = aliased(ProjectMembership)
    p = aliased(Project)
    om = aliased(OrganizationMembership)
    result = await session.execute(
        select(pm.project_id)
        .join(p, p.id == pm.project_id)
        .join(
            om,
            (om.organization_id == p.organization_id) & (om.user_id == pm.user_id),
        )
        .where(pm.user_id == user_id, om.is_active.is_(True))
        .order_by(pm.is_default.desc(), pm.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def distinct_stored_project_roles(session: AsyncSession) -> set[str]:
    """Every role name currently stored on a project membership."""
    result = await session.execute(select(ProjectMembership.role).distinct())
    return set(result.scalars().all())
