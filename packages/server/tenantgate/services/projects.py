"""
Project service.

Reads are scoped with ``can_access_project`` and writes with
``can_manage_project``; a project the principal cannot access is reported as
not found. ``organization_id`` is fixed at creation.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate.core.auth import Principal
from tenantgate.core.errors import Forbidden, NotFound
from tenantgate.models.project import Project
from tenantgate.services.organizations import get_org
from tenantgate.services.policy import PolicyEvaluator, scope_to_accessible_projects
from tenantgate_shared.schemas.projects import ProjectCreate, ProjectUpdate

log = structlog.get_logger()


async def list_projects(
    session: AsyncSession,
    principal: Principal,
    org_id: Optional[uuid.UUID] = None,
) -> list[Project]:
    stmt = select(Project)
    if org_id is not None:
        stmt = stmt.where(Project.organization_id == org_id)
    stmt = scope_to_accessible_projects(stmt, Project.id, principal).order_by(
        Project.created_at
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_project_for(
    session: AsyncSession, principal: Principal, project_id: uuid.UUID
) -> Project:
    if not await PolicyEvaluator(session, principal).can_access_project(project_id):
        raise NotFound("Project not found", project_id=project_id)
    project = await session.get(Project, project_id)
    if project is None:
        raise NotFound("Project not found", project_id=project_id)
    return project


async def create_project(
    session: AsyncSession,
    principal: Principal,
    org_id: uuid.UUID,
    req: ProjectCreate,
) -> Project:
    """Create a project in an organization. Org admins and platform admins only."""
    await get_org(session, principal, org_id)
    policy = PolicyEvaluator(session, principal)
    if not (await policy.is_platform_admin() or await policy.is_org_admin(org_id)):
        raise Forbidden("Organization admin access required", org_id=org_id)

    project = Project(organization_id=org_id, name=req.name, reference=req.reference)
    session.add(project)
    await session.flush()

    log.info(
        "project.created",
        project_id=str(project.id),
        org_id=str(org_id),
        actor=str(principal.user_id),
    )
    return project


async def update_project(
    session: AsyncSession,
    principal: Principal,
    project_id: uuid.UUID,
    req: ProjectUpdate,
) -> Project:
    project = await get_project_for(session, principal, project_id)
    if not await PolicyEvaluator(session, principal).can_manage_project(project_id):
        raise Forbidden("Project admin access required", project_id=project_id)

    if req.name is not None:
        project.name = req.name
    if req.reference is not None:
        project.reference = req.reference
    project.updated_at = datetime.now(timezone.utc)
    session.add(project)
    await session.flush()

    log.info("project.updated", project_id=str(project_id), actor=str(principal.user_id))
    return project
