"""
Project endpoints: reads, updates and membership.

Every read goes through ``can_access_project`` and answers 404 when it fails,
so non-members cannot probe which projects exist. Every membership write goes
through the mutation guard.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.auth import Principal, get_principal
from tenantgate.core.database import get_session
from tenantgate.models.project_membership import ProjectMembership
from tenantgate.models.user import User
from tenantgate.services import guard
from tenantgate.services import projects as project_service
from tenantgate.services.memberships import list_project_members
from tenantgate_shared.schemas.projects import (
    ProjectListResponse,
    ProjectMemberAdd,
    ProjectMemberListResponse,
    ProjectMemberRead,
    ProjectMemberRoleUpdate,
    ProjectRead,
    ProjectUpdate,
)

router = APIRouter()


async def _member_read(
    session: AsyncSession, membership: ProjectMembership
) -> ProjectMemberRead:
    user = await session.get(User, membership.user_id)
    return ProjectMemberRead(
        user_id=membership.user_id,
        email=user.email if user else None,
        display_name=user.display_name if user else None,
        role=membership.role,
        is_default=membership.is_default,
        created_at=membership.created_at,
    )


@router.get("", response_model=ProjectListResponse)
async def list_projects(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Every project the principal can access, across organizations."""
    projects = await project_service.list_projects(session, principal)
    return ProjectListResponse(data=[ProjectRead.model_validate(p) for p in projects])


@router.get("/{project_id}", response_model=ProjectRead)
async def get_project(
    project_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.get_project_for(session, principal, project_id)
    return ProjectRead.model_validate(project)


@router.patch("/{project_id}", response_model=ProjectRead)
async def update_project(
    project_id: uuid.UUID,
    body: ProjectUpdate,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Rename or re-reference a project. The organization cannot change."""
    project = await project_service.update_project(session, principal, project_id, body)
    return ProjectRead.model_validate(project)


@router.put("/{project_id}/default", response_model=ProjectMemberRead)
async def set_default_project(
    project_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Make this project the principal's default at login."""
    membership = await guard.set_default_project(session, principal, project_id)
    return await _member_read(session, membership)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------

@router.get("/{project_id}/members", response_model=ProjectMemberListResponse)
async def list_members(
    project_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await project_service.get_project_for(session, principal, project_id)
    rows = await list_project_members(session, project_id)
    return ProjectMemberListResponse(data=[ProjectMemberRead(**r) for r in rows])


@router.post(
    "/{project_id}/members",
    response_model=ProjectMemberRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_member(
    project_id: uuid.UUID,
    body: ProjectMemberAdd,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    membership = await guard.add_project_member(
        session,
        principal,
        project_id,
        body.user_id,
        body.role,
        is_default=body.is_default,
    )
    return await _member_read(session, membership)


@router.patch("/{project_id}/members/{user_id}", response_model=ProjectMemberRead)
async def change_member_role(
    project_id: uuid.UUID,
    user_id: uuid.UUID,
    body: ProjectMemberRoleUpdate,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    membership = await guard.change_project_role(
        session, principal, project_id, user_id, body.role
    )
    return await _member_read(session, membership)


@router.delete(
    "/{project_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT
)
async def remove_member(
    project_id: uuid.UUID,
    user_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await guard.remove_project_member(session, principal, project_id, user_id)
