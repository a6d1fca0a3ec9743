"""
Organization API endpoints.

GET    /api/v1/orgs                              List orgs for the principal
POST   /api/v1/orgs                              Create an org (platform admin)
GET    /api/v1/orgs/{org_id}                     Get org details
PATCH  /api/v1/orgs/{org_id}                     Update name/settings (org admin)
POST   /api/v1/orgs/{org_id}/retire              Soft-retire (platform admin)
POST   /api/v1/orgs/{org_id}/reactivate          Undo retirement (platform admin)
GET    /api/v1/orgs/{org_id}/members             List members
POST   /api/v1/orgs/{org_id}/members             Add a member
PATCH  /api/v1/orgs/{org_id}/members/{user_id}   Change a member's org role
DELETE /api/v1/orgs/{org_id}/members/{user_id}   Remove a member
GET    /api/v1/orgs/{org_id}/projects            List accessible projects
POST   /api/v1/orgs/{org_id}/projects            Create a project (org admin)
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.auth import Principal, get_principal
from tenantgate.core.database import get_session
from tenantgate.models.org_membership import OrganizationMembership
from tenantgate.models.organization import Organization
from tenantgate.models.user import User
from tenantgate.services import guard
from tenantgate.services import organizations as org_service
from tenantgate.services import projects as project_service
from tenantgate.services.memberships import list_org_members
from tenantgate_shared.schemas.organizations import (
    OrgCreateRequest,
    OrgListResponse,
    OrgMemberAdd,
    OrgMemberListResponse,
    OrgMemberRead,
    OrgMemberRoleUpdate,
    OrgResponse,
    OrgUpdateRequest,
)
from tenantgate_shared.schemas.projects import (
    ProjectCreate,
    ProjectListResponse,
    ProjectRead,
)

router = APIRouter()


def _org_response(org: Organization) -> OrgResponse:
    return OrgResponse(
        id=org.id,
        name=org.name,
        slug=org.slug,
        status=org.status,
        settings=org_service.org_settings(org),
        created_at=org.created_at,
        updated_at=org.updated_at,
    )


async def _member_read(
    session: AsyncSession, membership: OrganizationMembership
) -> OrgMemberRead:
    user = await session.get(User, membership.user_id)
    return OrgMemberRead(
        user_id=membership.user_id,
        email=user.email if user else None,
        display_name=user.display_name if user else None,
        role=membership.role,
        is_active=membership.is_active,
        created_at=membership.created_at,
    )


@router.get("", response_model=OrgListResponse)
async def list_orgs(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """List orgs the principal belongs to (all orgs for platform admins)."""
    items = await org_service.list_orgs(session, principal)
    return OrgListResponse(data=items)


@router.post("", response_model=OrgResponse, status_code=status.HTTP_201_CREATED)
async def create_org(
    body: OrgCreateRequest,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Create an organization with its first admin."""
    org = await org_service.create_org(session, principal, body)
    return _org_response(org)


@router.get("/{org_id}", response_model=OrgResponse)
async def get_org(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.get_org(session, principal, org_id)
    return _org_response(org)


@router.patch("/{org_id}", response_model=OrgResponse)
async def update_org(
    org_id: uuid.UUID,
    body: OrgUpdateRequest,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Update org name or settings. Settings are deep-merged."""
    org = await org_service.update_org(session, principal, org_id, body)
    return _org_response(org)


@router.post("/{org_id}/retire", response_model=OrgResponse)
async def retire_org(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.retire_org(session, principal, org_id)
    return _org_response(org)


@router.post("/{org_id}/reactivate", response_model=OrgResponse)
async def reactivate_org(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.reactivate_org(session, principal, org_id)
    return _org_response(org)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------

@router.get("/{org_id}/members", response_model=OrgMemberListResponse)
async def list_members(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await org_service.get_org(session, principal, org_id)
    rows = await list_org_members(session, org_id)
    return OrgMemberListResponse(data=[OrgMemberRead(**r) for r in rows])


@router.post(
    "/{org_id}/members",
    response_model=OrgMemberRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_member(
    org_id: uuid.UUID,
    body: OrgMemberAdd,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    membership = await guard.add_org_member(
        session, principal, org_id, body.user_id, body.role
    )
    return await _member_read(session, membership)


@router.patch("/{org_id}/members/{user_id}", response_model=OrgMemberRead)
async def change_member_role(
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    body: OrgMemberRoleUpdate,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    membership = await guard.change_org_role(
        session, principal, org_id, user_id, body.role
    )
    return await _member_read(session, membership)


@router.delete("/{org_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await guard.remove_org_member(session, principal, org_id, user_id)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

@router.get("/{org_id}/projects", response_model=ProjectListResponse)
async def list_org_projects(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await org_service.get_org(session, principal, org_id)
    projects = await project_service.list_projects(session, principal, org_id)
    return ProjectListResponse(data=[ProjectRead.model_validate(p) for p in projects])


@router.post(
    "/{org_id}/projects",
    response_model=ProjectRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_project(
    org_id: uuid.UUID,
    body: ProjectCreate,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.create_project(session, principal, org_id, body)
    return ProjectRead.model_validate(project)
