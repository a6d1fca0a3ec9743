"""
Permission endpoints for UI affordance gating.

The project endpoints answer for the *effective* role, so they follow View
As. The organization endpoint answers for the principal's org role. All of
them are advisory only: the data endpoints enforce access from the principal.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.api.deps import get_request_context
from tenantgate.core.auth import Principal, get_principal
from tenantgate.core.database import get_session
from tenantgate.services import organizations as org_service
from tenantgate.services import permissions as matrix
from tenantgate.services.memberships import get_org_membership
from tenantgate.services.sessions import RequestContext
from tenantgate_shared.schemas.access import (
    OrgPermissionsRead,
    PermissionCheckRead,
    PermissionsRead,
)
from tenantgate_shared.schemas.common import OrgRole

router = APIRouter()


@router.get("", response_model=PermissionsRead)
async def get_permissions(ctx: RequestContext = Depends(get_request_context)):
    role = ctx.effective_role
    return PermissionsRead(
        matrix_version=matrix.MATRIX_VERSION,
        role=role,
        is_impersonating=ctx.state.is_impersonating,
        permissions=matrix.permissions_for_role(role),
    )


@router.get("/check", response_model=PermissionCheckRead)
async def check_permission(
    entity: str = Query(..., min_length=1),
    action: str = Query(..., min_length=1),
    ctx: RequestContext = Depends(get_request_context),
):
    role = ctx.effective_role
    return PermissionCheckRead(
        entity=entity,
        action=action,
        role=role,
        allowed=matrix.has_permission(role, entity, action),
    )


@router.get("/orgs/{org_id}", response_model=OrgPermissionsRead)
async def get_org_permissions(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Org permission map. Platform admins without a membership get the admin map."""
    await org_service.get_org(session, principal, org_id)
    membership = await get_org_membership(session, principal.user_id, org_id)
    role = OrgRole(membership.role) if membership is not None and membership.is_active else None
    effective = OrgRole.ADMIN if role is None and principal.is_platform_admin else role
    return OrgPermissionsRead(
        matrix_version=matrix.MATRIX_VERSION,
        organization_id=org_id,
        role=role,
        permissions=matrix.org_permissions_for_role(effective),
    )
