"""
Session endpoints: active project and View As.

POST   /api/v1/session            Start (login boundary)
GET    /api/v1/session            Current context, recomputed
PUT    /api/v1/session/project    Switch active project
PUT    /api/v1/session/view-as    Start View As
DELETE /api/v1/session/view-as    Stop View As
POST   /api/v1/session/logout     Revoke the token and drop session state
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from tenantgate.api.deps import get_request_context, get_session_service
from tenantgate.core.auth import SESSION_COOKIE, Principal, get_principal
from tenantgate.services.sessions import RequestContext, SessionService
from tenantgate_shared.schemas.access import (
    ProjectSwitchRequest,
    SessionRead,
    SessionStartRequest,
    ViewAsRequest,
)

router = APIRouter()


def _session_read(service: SessionService, ctx: RequestContext) -> SessionRead:
    return SessionRead(
        user_id=ctx.principal.user_id,
        is_platform_admin=ctx.principal.is_platform_admin,
        active_project_id=ctx.state.active_project_id,
        actual_role=ctx.state.actual_role,
        view_as_role=ctx.state.view_as_role,
        effective_role=ctx.state.effective_role,
        is_impersonating=ctx.state.is_impersonating,
        can_impersonate=service.can_impersonate(ctx.state),
    )


@router.post("", response_model=SessionRead, status_code=status.HTTP_201_CREATED)
async def start_session(
    body: SessionStartRequest,
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(get_session_service),
):
    ctx = await service.start_session(principal, body.project_id)
    return _session_read(service, ctx)


@router.get("", response_model=SessionRead)
async def read_session(
    ctx: RequestContext = Depends(get_request_context),
    service: SessionService = Depends(get_session_service),
):
    return _session_read(service, ctx)


@router.put("/project", response_model=SessionRead)
async def switch_project(
    body: ProjectSwitchRequest,
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(get_session_service),
):
    ctx = await service.switch_project(principal, body.project_id)
    return _session_read(service, ctx)


@router.put("/view-as", response_model=SessionRead)
async def start_view_as(
    body: ViewAsRequest,
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(get_session_service),
):
    ctx = await service.begin_view_as(principal, body.role)
    return _session_read(service, ctx)


@router.delete("/view-as", response_model=SessionRead)
async def stop_view_as(
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(get_session_service),
):
    ctx = await service.end_view_as(principal)
    return _session_read(service, ctx)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    response: Response,
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(get_session_service),
):
    await service.logout(principal)
    response.delete_cookie(SESSION_COOKIE)
