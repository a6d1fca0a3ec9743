"""
API v1 Router

Organization, project and membership management, plus the session and
permission endpoints the UI uses for affordance gating.
"""

from fastapi import APIRouter
from . import organizations, permissions, projects, session

router = APIRouter()

router.include_router(organizations.router, prefix="/orgs", tags=["Organizations"])
router.include_router(projects.router, prefix="/projects", tags=["Projects"])
router.include_router(session.router, prefix="/session", tags=["Session"])
router.include_router(permissions.router, prefix="/permissions", tags=["Permissions"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/orgs",
            "/orgs/{org_id}/members",
            "/orgs/{org_id}/projects",
            "/projects",
            "/projects/{project_id}/members",
            "/session",
            "/permissions",
        ],
    }
