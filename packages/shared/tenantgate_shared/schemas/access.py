"""Session, View As and permission-matrix schemas."""

from __future__ import annotations

import uuid
from typing import Optional

from pydantic import BaseModel, field_validator

from .common import OrgRole, Role


class SessionStartRequest(BaseModel):
    project_id: Optional[uuid.UUID] = None


class ProjectSwitchRequest(BaseModel):
    project_id: uuid.UUID


class ViewAsRequest(BaseModel):
    role: Role

    @field_validator("role")
    @classmethod
    def _not_unassigned(cls, v: Role) -> Role:
        if v is Role.UNASSIGNED:
            raise ValueError("Cannot view as 'unassigned'")
        return v


class SessionRead(BaseModel):
    user_id: uuid.UUID
    is_platform_admin: bool
    active_project_id: Optional[uuid.UUID] = None
    actual_role: Role
    view_as_role: Optional[Role] = None
    effective_role: Role
    is_impersonating: bool
    can_impersonate: bool


class PermissionsRead(BaseModel):
    """Full permission map for the effective role (UI gating only)."""
    matrix_version: int
    role: Role
    is_impersonating: bool
    permissions: dict[str, dict[str, bool]]


class PermissionCheckRead(BaseModel):
    entity: str
    action: str
    role: Role
    allowed: bool


class OrgPermissionsRead(BaseModel):
    """Organization-level permission map for the principal's org role."""
    matrix_version: int
    organization_id: uuid.UUID
    role: Optional[OrgRole] = None  # None for platform admins without a membership
    permissions: dict[str, dict[str, bool]]
