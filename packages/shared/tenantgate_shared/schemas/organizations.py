"""
Organization-related Pydantic schemas shared between the server and its clients.

Covers: org create/response, OrgSettings, org membership requests and views.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .common import OrgRole, OrgStatus, Role, parse_assignable_role


# ---------------------------------------------------------------------------
# Org Settings
# ---------------------------------------------------------------------------

class FeatureFlags(BaseModel):
    view_as_enabled: bool = Field(
        default=True,
        description="Allow eligible members to preview the UI as another role",
    )


class MembershipDefaults(BaseModel):
    default_org_role: OrgRole = OrgRole.MEMBER
    default_project_role: Role = Field(
        default=Role.VIEWER,
        description="Role given when a project member is added without one",
    )

    @field_validator("default_project_role")
    @classmethod
    def _assignable(cls, v: Role) -> Role:
        return parse_assignable_role(v)


class OrgSettings(BaseModel):
    """Complete org-level settings schema. All fields optional with defaults."""

    features: FeatureFlags = Field(default_factory=FeatureFlags)
    membership_defaults: MembershipDefaults = Field(default_factory=MembershipDefaults)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Organization display name")
    slug: str = Field(
        ...,
        min_length=2,
        max_length=50,
        pattern=r"^[a-z0-9][a-z0-9-]*[a-z0-9]$",
        description="URL-safe org identifier",
    )
    admin_user_id: uuid.UUID = Field(
        ..., description="User who becomes the first organization admin"
    )
    settings: Optional[OrgSettings] = None


class OrgUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    settings: Optional[dict] = None  # deep-merged into existing settings


class OrgMemberAdd(BaseModel):
    user_id: uuid.UUID
    role: Optional[OrgRole] = None  # falls back to membership_defaults.default_org_role


class OrgMemberRoleUpdate(BaseModel):
    role: OrgRole


ORG_TRANSITIONS: dict[OrgStatus, list[OrgStatus]] = {
    OrgStatus.ACTIVE: [OrgStatus.RETIRED],
    OrgStatus.RETIRED: [OrgStatus.ACTIVE],
}


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrgResponse(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    status: OrgStatus
    settings: OrgSettings
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrgListItem(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    status: OrgStatus
    role: Optional[OrgRole] = None  # the requesting user's role; None for platform admins without membership

    model_config = ConfigDict(from_attributes=True)


class OrgListResponse(BaseModel):
    data: list[OrgListItem]


class OrgMemberRead(BaseModel):
    user_id: uuid.UUID
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: OrgRole
    is_active: bool
    created_at: datetime


class OrgMemberListResponse(BaseModel):
    data: list[OrgMemberRead]
