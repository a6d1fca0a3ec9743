from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field, field_validator
from uuid import UUID
from datetime import datetime

from .common import Role, parse_assignable_role


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    reference: str = Field(..., min_length=1, max_length=50)


class ProjectUpdate(BaseModel):
    # organization_id is immutable; extra fields are rejected rather than ignored
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    reference: Optional[str] = Field(default=None, min_length=1, max_length=50)


class ProjectRead(BaseModel):
    id: UUID
    organization_id: UUID
    name: str
    reference: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProjectMemberAdd(BaseModel):
    user_id: UUID
    role: Optional[Role] = None  # falls back to membership_defaults.default_project_role
    is_default: bool = False

    @field_validator("role")
    @classmethod
    def _assignable(cls, v: Optional[Role]) -> Optional[Role]:
        return None if v is None else parse_assignable_role(v)


class ProjectMemberRoleUpdate(BaseModel):
    role: Role

    @field_validator("role")
    @classmethod
    def _assignable(cls, v: Role) -> Role:
        return parse_assignable_role(v)


class ProjectMemberRead(BaseModel):
    user_id: UUID
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: str  # stored value; may predate the current role set
    is_default: bool
    created_at: datetime


class ProjectMemberListResponse(BaseModel):
    data: List[ProjectMemberRead]


class ProjectListResponse(BaseModel):
    data: List[ProjectRead]
