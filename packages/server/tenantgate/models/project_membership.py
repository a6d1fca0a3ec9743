"""User-Project membership. At most one role per (user, project)."""

import uuid

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class ProjectMembership(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "project_memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "project_id", name="uq_project_membership_user_project"),
    )

    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    project_id: uuid.UUID = Field(foreign_key="projects.id", nullable=False, index=True)
    role: str = Field(nullable=False)  # see tenantgate_shared.schemas.common.Role
    is_default: bool = Field(default=False, nullable=False)
