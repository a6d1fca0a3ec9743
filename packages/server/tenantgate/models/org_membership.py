"""User-Organization membership."""

from typing import Optional
import uuid

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class OrganizationMembership(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organization_memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_org_membership_user_org"),
    )

    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    organization_id: uuid.UUID = Field(
        foreign_key="organizations.id", nullable=False, index=True
    )
    role: str = Field(nullable=False, default="member")  # admin | member
    is_active: bool = Field(default=True, nullable=False)
    invited_by: Optional[uuid.UUID] = Field(default=None, foreign_key="users.id")
