"""Organization model."""

from sqlmodel import Field, SQLModel

from .base import JSONType, TimestampMixin, UUIDMixin


class Organization(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organizations"

    name: str = Field(nullable=False, index=True)
    slug: str = Field(unique=True, nullable=False, index=True)
    status: str = Field(default="active", nullable=False)  # active | retired
    settings: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
    # Bumped by every membership mutation (compare-and-swap)
    membership_version: int = Field(default=0, nullable=False)
