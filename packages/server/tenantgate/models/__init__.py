# SQLModel definitions, imported here to ensure metadata is populated.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .organization import Organization  # noqa: F401
from .user import User  # noqa: F401
from .org_membership import OrganizationMembership  # noqa: F401
from .project import Project  # noqa: F401
from .project_membership import ProjectMembership  # noqa: F401
