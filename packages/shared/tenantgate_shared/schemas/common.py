from enum import Enum

from pydantic import BaseModel


class Role(str, Enum):
    """Closed set of project-level roles a principal can resolve to."""
    ADMIN = "admin"
    SUPPLIER_PM = "supplier_pm"
    SUPPLIER_FINANCE = "supplier_finance"
    CUSTOMER_PM = "customer_pm"
    CUSTOMER_FINANCE = "customer_finance"
    CONTRIBUTOR = "contributor"
    VIEWER = "viewer"
    # No project role could be resolved. Means "no access"; never grantable.
    UNASSIGNED = "unassigned"


# Roles that may be stored on a ProjectMembership row
ASSIGNABLE_PROJECT_ROLES: frozenset[Role] = frozenset(
    r for r in Role if r is not Role.UNASSIGNED
)


class OrgRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class OrgStatus(str, Enum):
    ACTIVE = "active"
    RETIRED = "retired"


def parse_assignable_role(value: "Role | str") -> Role:
    """Coerce a value to an assignable project role.

    Raises ValueError for unknown names and for ``unassigned``.
    """
    role = Role(value)
    if role not in ASSIGNABLE_PROJECT_ROLES:
        raise ValueError(f"Role '{role.value}' cannot be assigned to a project member")
    return role


class ErrorBody(BaseModel):
    code: str
    message: str
    status: int


class ErrorResponse(BaseModel):
    error: ErrorBody
