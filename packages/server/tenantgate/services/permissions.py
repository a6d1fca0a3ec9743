"""
Permission matrix.

Static mapping of ``entity -> action -> frozenset[Role]`` loaded once at
import and exposed read-only. The business layer owns which entities and
actions exist; the table below is the default shipped with the service.

Lookups fail closed: an unknown entity or action is simply "not permitted".
``roles_for`` is the one lookup that raises, for callers that want to tell a
typo apart from a denial.

Bump ``MATRIX_VERSION`` on every change to either table so deployments can
detect drift between the deployed matrix and role names stored in the
database (see ``detect_role_drift``).
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Mapping

import structlog

from tenantgate.core.errors import UnknownEntityOrAction
from tenantgate_shared.schemas.common import OrgRole, Role

log = structlog.get_logger()

MATRIX_VERSION = 3

# Role groupings
AUTHENTICATED = frozenset(
    {
        Role.ADMIN,
        Role.SUPPLIER_PM,
        Role.SUPPLIER_FINANCE,
        Role.CUSTOMER_PM,
        Role.CUSTOMER_FINANCE,
        Role.CONTRIBUTOR,
        Role.VIEWER,
    }
)
MANAGERS = frozenset({Role.ADMIN, Role.SUPPLIER_PM, Role.CUSTOMER_PM})
SUPPLIER_SIDE = frozenset({Role.ADMIN, Role.SUPPLIER_PM, Role.SUPPLIER_FINANCE})
CUSTOMER_SIDE = frozenset({Role.ADMIN, Role.CUSTOMER_PM, Role.CUSTOMER_FINANCE})
WORKERS = frozenset(
    {
        Role.ADMIN,
        Role.SUPPLIER_PM,
        Role.SUPPLIER_FINANCE,
        Role.CUSTOMER_FINANCE,
        Role.CONTRIBUTOR,
    }
)
DELIVERY = frozenset({Role.ADMIN, Role.SUPPLIER_PM, Role.CONTRIBUTOR})
ADMIN_ONLY = frozenset({Role.ADMIN})

ALL_ORG_ROLES = frozenset({OrgRole.ADMIN, OrgRole.MEMBER})
ORG_ADMINS = frozenset({OrgRole.ADMIN})


def _freeze(table: dict) -> Mapping:
    return MappingProxyType(
        {entity: MappingProxyType(dict(actions)) for entity, actions in table.items()}
    )


PERMISSION_MATRIX: Mapping[str, Mapping[str, frozenset]] = _freeze(
    {
        "timesheets": {
            "view": AUTHENTICATED,
            "create": WORKERS,
            "create_for_others": SUPPLIER_SIDE,
            "edit": WORKERS,
            "delete": SUPPLIER_SIDE,
            "submit": WORKERS,
            "approve": CUSTOMER_SIDE,
        },
        "expenses": {
            "view": AUTHENTICATED,
            "create": WORKERS,
            "create_for_others": SUPPLIER_SIDE,
            "edit": WORKERS,
            "delete": SUPPLIER_SIDE,
            "submit": WORKERS,
            "validate_chargeable": CUSTOMER_SIDE,
            "validate_non_chargeable": SUPPLIER_SIDE,
        },
        "milestones": {
            "view": AUTHENTICATED,
            "create": SUPPLIER_SIDE,
            "edit": SUPPLIER_SIDE,
            "delete": ADMIN_ONLY,
            "edit_billing": SUPPLIER_SIDE,
        },
        "deliverables": {
            "view": AUTHENTICATED,
            "create": DELIVERY,
            "edit": DELIVERY,
            "delete": SUPPLIER_SIDE,
            "submit": DELIVERY,
            "review": CUSTOMER_SIDE,
            "mark_delivered": CUSTOMER_SIDE,
        },
        "raid": {
            "view": AUTHENTICATED,
            "create": MANAGERS,
            "edit": MANAGERS,
            "delete": SUPPLIER_SIDE,
            "update_status": MANAGERS,
            "assign_owner": MANAGERS,
        },
        "resources": {
            "view": AUTHENTICATED,
            "create": SUPPLIER_SIDE,
            "edit": SUPPLIER_SIDE,
            "delete": ADMIN_ONLY,
            "see_cost_price": SUPPLIER_SIDE,
            "see_margins": SUPPLIER_SIDE,
        },
        "variations": {
            "view": AUTHENTICATED,
            "create": SUPPLIER_SIDE,
            "edit": SUPPLIER_SIDE,
            "delete": SUPPLIER_SIDE,
            "submit": SUPPLIER_SIDE,
            "sign_as_supplier": SUPPLIER_SIDE,
            "sign_as_customer": CUSTOMER_SIDE,
            "reject": MANAGERS,
            "apply": SUPPLIER_SIDE,
        },
        "invoices": {
            "view": MANAGERS,
            "generate_customer": MANAGERS,
            "generate_third_party": SUPPLIER_SIDE,
            "view_margins": SUPPLIER_SIDE,
        },
        "settings": {
            "access": SUPPLIER_SIDE,
            "edit": SUPPLIER_SIDE,
        },
        "users": {
            "view": SUPPLIER_SIDE,
            "manage": ADMIN_ONLY,
        },
        "reports": {
            "access": MANAGERS,
            "view_workflow_summary": MANAGERS,
        },
    }
)

ORG_PERMISSION_MATRIX: Mapping[str, Mapping[str, frozenset]] = _freeze(
    {
        "organization": {
            "view": ALL_ORG_ROLES,
            "edit": ORG_ADMINS,
        },
        "org_members": {
            "view": ALL_ORG_ROLES,
            "invite": ORG_ADMINS,
            "remove": ORG_ADMINS,
            "change_role": ORG_ADMINS,
        },
        "org_projects": {
            "view": ALL_ORG_ROLES,
            "create": ORG_ADMINS,
            "assign_members": ORG_ADMINS,
        },
        "org_settings": {
            "view": ORG_ADMINS,
            "edit": ORG_ADMINS,
        },
    }
)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def roles_for(entity: str, action: str) -> frozenset:
    """Roles allowed to perform ``action`` on ``entity``.

    Raises UnknownEntityOrAction if either name is not in the matrix.
    """
    actions = PERMISSION_MATRIX.get(entity)
    if actions is None or action not in actions:
        raise UnknownEntityOrAction(entity=entity, action=action)
    return actions[action]


def _lookup(matrix: Mapping, name: str, entity: str, action: str):
    actions = matrix.get(entity)
    if actions is None:
        log.warning("permissions.unknown_entity", matrix=name, entity=entity)
        return None
    allowed = actions.get(action)
    if allowed is None:
        log.warning(
            "permissions.unknown_action", matrix=name, entity=entity, action=action
        )
    return allowed


def has_permission(role, entity: str, action: str) -> bool:
    """True if ``role`` may perform ``action`` on ``entity``. Never raises."""
    allowed = _lookup(PERMISSION_MATRIX, "project", entity, action)
    if allowed is None:
        return False
    try:
        return Role(role) in allowed
    except ValueError:
        return False


def has_org_permission(org_role, entity: str, action: str) -> bool:
    allowed = _lookup(ORG_PERMISSION_MATRIX, "organization", entity, action)
    if allowed is None:
        return False
    try:
        return OrgRole(org_role) in allowed
    except ValueError:
        return False


def permissions_for_role(role) -> dict[str, dict[str, bool]]:
    """Full ``entity -> action -> bool`` map for a role (UI affordance gating)."""
    try:
        role = Role(role)
    except ValueError:
        role = None
    return {
        entity: {action: role in allowed for action, allowed in actions.items()}
        for entity, actions in PERMISSION_MATRIX.items()
    }


def org_permissions_for_role(org_role) -> dict[str, dict[str, bool]]:
    try:
        org_role = OrgRole(org_role)
    except ValueError:
        org_role = None
    return {
        entity: {action: org_role in allowed for action, allowed in actions.items()}
        for entity, actions in ORG_PERMISSION_MATRIX.items()
    }


def detect_role_drift(stored_names: Iterable[str]) -> set[str]:
    """Stored role names the deployed matrix does not know (or never grants)."""
    known = {r.value for r in Role if r is not Role.UNASSIGNED}
    return {name for name in stored_names if name not in known}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_matrix(matrix: Mapping = PERMISSION_MATRIX) -> None:
    """Check every grant names a member of ``Role`` and never ``unassigned``."""
    for entity, actions in matrix.items():
        if not actions:
            raise ValueError(f"Permission matrix entity {entity!r} has no actions")
        for action, allowed in actions.items():
            if not isinstance(allowed, frozenset):
                raise ValueError(f"{entity}.{action} must map to a frozenset")
            for role in allowed:
                if not isinstance(role, Role):
                    raise ValueError(f"{entity}.{action} grants unknown role {role!r}")
                if role is Role.UNASSIGNED:
                    raise ValueError(f"{entity}.{action} grants 'unassigned'")


validate_matrix()
