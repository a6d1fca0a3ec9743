"""
Membership mutation guard.

The only code allowed to write organization or project memberships. Each
operation runs inside the caller's transaction and follows the same shape:

1. lock the organization row (``SELECT ... FOR UPDATE``) and read its
   ``membership_version``;
2. authorize the actor and check invariants against fresh rows;
3. write;
4. bump ``membership_version`` with a compare-and-swap on the value read in
   step 1.

On PostgreSQL the row lock already serializes writers. The compare-and-swap
also covers databases that ignore ``FOR UPDATE``: if another transaction
committed a membership change in between, step 4 matches no row and the
whole operation fails with ``ConcurrentMembershipChange`` (the caller's
session rolls back). Two concurrent "remove the last admin" requests can
therefore never both commit.

Violations are raised as typed errors and never retried here.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate.core.auth import Principal
from tenantgate.core.errors import (
    ConcurrentMembershipChange,
    DuplicateMembership,
    Forbidden,
    LastAdminViolation,
    MembershipNotFound,
    NotFound,
    NotOrganizationMember,
    SelfModificationViolation,
)
from tenantgate.models.org_membership import OrganizationMembership
from tenantgate.models.organization import Organization
from tenantgate.models.project import Project
from tenantgate.models.project_membership import ProjectMembership
from tenantgate.services.memberships import (
    count_org_admins,
    get_org_membership,
    get_project,
    get_project_membership,
    get_user,
    org_settings,
)
from tenantgate.services.policy import PolicyEvaluator
from tenantgate_shared.schemas.common import OrgRole, Role, parse_assignable_role

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Locking / compare-and-swap
# ---------------------------------------------------------------------------

async def lock_organization(session: AsyncSession, org_id: uuid.UUID) -> Organization:
    """Lock and return the organization row; raises NotFound if missing."""
    result = await session.execute(
        select(Organization)
        .where(Organization.id == org_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    org = result.scalar_one_or_none()
    if org is None:
        raise NotFound("Organization not found", org_id=org_id)
    return org


async def bump_membership_version(
    session: AsyncSession, org_id: uuid.UUID, expected: int
) -> int:
    """Compare-and-swap ``membership_version`` from ``expected`` to ``expected + 1``."""
    result = await session.execute(
        update(Organization)
        .where(
            Organization.id == org_id,
            Organization.membership_version == expected,
        )
        .values(membership_version=expected + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log.warning(
            "guard.concurrent_membership_change",
            org_id=str(org_id),
            expected_version=expected,
        )
        raise ConcurrentMembershipChange(org_id=org_id)
    return expected + 1


async def _lock_project_org(
    session: AsyncSession, project_id: uuid.UUID
) -> tuple[Project, Organization]:
    project = await get_project(session, project_id)
    if project is None:
        raise NotFound("Project not found", project_id=project_id)
    org = await lock_organization(session, project.organization_id)
    return project, org


# ---------------------------------------------------------------------------
# Actor checks
# ---------------------------------------------------------------------------

async def _require_org_admin(
    session: AsyncSession, actor: Principal, org_id: uuid.UUID
) -> None:
    policy = PolicyEvaluator(session, actor)
    if await policy.is_platform_admin() or await policy.is_org_admin(org_id):
        return
    if not await policy.is_org_member(org_id):
        # Non-members must not learn the organization exists
        raise NotFound("Organization not found", org_id=org_id)
    raise Forbidden("Organization admin access required", org_id=org_id)


async def _require_project_manager(
    session: AsyncSession, actor: Principal, project_id: uuid.UUID
) -> None:
    policy = PolicyEvaluator(session, actor)
    if await policy.can_manage_project(project_id):
        return
    if not await policy.can_access_project(project_id):
        raise NotFound("Project not found", project_id=project_id)
    raise Forbidden("Project admin access required", project_id=project_id)


def _reject_self_modification(actor: Principal, user_id: uuid.UUID, operation: str) -> None:
    if actor.user_id == user_id:
        log.warning(
            "guard.self_modification_violation",
            user_id=str(actor.user_id),
            operation=operation,
        )
        raise SelfModificationViolation(operation=operation)


async def _ensure_not_last_admin(
    session: AsyncSession, org: Organization, membership: OrganizationMembership, operation: str
) -> None:
    if membership.role != OrgRole.ADMIN.value or not membership.is_active:
        return
    if await count_org_admins(session, org.id) <= 1:
        log.warning(
            "guard.last_admin_violation",
            org_id=str(org.id),
            user_id=str(membership.user_id),
            operation=operation,
        )
        raise LastAdminViolation(org_id=org.id)


# ---------------------------------------------------------------------------
# Organization memberships
# ---------------------------------------------------------------------------

async def add_org_member(
    session: AsyncSession,
    actor: Principal,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    role: Optional[OrgRole] = None,
) -> OrganizationMembership:
    """Add a user to an organization, reactivating a previously removed row.

    Without an explicit ``role`` the org's ``default_org_role`` setting applies.
    """
    org = await lock_organization(session, org_id)
    await _require_org_admin(session, actor, org_id)

    if await get_user(session, user_id) is None:
        raise NotFound("User not found", user_id=user_id)

    if role is None:
        role = org_settings(org).membership_defaults.default_org_role
    role = OrgRole(role)
    membership = await get_org_membership(session, user_id, org_id)
    if membership is not None and membership.is_active:
        raise DuplicateMembership(
            "User is already a member of this organization", user_id=user_id
        )
    if membership is None:
        membership = OrganizationMembership(
            user_id=user_id,
            organization_id=org_id,
            role=role.value,
            invited_by=actor.user_id,
        )
    else:
        membership.is_active = True
        membership.role = role.value
        membership.invited_by = actor.user_id
    session.add(membership)
    await session.flush()
    await bump_membership_version(session, org_id, org.membership_version)

    log.info(
        "membership.org_member_added",
        org_id=str(org_id),
        user_id=str(user_id),
        role=role.value,
        actor=str(actor.user_id),
    )
    return membership


async def remove_org_member(
    session: AsyncSession,
    actor: Principal,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
) -> None:
    """Deactivate a membership. Project memberships in the org stop counting."""
    org = await lock_organization(session, org_id)
    await _require_org_admin(session, actor, org_id)

    membership = await get_org_membership(session, user_id, org_id)
    if membership is None or not membership.is_active:
        raise MembershipNotFound(user_id=user_id, org_id=org_id)
    await _ensure_not_last_admin(session, org, membership, "remove_org_member")

    membership.is_active = False
    session.add(membership)
    await session.flush()
    await bump_membership_version(session, org_id, org.membership_version)

    log.info(
        "membership.org_member_removed",
        org_id=str(org_id),
        user_id=str(user_id),
        actor=str(actor.user_id),
    )


async def change_org_role(
    session: AsyncSession,
    actor: Principal,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    role: OrgRole,
) -> OrganizationMembership:
    org = await lock_organization(session, org_id)
    await _require_org_admin(session, actor, org_id)

    role = OrgRole(role)
    membership = await get_org_membership(session, user_id, org_id)
    if membership is None or not membership.is_active:
        raise MembershipNotFound(user_id=user_id, org_id=org_id)
    if membership.role == role.value:
        return membership
    if role is not OrgRole.ADMIN:
        await _ensure_not_last_admin(session, org, membership, "change_org_role")

    old_role = membership.role
    membership.role = role.value
    session.add(membership)
    await session.flush()
    await bump_membership_version(session, org_id, org.membership_version)

    log.info(
        "membership.org_role_changed",
        org_id=str(org_id),
        user_id=str(user_id),
        old_role=old_role,
        new_role=role.value,
        actor=str(actor.user_id),
    )
    return membership


# ---------------------------------------------------------------------------
# Project memberships
# ---------------------------------------------------------------------------

async def _clear_other_defaults(
    session: AsyncSession, user_id: uuid.UUID, keep_project_id: uuid.UUID
) -> None:
    await session.execute(
        update(ProjectMembership)
        .where(
            ProjectMembership.user_id == user_id,
            ProjectMembership.project_id != keep_project_id,
            ProjectMembership.is_default.is_(True),
        )
        .values(is_default=False)
        .execution_options(synchronize_session=False)
    )


async def add_project_member(
    session: AsyncSession,
    actor: Principal,
    project_id: uuid.UUID,
    user_id: uuid.UUID,
    role: Optional[Role] = None,
    *,
    is_default: bool = False,
) -> ProjectMembership:
    """Add an org member to a project.

    Without an explicit ``role`` the org's ``default_project_role`` setting applies.
    """
    project, org = await _lock_project_org(session, project_id)
    await _require_project_manager(session, actor, project_id)

    if role is None:
        role = org_settings(org).membership_defaults.default_project_role
    role = parse_assignable_role(role)
    org_membership = await get_org_membership(session, user_id, project.organization_id)
    if org_membership is None or not org_membership.is_active:
        raise NotOrganizationMember(user_id=user_id, org_id=project.organization_id)
    if await get_project_membership(session, user_id, project_id) is not None:
        raise DuplicateMembership(
            "User is already a member of this project", user_id=user_id
        )

    if is_default:
        await _clear_other_defaults(session, user_id, project_id)
    membership = ProjectMembership(
        user_id=user_id,
        project_id=project_id,
        role=role.value,
        is_default=is_default,
    )
    session.add(membership)
    await session.flush()
    await bump_membership_version(session, org.id, org.membership_version)

    log.info(
        "membership.project_member_added",
        project_id=str(project_id),
        user_id=str(user_id),
        role=role.value,
        actor=str(actor.user_id),
    )
    return membership


async def remove_project_member(
    session: AsyncSession,
    actor: Principal,
    project_id: uuid.UUID,
    user_id: uuid.UUID,
) -> None:
    _reject_self_modification(actor, user_id, "remove_project_member")
    _, org = await _lock_project_org(session, project_id)
    await _require_project_manager(session, actor, project_id)

    membership = await get_project_membership(session, user_id, project_id)
    if membership is None:
        raise MembershipNotFound(user_id=user_id, project_id=project_id)

    await session.delete(membership)
    await session.flush()
    await bump_membership_version(session, org.id, org.membership_version)

    log.info(
        "membership.project_member_removed",
        project_id=str(project_id),
        user_id=str(user_id),
        actor=str(actor.user_id),
    )


async def change_project_role(
    session: AsyncSession,
    actor: Principal,
    project_id: uuid.UUID,
    user_id: uuid.UUID,
    role: Role,
) -> ProjectMembership:
    _reject_self_modification(actor, user_id, "change_project_role")
    _, org = await _lock_project_org(session, project_id)
    await _require_project_manager(session, actor, project_id)

    role = parse_assignable_role(role)
    membership = await get_project_membership(session, user_id, project_id)
    if membership is None:
        raise MembershipNotFound(user_id=user_id, project_id=project_id)
    if membership.role == role.value:
        return membership

    old_role = membership.role
    membership.role = role.value
    session.add(membership)
    await session.flush()
    await bump_membership_version(session, org.id, org.membership_version)

    log.info(
        "membership.project_role_changed",
        project_id=str(project_id),
        user_id=str(user_id),
        old_role=old_role,
        new_role=role.value,
        actor=str(actor.user_id),
    )
    return membership


async def set_default_project(
    session: AsyncSession, actor: Principal, project_id: uuid.UUID
) -> ProjectMembership:
    """Mark one of the actor's own project memberships as their default."""
    _, org = await _lock_project_org(session, project_id)
    if not await PolicyEvaluator(session, actor).can_access_project(project_id):
        raise NotFound("Project not found", project_id=project_id)
    membership: Optional[ProjectMembership] = await get_project_membership(
        session, actor.user_id, project_id
    )
    if membership is None:
        raise MembershipNotFound(user_id=actor.user_id, project_id=project_id)

    await _clear_other_defaults(session, actor.user_id, project_id)
    membership.is_default = True
    session.add(membership)
    await session.flush()
    await bump_membership_version(session, org.id, org.membership_version)

    log.info(
        "membership.default_project_set",
        project_id=str(project_id),
        user_id=str(actor.user_id),
    )
    return membership
