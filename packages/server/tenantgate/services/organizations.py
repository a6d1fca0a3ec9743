"""
Organization service: org lifecycle and listing.

Organizations are created by platform admins and never deleted, only
retired. Membership changes are delegated to ``tenantgate.services.guard``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate.core.auth import Principal
from tenantgate.core.errors import Conflict, Forbidden, NotFound
from tenantgate.models.org_membership import OrganizationMembership
from tenantgate.models.organization import Organization
from tenantgate.services import guard
from tenantgate.services.memberships import org_settings
from tenantgate.services.policy import PolicyEvaluator, is_org_member_clause
from tenantgate_shared.schemas.common import OrgRole, OrgStatus
from tenantgate_shared.schemas.organizations import (
    ORG_TRANSITIONS,
    OrgCreateRequest,
    OrgSettings,
    OrgUpdateRequest,
)

log = structlog.get_logger()


def _deep_merge(base: dict, patch: dict) -> dict:
    """JSON Merge Patch style deep merge."""
    result = base.copy()
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


async def list_orgs(session: AsyncSession, principal: Principal) -> list[dict]:
    """Orgs the principal is an active member of; every org for platform admins."""
    stmt = (
        select(Organization, OrganizationMembership.role)
        .outerjoin(
            OrganizationMembership,
            (OrganizationMembership.organization_id == Organization.id)
            & (OrganizationMembership.user_id == principal.user_id)
            & OrganizationMembership.is_active.is_(True),
        )
        .order_by(Organization.name)
    )
    if not principal.is_platform_admin:
        stmt = stmt.where(is_org_member_clause(principal.user_id, Organization.id))
    result = await session.execute(stmt)
    return [
        {
            "id": org.id,
            "name": org.name,
            "slug": org.slug,
            "status": org.status,
            "role": role,
        }
        for org, role in result.all()
    ]


async def create_org(
    session: AsyncSession, actor: Principal, req: OrgCreateRequest
) -> Organization:
    """Create an org and make ``req.admin_user_id`` its first admin."""
    if not actor.is_platform_admin:
        raise Forbidden("Platform administrator access required")

    existing = await session.execute(
        select(Organization).where(Organization.slug == req.slug)
    )
    if existing.scalar_one_or_none():
        raise Conflict("Org slug already taken", slug=req.slug)

    org = Organization(
        name=req.name,
        slug=req.slug,
        status=OrgStatus.ACTIVE.value,
        settings=(req.settings or OrgSettings()).model_dump(mode="json"),
    )
    session.add(org)
    await session.flush()

    await guard.add_org_member(session, actor, org.id, req.admin_user_id, OrgRole.ADMIN)

    log.info(
        "org.created",
        org_id=str(org.id),
        slug=req.slug,
        admin=str(req.admin_user_id),
        creator=str(actor.user_id),
    )
    return org


async def get_org(
    session: AsyncSession, principal: Principal, org_id: uuid.UUID
) -> Organization:
    """Get an org the principal belongs to; NotFound otherwise."""
    org = await session.get(Organization, org_id)
    policy = PolicyEvaluator(session, principal)
    if org is None or not (
        await policy.is_platform_admin() or await policy.is_org_member(org_id)
    ):
        raise NotFound("Organization not found", org_id=org_id)
    return org


async def update_org(
    session: AsyncSession,
    principal: Principal,
    org_id: uuid.UUID,
    req: OrgUpdateRequest,
) -> Organization:
    """Update org name and/or settings (deep merge). Org admins only."""
    org = await get_org(session, principal, org_id)
    policy = PolicyEvaluator(session, principal)
    if not (await policy.is_platform_admin() or await policy.is_org_admin(org_id)):
        raise Forbidden("Organization admin access required", org_id=org_id)

    if req.name is not None:
        org.name = req.name
    if req.settings is not None:
        merged = _deep_merge(org.settings or {}, req.settings)
        org.settings = OrgSettings.model_validate(merged).model_dump(mode="json")

    org.updated_at = datetime.now(timezone.utc)
    session.add(org)
    await session.flush()

    log.info("org.updated", org_id=str(org.id), slug=org.slug)
    return org


async def _transition(
    session: AsyncSession,
    principal: Principal,
    org_id: uuid.UUID,
    target: OrgStatus,
) -> Organization:
    if not principal.is_platform_admin:
        raise Forbidden("Platform administrator access required")
    org: Optional[Organization] = await session.get(Organization, org_id)
    if org is None:
        raise NotFound("Organization not found", org_id=org_id)

    current = OrgStatus(org.status)
    if target not in ORG_TRANSITIONS.get(current, []):
        raise Conflict(
            f"Cannot move organization from '{current.value}' to '{target.value}'",
            org_id=org_id,
        )
    org.status = target.value
    org.updated_at = datetime.now(timezone.utc)
    session.add(org)
    await session.flush()
    return org


async def retire_org(
    session: AsyncSession, principal: Principal, org_id: uuid.UUID
) -> Organization:
    """Soft-retire an org. Memberships and access are left untouched."""
    org = await _transition(session, principal, org_id, OrgStatus.RETIRED)
    log.info("org.retired", org_id=str(org.id), actor=str(principal.user_id))
    return org


async def reactivate_org(
    session: AsyncSession, principal: Principal, org_id: uuid.UUID
) -> Organization:
    org = await _transition(session, principal, org_id, OrgStatus.ACTIVE)
    log.info("org.reactivated", org_id=str(org.id), actor=str(principal.user_id))
    return org
