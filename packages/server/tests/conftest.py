"""
Shared fixtures: a throwaway SQLite database per test, an in-process Redis
stand-in, seed helpers and an HTTP client wired to both.
"""

from __future__ import annotations

import os
import tempfile
import uuid
from typing import Optional

# Must be set before tenantgate.core.config is first imported
os.environ.setdefault(
    "TG_DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'tenantgate-pytest.db')}",
)
os.environ.setdefault("TG_SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import tenantgate.models  # noqa: F401  (populates metadata)
from tenantgate.core.auth import Principal, create_jwt
from tenantgate.core.database import get_session
from tenantgate.core.redis import get_redis
from tenantgate.main import app
from tenantgate.models.org_membership import OrganizationMembership
from tenantgate.models.organization import Organization
from tenantgate.models.project import Project
from tenantgate.models.project_membership import ProjectMembership
from tenantgate.models.user import User


class FakeRedis:
    """The handful of redis.asyncio calls TenantGate makes, kept in a dict."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def setex(self, key, ttl, value):
        return await self.set(key, value, ex=ttl)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.data)

    async def ping(self):
        return True


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tenantgate.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def fake_redis():
    return FakeRedis()


# ---------------------------------------------------------------------------
# Seed helpers (direct inserts; test setup only)
# ---------------------------------------------------------------------------

class Seed:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def user(self, *, platform_admin: bool = False, email: Optional[str] = None) -> User:
        uid = uuid.uuid4()
        user = User(
            id=uid,
            email=email or f"{uid.hex[:8]}@example.com",
            display_name=f"user-{uid.hex[:6]}",
            is_platform_admin=platform_admin,
        )
        self.session.add(user)
        await self.session.commit()
        return user

    async def org(self, *, admins=(), members=(), slug: Optional[str] = None) -> Organization:
        org = Organization(
            name="Org",
            slug=slug or f"org-{uuid.uuid4().hex[:8]}",
            settings={},
        )
        self.session.add(org)
        await self.session.flush()
        for user in admins:
            self.session.add(
                OrganizationMembership(user_id=user.id, organization_id=org.id, role="admin")
            )
        for user in members:
            self.session.add(
                OrganizationMembership(user_id=user.id, organization_id=org.id, role="member")
            )
        await self.session.commit()
        return org

    async def org_member(self, org: Organization, user: User, role: str = "member"):
        membership = OrganizationMembership(
            user_id=user.id, organization_id=org.id, role=role
        )
        self.session.add(membership)
        await self.session.commit()
        return membership

    async def project(self, org: Organization, name: str = "Project") -> Project:
        project = Project(
            organization_id=org.id,
            name=name,
            reference=f"P-{uuid.uuid4().hex[:6]}",
        )
        self.session.add(project)
        await self.session.commit()
        return project

    async def project_member(
        self, project: Project, user: User, role: str, *, is_default: bool = False
    ) -> ProjectMembership:
        membership = ProjectMembership(
            user_id=user.id, project_id=project.id, role=role, is_default=is_default
        )
        self.session.add(membership)
        await self.session.commit()
        return membership


@pytest.fixture
def seed(session):
    return Seed(session)


def principal_for(user: User, session_id: Optional[str] = None) -> Principal:
    return Principal(
        user_id=user.id,
        is_platform_admin=user.is_platform_admin,
        session_id=session_id or str(uuid.uuid4()),
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
async def client(session_factory, fake_redis):
    async def _session():
        async with session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    async def _redis():
        return fake_redis

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_redis] = _redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    token, _ = create_jwt(user.id)
    return {"Authorization": f"Bearer {token}"}
