"""
Principal extraction for TenantGate.

Authentication (identity proofing, password/OIDC login) happens upstream; it
hands us a signed JWT whose subject is a user id. This module only:
- creates/decodes those tokens (dev tooling and tests create them too)
- keeps a Redis revocation list so logout is immediate
- turns a request into a ``Principal``

The principal never carries a role. Roles are resolved per request from
current membership state (see ``tenantgate.services.roles``).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import redis.asyncio as redis
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.config import get_settings
from tenantgate.core.database import get_session
from tenantgate.core.redis import get_redis
from tenantgate.models.user import User

log = structlog.get_logger()
settings = get_settings()

SESSION_COOKIE = "tg_session"

authorization_header = APIKeyHeader(name="Authorization", auto_error=False)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    user_id: uuid.UUID,
    *,
    expires_delta: timedelta | None = None,
) -> tuple[str, str]:
    """Create a signed identity token. Returns (token, jti)."""
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": exp,
        "jti": jti,
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, jti


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


def token_ttl_seconds(payload: dict) -> int:
    """Seconds left before the token expires (at least 1)."""
    exp = payload.get("exp")
    if exp is None:
        return settings.jwt_expire_minutes * 60
    remaining = int(exp - datetime.now(timezone.utc).timestamp())
    return max(remaining, 1)


# ---------------------------------------------------------------------------
# JWT Revocation (Redis)
# ---------------------------------------------------------------------------

async def revoke_jwt(client: redis.Redis, jti: str, ttl_seconds: int = 3600) -> None:
    """Add a JWT ID to the revocation list in Redis."""
    await client.setex(f"jwt:revoked:{jti}", ttl_seconds, "1")


async def is_jwt_revoked(client: redis.Redis, jti: str) -> bool:
    """Check if a JWT ID has been revoked."""
    return await client.exists(f"jwt:revoked:{jti}") > 0


# ---------------------------------------------------------------------------
# Principal
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Principal:
    """The authenticated actor for one request."""

    user_id: uuid.UUID
    is_platform_admin: bool
    session_id: str
    token_ttl: int = 3600


def _extract_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip()
    return request.cookies.get(SESSION_COOKIE)


async def get_principal(
    request: Request,
    authorization: Optional[str] = Depends(authorization_header),
    session: AsyncSession = Depends(get_session),
    client: redis.Redis = Depends(get_redis),
) -> Principal:
    """Main authentication dependency: bearer header first, then session cookie."""
    token = _extract_token(request, authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        payload = decode_jwt(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    jti = payload.get("jti")
    if not jti:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    if await is_jwt_revoked(client, jti):
        raise HTTPException(status_code=401, detail="Session has been revoked")

    try:
        user_id = uuid.UUID(payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    user = await session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    principal = Principal(
        user_id=user.id,
        is_platform_admin=user.is_platform_admin,
        session_id=jti,
        token_ttl=token_ttl_seconds(payload),
    )
    request.state.principal = principal
    structlog.contextvars.bind_contextvars(user_id=str(user.id))
    return principal

