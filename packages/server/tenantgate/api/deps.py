"""Shared FastAPI dependencies for the v1 routers."""

from __future__ import annotations

import redis.asyncio as redis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.auth import Principal, get_principal
from tenantgate.core.database import get_session
from tenantgate.core.redis import get_redis
from tenantgate.services.sessions import RequestContext, SessionService


async def get_session_service(
    session: AsyncSession = Depends(get_session),
    client: redis.Redis = Depends(get_redis),
) -> SessionService:
    return SessionService(session, client)


async def get_request_context(
    principal: Principal = Depends(get_principal),
    service: SessionService = Depends(get_session_service),
) -> RequestContext:
    """Per-request context with the actual role recomputed from membership."""
    return await service.load_context(principal)
