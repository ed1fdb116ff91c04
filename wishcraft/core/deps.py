"""Dependency injection for FastAPI routes."""

from collections.abc import AsyncGenerator
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wishcraft.core.auth import Actor, ActorKind, bearer_scheme, verify_token
from wishcraft.core.config import settings
from wishcraft.core.crypto import decrypt_pii
from wishcraft.core.database import get_async_session
from wishcraft.core.exceptions import Unauthenticated
from wishcraft.core.logging_config import shop_var
from wishcraft.core.rate_limit import BruteForceGuard
from wishcraft.integrations.shopify.oauth import CustomerAccountClient
from wishcraft.models.shop import Shop
from wishcraft.services.collaboration_service import CollaborationService
from wishcraft.services.notification_service import NotificationDispatcher
from wishcraft.services.session_service import SessionManager


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Alias for get_async_session so tests can override a single dependency."""
    async for session in get_async_session():
        yield session


# Shared Redis connection pool
_redis_pool: aioredis.ConnectionPool | None = None


def _get_redis_pool() -> aioredis.ConnectionPool:
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is None:
        _redis_pool = aioredis.ConnectionPool.from_url(
            str(settings.redis_url), decode_responses=True
        )
    return _redis_pool


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    """Yield a Redis client from the shared connection pool."""
    pool = _get_redis_pool()
    r = aioredis.Redis(connection_pool=pool)
    try:
        yield r
    finally:
        await r.aclose()


# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]
RedisClient = Annotated[aioredis.Redis, Depends(get_redis)]


def get_identity_provider() -> CustomerAccountClient:
    return CustomerAccountClient()


def get_notifier() -> NotificationDispatcher:
    return NotificationDispatcher()


def get_session_manager(
    db: DBSession,
    redis: RedisClient,
    identity_provider: Annotated[CustomerAccountClient, Depends(get_identity_provider)],
) -> SessionManager:
    return SessionManager(db, redis, identity_provider)


def get_collaboration_service(
    db: DBSession,
    notifier: Annotated[NotificationDispatcher, Depends(get_notifier)],
) -> CollaborationService:
    return CollaborationService(db, notifier)


def get_auth_guard(redis: RedisClient) -> BruteForceGuard:
    return BruteForceGuard(redis)


Sessions = Annotated[SessionManager, Depends(get_session_manager)]
Collaboration = Annotated[CollaborationService, Depends(get_collaboration_service)]
AuthGuard = Annotated[BruteForceGuard, Depends(get_auth_guard)]


async def _operator_actor(db: AsyncSession, token: str) -> Actor:
    claims = await verify_token(token)
    result = await db.execute(
        select(Shop).where(Shop.domain == claims["shop"], Shop.is_installed.is_(True))
    )
    shop = result.scalar_one_or_none()
    if shop is None:
        raise Unauthenticated("Shop is not installed")
    shop_var.set(shop.domain)
    return Actor(
        kind=ActorKind.OPERATOR,
        email=claims["email"],
        shop_id=shop.id,
        name=claims.get("name"),
    )


def set_session_cookie(response: Response, cookie: str) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        cookie,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


async def get_current_actor(
    request: Request,
    response: Response,
    db: DBSession,
    sessions: Sessions,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Actor:
    """Resolve the caller from a Bearer token (operator) or session cookie (customer).

    A session flagged for rotation is swapped for a fresh one here, and the
    new cookie is set on the response.
    """
    if credentials is not None:
        return await _operator_actor(db, credentials.credentials)

    cookie = request.cookies.get(settings.session_cookie_name)
    if not cookie:
        raise Unauthenticated()

    session = await sessions.authenticate(cookie)
    if session.rotation_required and session.revoked_at is None:
        issued = await sessions.rotate_session(session)
        set_session_cookie(response, issued.cookie)
        session = issued.session

    return Actor(
        kind=ActorKind.CUSTOMER,
        email=decrypt_pii(session.email_encrypted),
        shop_id=session.shop_id,
        name=session.display_name,
        session=session,
    )


CurrentActor = Annotated[Actor, Depends(get_current_actor)]


__all__ = [
    "AuthGuard",
    "Collaboration",
    "CurrentActor",
    "DBSession",
    "RedisClient",
    "Sessions",
    "get_collaboration_service",
    "get_current_actor",
    "get_db",
    "get_identity_provider",
    "get_notifier",
    "get_redis",
    "get_session_manager",
    "set_session_cookie",
]
