"""Pytest configuration and fixtures for the Wishcraft API test suite.

Provides:
- A throwaway SQLite database per test (aiosqlite, NullPool)
- Mock Redis (fakeredis)
- Disabled request rate limiting
- A fake identity provider for the customer OAuth flow
- A recording notifier in place of the Celery queue
- Model factories for Shop, Registry, RegistryCollaborator and CustomerSession
"""

import os

# Settings are loaded when wishcraft is first imported
os.environ["ENVIRONMENT"] = "test"

import uuid
from collections.abc import AsyncGenerator, Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch
from uuid import UUID

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from wishcraft.core.auth import Actor, ActorKind
from wishcraft.core.config import settings
from wishcraft.core.crypto import email_index, encrypt_pii
from wishcraft.core.database import get_async_session
from wishcraft.core.deps import get_db, get_identity_provider, get_notifier, get_redis
from wishcraft.core.rate_limit import limiter
from wishcraft.integrations.shopify.oauth import (
    CustomerAccountClient,
    CustomerProfile,
    TokenResponse,
)
from wishcraft.integrations.shopify.webhooks import compute_signature
from wishcraft.main import app
from wishcraft.models.base import Base
from wishcraft.models.collaborator import (
    CollaboratorRole,
    CollaboratorStatus,
    PermissionLevel,
    RegistryCollaborator,
)
from wishcraft.models.registry import Registry
from wishcraft.models.session import CustomerSession
from wishcraft.models.shop import Shop
from wishcraft.services.notification_service import NotificationDispatcher, NotificationEvent
from wishcraft.services.session_service import SessionManager

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
TEST_SHOP = "demo-store.myshopify.com"
OTHER_SHOP = "other-store.myshopify.com"
OWNER_EMAIL = "owner@example.com"
GUEST_EMAIL = "guest@example.com"
SHOPIFY_TEST_CLIENT_ID = "test-shopify-client-id"
SHOPIFY_TEST_WEBHOOK_SECRET = "test-shopify-webhook-secret"

# ---------------------------------------------------------------------------
# Disable rate limiting globally for tests
# ---------------------------------------------------------------------------
limiter.enabled = False


@pytest.fixture(autouse=True)
def set_test_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Consistent Shopify config for every test."""
    monkeypatch.setattr(settings, "shopify_client_id", SHOPIFY_TEST_CLIENT_ID)
    monkeypatch.setattr(settings, "shopify_webhook_secret", SHOPIFY_TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "token_exchange_retry_delay", 0.0)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_maker(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a fresh SQLite file.

    NullPool gives every session its own connection, so concurrent sessions
    behave like separate requests.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session for test setup (factory fixtures)."""
    async with session_maker() as session:
        yield session


# ---------------------------------------------------------------------------
# Fake Redis
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_redis() -> fakeredis.aioredis.FakeRedis:
    """Provide a fresh fakeredis instance per test."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


# ---------------------------------------------------------------------------
# Identity provider & notifications
# ---------------------------------------------------------------------------


class FakeIdentityProvider(CustomerAccountClient):
    """Customer Account API stand-in that records calls instead of using HTTP."""

    def __init__(self, email: str = GUEST_EMAIL) -> None:
        super().__init__(max_attempts=1, retry_delay=0.0)
        self.email = email
        self.exchange_code = AsyncMock(  # type: ignore[method-assign]
            return_value=TokenResponse(
                access_token="access-token",
                expires_in=3600,
                refresh_token="refresh-token",
                scope="openid email",
            )
        )
        self.refresh = AsyncMock(  # type: ignore[method-assign]
            return_value=TokenResponse(access_token="renewed-token", expires_in=7200)
        )
        self.fetch_profile = AsyncMock(  # type: ignore[method-assign]
            side_effect=lambda shop, token: CustomerProfile(
                customer_id="gid://shopify/Customer/1",
                email=self.email,
                display_name="Guest Customer",
            )
        )


class RecordingNotifier(NotificationDispatcher):
    """Collects events instead of queueing them."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    def dispatch(self, event: NotificationEvent) -> None:
        self.events.append(event)


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def mock_delay() -> Generator[Any, None, None]:
    """Patch the Celery notification task's ``delay``."""
    with patch("wishcraft.workers.tasks.collaboration.deliver_notification.delay") as mocked:
        yield mocked


# ---------------------------------------------------------------------------
# Test client (overrides DB, Redis, identity provider, notifier)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(
    session_maker: async_sessionmaker[AsyncSession],
    fake_redis: fakeredis.aioredis.FakeRedis,
    identity_provider: FakeIdentityProvider,
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with infrastructure dependencies overridden. Auth is real."""

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as s:
            yield s

    async def _override_redis() -> AsyncGenerator[fakeredis.aioredis.FakeRedis, None]:
        yield fake_redis

    app.dependency_overrides[get_async_session] = _override_session
    app.dependency_overrides[get_db] = _override_session
    app.dependency_overrides[get_redis] = _override_redis
    app.dependency_overrides[get_identity_provider] = lambda: identity_provider
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def plain_client() -> AsyncGenerator[AsyncClient, None]:
    """Minimal async test client with NO dependency overrides."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Model Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def shop_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates Shop instances in the test database."""

    async def _create(*, domain: str = TEST_SHOP, is_installed: bool = True) -> Shop:
        shop = Shop(
            domain=domain,
            name=domain.split(".")[0],
            is_installed=is_installed,
            installed_at=datetime.now(UTC),
        )
        db_session.add(shop)
        await db_session.commit()
        return shop

    return _create


@pytest.fixture
def registry_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates Registry instances."""

    async def _create(
        *,
        shop_id: UUID,
        title: str = "Wedding Registry",
        owner_email: str = OWNER_EMAIL,
        collaboration_enabled: bool = True,
        collaboration_settings: dict[str, Any] | None = None,
    ) -> Registry:
        registry = Registry(
            shop_id=shop_id,
            title=title,
            owner_customer_id="gid://shopify/Customer/100",
            owner_email_encrypted=encrypt_pii(owner_email),
            owner_email_hash=email_index(owner_email),
            owner_name="Registry Owner",
            collaboration_enabled=collaboration_enabled,
            collaboration_settings=collaboration_settings
            if collaboration_settings is not None
            else {"max_collaborators": 10, "require_approval": True, "expire_invites_after_days": 7},
        )
        db_session.add(registry)
        await db_session.commit()
        return registry

    return _create


@pytest.fixture
def collaborator_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates RegistryCollaborator instances."""

    async def _create(
        *,
        registry_id: UUID,
        email: str = GUEST_EMAIL,
        role: CollaboratorRole = CollaboratorRole.COLLABORATOR,
        permission: PermissionLevel = PermissionLevel.READ_WRITE,
        status: CollaboratorStatus = CollaboratorStatus.ACTIVE,
        expires_at: datetime | None = None,
        invited_by: str = OWNER_EMAIL,
    ) -> RegistryCollaborator:
        now = datetime.now(UTC)
        collaborator = RegistryCollaborator(
            registry_id=registry_id,
            email_encrypted=encrypt_pii(email),
            email_hash=email_index(email),
            role=role,
            permission=permission,
            status=status,
            invited_by=invited_by,
            invited_at=now,
            expires_at=expires_at or now + timedelta(days=7),
            accepted_at=now if status is CollaboratorStatus.ACTIVE else None,
        )
        db_session.add(collaborator)
        await db_session.commit()
        return collaborator

    return _create


@pytest.fixture
def customer_session_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates CustomerSession rows directly (bypassing OAuth)."""

    async def _create(
        *,
        shop_id: UUID,
        email: str = GUEST_EMAIL,
        expires_at: datetime | None = None,
        rotation_required: bool = False,
    ) -> CustomerSession:
        now = datetime.now(UTC)
        session = CustomerSession(
            shop_id=shop_id,
            customer_id="gid://shopify/Customer/1",
            email_encrypted=encrypt_pii(email),
            email_hash=email_index(email),
            display_name="Guest Customer",
            token_ciphertext=SessionManager._encrypt_tokens("access-token", "refresh-token"),
            issued_at=now,
            expires_at=expires_at or now + timedelta(days=1),
            exchange_nonce=uuid.uuid4().hex,
            rotation_required=rotation_required,
        )
        db_session.add(session)
        await db_session.commit()
        return session

    return _create


@pytest.fixture
def session_cookie(
    db_session: AsyncSession,
    fake_redis: fakeredis.aioredis.FakeRedis,
) -> Callable[[CustomerSession], dict[str, str]]:
    """Build a Cookie header carrying the encrypted payload for a session."""

    def _header(session: CustomerSession) -> dict[str, str]:
        cookie = SessionManager(db_session, fake_redis).encrypt_session_payload(session)
        return {"Cookie": f"{settings.session_cookie_name}={cookie}"}

    return _header


# ---------------------------------------------------------------------------
# Convenience fixtures (pre-built models)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def shop(shop_factory: Callable[..., Any]) -> Shop:
    return await shop_factory()


@pytest_asyncio.fixture
async def other_shop(shop_factory: Callable[..., Any]) -> Shop:
    """A DIFFERENT shop (for tenancy tests)."""
    return await shop_factory(domain=OTHER_SHOP)


@pytest_asyncio.fixture
async def registry(registry_factory: Callable[..., Any], shop: Shop) -> Registry:
    return await registry_factory(shop_id=shop.id)


def make_actor(
    shop_id: UUID,
    email: str = OWNER_EMAIL,
    kind: ActorKind = ActorKind.CUSTOMER,
) -> Actor:
    return Actor(kind=kind, email=email, shop_id=shop_id, name=email.split("@")[0])


# ---------------------------------------------------------------------------
# Shopify webhooks
# ---------------------------------------------------------------------------


@pytest.fixture
def shopify_webhook_headers() -> Callable[..., dict[str, str]]:
    """Generate complete Shopify webhook headers for a given body and shop.

    Usage:
        body = b'{"customer": {"email": "a@b.com"}}'
        headers = shopify_webhook_headers(body, "my-store.myshopify.com")
    """

    def _headers(body: bytes, shop: str = TEST_SHOP) -> dict[str, str]:
        return {
            "X-Shopify-Hmac-Sha256": compute_signature(body, SHOPIFY_TEST_WEBHOOK_SECRET),
            "X-Shopify-Shop-Domain": shop,
            "Content-Type": "application/json",
        }

    return _headers
