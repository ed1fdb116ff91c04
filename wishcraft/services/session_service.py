"""Customer session lifecycle: OAuth + PKCE exchange, encrypted cookies, rotation."""

import hashlib
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wishcraft.core.config import settings
from wishcraft.core.crypto import (
    constant_time_equals,
    decrypt,
    email_index,
    encrypt,
    encrypt_pii,
    purpose_key,
)
from wishcraft.core.exceptions import (
    DecryptionError,
    ExpiredExchange,
    PKCEMismatch,
    StateMismatch,
    Unauthenticated,
)
from wishcraft.core.security import (
    compute_code_challenge,
    generate_exchange_id,
    generate_pkce_pair,
    generate_state,
)
from wishcraft.integrations.shopify.oauth import CustomerAccountClient
from wishcraft.models.session import CustomerSession
from wishcraft.models.shop import Shop

logger = logging.getLogger(__name__)

EXCHANGE_KEY_PREFIX = "oauth_exchange:"
# Redis keeps records a little past the TTL so late callbacks get ExpiredExchange
EXCHANGE_REAP_MARGIN_SECONDS = 300


@dataclass(frozen=True)
class PendingExchange:
    """Server-side half of an authorization request."""

    exchange_id: str
    shop: str
    state: str
    code_verifier: str
    code_challenge: str
    created_at: float
    return_url: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "PendingExchange":
        return cls(**json.loads(raw))


@dataclass(frozen=True)
class AuthorizationRequest:
    exchange: PendingExchange
    auth_url: str


@dataclass(frozen=True)
class IssuedSession:
    session: CustomerSession
    cookie: str
    return_url: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def mark_rotation_required(db: AsyncSession, shop_id: uuid.UUID, email_hash: str) -> None:
    """Flag live sessions of a customer for rotation on their next request.

    Does not commit; runs inside the caller's transaction.
    """
    await db.execute(
        update(CustomerSession)
        .where(
            CustomerSession.shop_id == shop_id,
            CustomerSession.email_hash == email_hash,
            CustomerSession.revoked_at.is_(None),
        )
        .values(rotation_required=True)
    )


async def revoke_shop_sessions(db: AsyncSession, shop_id: uuid.UUID) -> int:
    """Revoke every live session of a shop. Does not commit."""
    result = await db.execute(
        update(CustomerSession)
        .where(
            CustomerSession.shop_id == shop_id,
            CustomerSession.revoked_at.is_(None),
        )
        .values(revoked_at=_utcnow(), grace_expires_at=None)
    )
    return result.rowcount or 0


class SessionManager:
    """Owns customer sessions and pending OAuth exchanges.

    State machine: Unauthenticated -> PendingExchange -> Authenticated ->
    (Rotated | Expired | Revoked). Pending exchanges live in Redis and are
    consumed exactly once; sessions live in the database.
    """

    def __init__(
        self,
        db: AsyncSession,
        redis: aioredis.Redis,
        identity_provider: CustomerAccountClient | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.redis = redis
        self.identity_provider = identity_provider or CustomerAccountClient()
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    # ------------------------------------------------------------------
    # Authorization request
    # ------------------------------------------------------------------

    def prepare_auth(self, shop: str, return_url: str | None = None) -> AuthorizationRequest:
        """Build a pending exchange and its authorization URL without persisting it."""
        pkce = generate_pkce_pair()
        exchange = PendingExchange(
            exchange_id=generate_exchange_id(),
            shop=shop,
            state=generate_state(),
            code_verifier=pkce.verifier,
            code_challenge=pkce.challenge,
            created_at=self._clock(),
            return_url=return_url,
        )
        auth_url = self.identity_provider.build_auth_url(
            shop, exchange.state, exchange.code_challenge
        )
        return AuthorizationRequest(exchange=exchange, auth_url=auth_url)

    async def initiate_auth(self, shop: str, return_url: str | None = None) -> AuthorizationRequest:
        """Start an authorization: persist the pending exchange and return the URL."""
        request = self.prepare_auth(shop, return_url)
        await self.redis.set(
            f"{EXCHANGE_KEY_PREFIX}{request.exchange.exchange_id}",
            request.exchange.to_json(),
            ex=settings.oauth_exchange_ttl_seconds + EXCHANGE_REAP_MARGIN_SECONDS,
        )
        logger.info("OAuth exchange started: shop=%s", shop)
        return request

    async def complete_auth(
        self,
        exchange_id: str,
        shop: str,
        code: str,
        state: str,
        verifier: str | None = None,
    ) -> IssuedSession:
        """Validate the callback, exchange the code and create a session.

        The pending exchange is consumed before any validation, so a failed
        callback can never be replayed.

        Args:
            exchange_id: Id of the pending exchange (from the browser cookie).
            shop: Shop domain from the callback.
            code: Authorization code from the identity provider.
            state: State value echoed back by the identity provider.
            verifier: PKCE verifier. Defaults to the server-stored verifier.

        Raises:
            StateMismatch: Unknown/consumed exchange, wrong state or wrong shop.
            ExpiredExchange: The exchange is older than the configured TTL.
            PKCEMismatch: ``verifier`` does not hash to the stored challenge.
            ExchangeFailed: The identity provider call failed.
        """
        raw = await self.redis.getdel(f"{EXCHANGE_KEY_PREFIX}{exchange_id}")
        if raw is None:
            logger.warning("OAuth callback with unknown or consumed exchange: shop=%s", shop)
            raise StateMismatch()

        pending = PendingExchange.from_json(raw)
        if not constant_time_equals(pending.state, state):
            logger.warning("OAuth state mismatch: shop=%s", shop)
            raise StateMismatch()
        if pending.shop != shop:
            logger.warning("OAuth shop mismatch: expected=%s got=%s", pending.shop, shop)
            raise StateMismatch()
        if self._clock() - pending.created_at > settings.oauth_exchange_ttl_seconds:
            raise ExpiredExchange()

        if verifier is None:
            verifier = pending.code_verifier
        if not constant_time_equals(compute_code_challenge(verifier), pending.code_challenge):
            logger.warning("PKCE verifier mismatch: shop=%s", shop)
            raise PKCEMismatch()

        shop_row = await self._get_installed_shop(shop)

        tokens = await self.identity_provider.exchange_code(shop, code, verifier)
        profile = await self.identity_provider.fetch_profile(shop, tokens.access_token)

        now = self._now()
        session = CustomerSession(
            id=uuid.uuid4(),
            shop_id=shop_row.id,
            customer_id=profile.customer_id,
            email_encrypted=encrypt_pii(profile.email),
            email_hash=email_index(profile.email),
            display_name=profile.display_name,
            token_ciphertext=self._encrypt_tokens(tokens.access_token, tokens.refresh_token),
            scope=tokens.scope,
            token_expires_at=now + timedelta(seconds=tokens.expires_in),
            issued_at=now,
            expires_at=now + timedelta(seconds=settings.session_ttl_seconds),
            exchange_nonce=hashlib.sha256(pending.state.encode()).hexdigest(),
        )
        self.db.add(session)
        await self.db.commit()

        logger.info("Customer session created: session=%s shop=%s", session.id, shop)
        return IssuedSession(
            session=session,
            cookie=self.encrypt_session_payload(session),
            return_url=pending.return_url,
        )

    async def _get_installed_shop(self, domain: str) -> Shop:
        result = await self.db.execute(select(Shop).where(Shop.domain == domain))
        shop = result.scalar_one_or_none()
        if shop is None or not shop.is_installed:
            raise Unauthenticated("Shop is not installed")
        return shop

    # ------------------------------------------------------------------
    # Cookie payload
    # ------------------------------------------------------------------

    def encrypt_session_payload(self, session: CustomerSession) -> str:
        payload = {
            "sid": str(session.id),
            "shop": str(session.shop_id),
            "iat": int(session.issued_at.timestamp()),
            "exp": int(session.expires_at.timestamp()),
        }
        return encrypt(json.dumps(payload), purpose_key("session"))

    def decrypt_session_payload(self, cookie: str) -> dict[str, Any]:
        """Decrypt a session cookie.

        Raises:
            Unauthenticated: On any decryption or format failure.
        """
        try:
            payload: dict[str, Any] = json.loads(decrypt(cookie, purpose_key("session")))
            uuid.UUID(payload["sid"])
            int(payload["exp"])
        except (DecryptionError, ValueError, KeyError, TypeError) as e:
            logger.warning("Rejected undecryptable session cookie")
            raise Unauthenticated() from e
        return payload

    # ------------------------------------------------------------------
    # Authenticated sessions
    # ------------------------------------------------------------------

    async def authenticate(self, cookie: str) -> CustomerSession:
        """Resolve a session cookie to a live session.

        Raises:
            Unauthenticated: If the cookie is invalid or the session is
                expired, revoked, or rotated past its grace period.
        """
        payload = self.decrypt_session_payload(cookie)
        now = self._now()
        if payload["exp"] < now.timestamp():
            raise Unauthenticated("Session expired")

        session = await self.db.get(CustomerSession, uuid.UUID(payload["sid"]))
        if session is None or str(session.shop_id) != payload.get("shop"):
            raise Unauthenticated()

        self._ensure_live(session, now)
        return session

    @staticmethod
    def _ensure_live(session: CustomerSession, now: datetime) -> None:
        if session.expires_at <= now:
            raise Unauthenticated("Session expired")
        if session.revoked_at is None:
            return
        # A rotated session stays usable for in-flight requests during the grace period
        if (
            session.rotated_to_id is not None
            and session.grace_expires_at is not None
            and now < session.grace_expires_at
        ):
            return
        raise Unauthenticated("Session revoked")

    async def rotate_session(self, session: CustomerSession) -> IssuedSession:
        """Issue a replacement session and retire ``session`` after a short grace period."""
        if session.revoked_at is not None:
            raise Unauthenticated("Session already rotated or revoked")

        now = self._now()
        replacement = CustomerSession(
            id=uuid.uuid4(),
            shop_id=session.shop_id,
            customer_id=session.customer_id,
            email_encrypted=session.email_encrypted,
            email_hash=session.email_hash,
            display_name=session.display_name,
            token_ciphertext=session.token_ciphertext,
            scope=session.scope,
            token_expires_at=session.token_expires_at,
            issued_at=now,
            expires_at=now + timedelta(seconds=settings.session_ttl_seconds),
            exchange_nonce=hashlib.sha256(f"rotation:{session.id}".encode()).hexdigest(),
        )
        session.revoked_at = now
        session.rotated_to_id = replacement.id
        session.grace_expires_at = now + timedelta(seconds=settings.session_rotation_grace_seconds)
        session.rotation_required = False
        self.db.add(replacement)
        await self.db.commit()

        logger.info("Session rotated: old=%s new=%s", session.id, replacement.id)
        return IssuedSession(session=replacement, cookie=self.encrypt_session_payload(replacement))

    async def revoke_session(self, session: CustomerSession) -> None:
        """Log out: the session stops working immediately."""
        session.revoked_at = self._now()
        session.grace_expires_at = None
        await self.db.commit()
        logger.info("Session revoked: session=%s", session.id)

    async def mark_rotation_required(self, shop_id: uuid.UUID, email_hash: str) -> None:
        await mark_rotation_required(self.db, shop_id, email_hash)

    # ------------------------------------------------------------------
    # Token material
    # ------------------------------------------------------------------

    @staticmethod
    def _encrypt_tokens(access_token: str, refresh_token: str | None) -> str:
        return encrypt(
            json.dumps({"access_token": access_token, "refresh_token": refresh_token}),
            purpose_key("session"),
        )

    async def get_tokens(self, session: CustomerSession) -> dict[str, str | None]:
        """Decrypt a session's tokens; an undecryptable session is revoked on the spot."""
        try:
            tokens: dict[str, str | None] = json.loads(
                decrypt(session.token_ciphertext, purpose_key("session"))
            )
        except DecryptionError as e:
            logger.error("Session token material failed to decrypt: session=%s", session.id)
            await self.revoke_session(session)
            raise Unauthenticated() from e
        return tokens

    async def refresh_tokens(self, session: CustomerSession) -> CustomerSession:
        """Use the refresh token to renew the session's access token."""
        tokens = await self.get_tokens(session)
        refresh_token = tokens.get("refresh_token")
        if not refresh_token:
            raise Unauthenticated("Session cannot be refreshed")

        shop = await self.db.get(Shop, session.shop_id)
        if shop is None or not shop.is_installed:
            raise Unauthenticated("Shop is not installed")

        renewed = await self.identity_provider.refresh(shop.domain, refresh_token)
        session.token_ciphertext = self._encrypt_tokens(
            renewed.access_token, renewed.refresh_token or refresh_token
        )
        session.token_expires_at = self._now() + timedelta(seconds=renewed.expires_in)
        await self.db.commit()

        logger.info("Session tokens refreshed: session=%s", session.id)
        return session
