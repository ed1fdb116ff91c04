"""Actor identity: shop operators via JWKS-verified JWTs, customers via sessions."""

import asyncio
import enum
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import jwt
from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jwt import PyJWKClient, PyJWKClientError

from wishcraft.core.config import settings
from wishcraft.core.exceptions import Unauthenticated

if TYPE_CHECKING:
    from wishcraft.models.session import CustomerSession

# HTTP Bearer token security scheme
bearer_scheme = HTTPBearer(auto_error=False)

# JWKS client for fetching the operator auth service's public keys
_jwks_client: PyJWKClient | None = None
_jwks_lock = asyncio.Lock()


class ActorKind(str, enum.Enum):
    CUSTOMER = "customer"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Actor:
    """Whoever is making the request.

    Customers come from a session cookie; operators (shop staff) from a
    Bearer token scoped to one shop.
    """

    kind: ActorKind
    email: str
    shop_id: uuid.UUID
    name: str | None = None
    session: "CustomerSession | None" = None

    @property
    def is_operator(self) -> bool:
        return self.kind is ActorKind.OPERATOR


def get_jwks_client() -> PyJWKClient:
    """Get or create JWKS client."""
    global _jwks_client
    if _jwks_client is None:
        if settings.auth_jwks_url:
            jwks_url = settings.auth_jwks_url
        else:
            jwks_url = f"{settings.auth_url}/api/auth/jwks"
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True)
    return _jwks_client


async def verify_token(token: str) -> dict[str, Any]:
    """Verify an operator JWT against the auth service's JWKS.

    Args:
        token: The JWT token to verify

    Returns:
        The decoded token payload

    Raises:
        Unauthenticated: If the token is invalid, expired, or lacks the
            ``email`` and ``shop`` claims.
        HTTPException: 503 if the JWKS endpoint is unreachable.
    """
    try:
        jwks_client = get_jwks_client()
        signing_key = jwks_client.get_signing_key_from_jwt(token)

        payload: dict[str, Any] = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=settings.auth_url,
            issuer=settings.auth_url,
            options={
                "verify_exp": True,
                "verify_iat": True,
                "verify_aud": True,
                "verify_iss": True,
                "require": ["exp", "email", "shop"],
            },
        )
        return payload
    except jwt.ExpiredSignatureError as e:
        raise Unauthenticated("Token has expired") from e
    except jwt.InvalidTokenError as e:
        raise Unauthenticated("Invalid token") from e
    except PyJWKClientError as e:
        # Reset cached client so next request retries fresh
        async with _jwks_lock:
            global _jwks_client
            _jwks_client = None
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        ) from e
