"""Shopify Customer Account API: OAuth (PKCE) token exchange and profile lookup."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from wishcraft.core.config import settings
from wishcraft.core.exceptions import ExchangeFailed

logger = logging.getLogger(__name__)

_PROFILE_QUERY = """
query GetCustomer {
  customer {
    id
    emailAddress { emailAddress }
    firstName
    lastName
    displayName
  }
}
"""


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    refresh_token: str | None = None
    scope: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "TokenResponse":
        if not data.get("access_token"):
            raise ExchangeFailed("Token response did not include an access token")
        return cls(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
        )


@dataclass(frozen=True)
class CustomerProfile:
    customer_id: str
    email: str
    display_name: str | None = None


def redirect_uri() -> str:
    return f"{settings.api_url}{settings.api_v1_prefix}/auth/customer/callback"


class CustomerAccountClient:
    """Async client for a shop's Customer Account OAuth and GraphQL endpoints.

    Token requests are retried with exponential backoff on transport errors
    and 5xx responses; 4xx responses fail immediately.
    """

    def __init__(
        self,
        *,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.max_attempts = max_attempts or settings.token_exchange_max_attempts
        self.retry_delay = (
            settings.token_exchange_retry_delay if retry_delay is None else retry_delay
        )
        self.timeout = timeout

    @staticmethod
    def _base_url(shop: str) -> str:
        return f"https://shopify.com/{shop}/account"

    def build_auth_url(self, shop: str, state: str, code_challenge: str) -> str:
        """Build the authorization URL for a pending exchange.

        Args:
            shop: The shop domain (e.g. mystore.myshopify.com).
            state: Random state parameter for CSRF protection.
            code_challenge: S256 PKCE challenge.
        """
        params = urlencode({
            "client_id": settings.shopify_client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri(),
            "scope": settings.customer_account_scopes,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        })
        return f"{self._base_url(shop)}/oauth/authorize?{params}"

    async def exchange_code(self, shop: str, code: str, code_verifier: str) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            ExchangeFailed: If the provider rejects the code or stays unavailable
                after all retries.
        """
        data = await self._token_request(shop, {
            "grant_type": "authorization_code",
            "client_id": settings.shopify_client_id,
            "code": code,
            "redirect_uri": redirect_uri(),
            "code_verifier": code_verifier,
        })
        return TokenResponse.from_json(data)

    async def refresh(self, shop: str, refresh_token: str) -> TokenResponse:
        """Obtain a new access token with a refresh token."""
        data = await self._token_request(shop, {
            "grant_type": "refresh_token",
            "client_id": settings.shopify_client_id,
            "refresh_token": refresh_token,
        })
        return TokenResponse.from_json(data)

    async def fetch_profile(self, shop: str, access_token: str) -> CustomerProfile:
        """Look up the signed-in customer's id and email."""
        url = f"{self._base_url(shop)}/customer/api/{settings.customer_account_api_version}/graphql"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    headers={"Authorization": access_token, "Content-Type": "application/json"},
                    json={"query": _PROFILE_QUERY},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            raise ExchangeFailed("Customer profile lookup failed") from e

        customer = (payload.get("data") or {}).get("customer")
        if payload.get("errors") or not customer:
            raise ExchangeFailed("Customer profile lookup returned errors")

        email = (customer.get("emailAddress") or {}).get("emailAddress")
        if not email:
            raise ExchangeFailed("Customer profile has no email address")

        return CustomerProfile(
            customer_id=str(customer["id"]),
            email=email,
            display_name=customer.get("displayName"),
        )

    async def _token_request(self, shop: str, form: dict[str, str]) -> dict[str, Any]:
        url = f"{self._base_url(shop)}/oauth/token"
        if settings.shopify_client_secret:
            form = {**form, "client_secret": settings.shopify_client_secret}

        delay = self.retry_delay
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        url, data=form, headers={"Accept": "application/json"}
                    )
            except httpx.TransportError as e:
                last_error = e
            else:
                if response.is_success:
                    data: dict[str, Any] = response.json()
                    return data
                if response.status_code < 500:
                    logger.warning(
                        "Token request rejected: shop=%s grant=%s status=%s",
                        shop,
                        form["grant_type"],
                        response.status_code,
                    )
                    raise ExchangeFailed()
                last_error = ExchangeFailed(f"Identity provider returned {response.status_code}")

            if attempt < self.max_attempts:
                logger.warning(
                    "Token request failed (attempt %d/%d), retrying in %s seconds",
                    attempt,
                    self.max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

        logger.error("Token request failed after %d attempts: shop=%s", self.max_attempts, shop)
        raise ExchangeFailed("Identity provider unavailable") from last_error
