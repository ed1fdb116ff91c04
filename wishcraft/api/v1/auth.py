"""Customer sign-in via the Shopify Customer Account API (OAuth + PKCE)."""

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from wishcraft.core.config import settings
from wishcraft.core.deps import AuthGuard, CurrentActor, Sessions, set_session_cookie
from wishcraft.core.exceptions import (
    ExpiredExchange,
    StateMismatch,
    StateOrPKCEMismatch,
    Unauthenticated,
)
from wishcraft.core.rate_limit import get_client_ip, limiter
from wishcraft.schemas.auth import CurrentActorResponse, SessionRefreshResponse

router = APIRouter()

CALLBACK_COOKIE_PATH = f"{settings.api_v1_prefix}/auth/customer"


def _safe_return_url(return_url: str | None) -> str | None:
    """Only same-app destinations are allowed, to avoid an open redirect."""
    if not return_url:
        return None
    if return_url.startswith("/") and not return_url.startswith("//"):
        return return_url
    if return_url.startswith(f"{settings.app_url}/") or return_url == settings.app_url:
        return return_url
    return None


@router.get("/customer/login")
@limiter.limit("20/minute")
async def customer_login(
    request: Request,
    sessions: Sessions,
    guard: AuthGuard,
    shop: str = Query(...),
    return_url: str | None = Query(None),
) -> RedirectResponse:
    """Start sign-in: store a pending exchange and redirect to the identity provider."""
    if not shop.endswith(".myshopify.com"):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid shop domain")

    await guard.enforce(f"login:{get_client_ip(request)}")

    auth = await sessions.initiate_auth(shop, _safe_return_url(return_url))
    response = RedirectResponse(auth.auth_url, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        settings.exchange_cookie_name,
        auth.exchange.exchange_id,
        max_age=settings.oauth_exchange_ttl_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path=CALLBACK_COOKIE_PATH,
    )
    return response


@router.get("/customer/callback")
@limiter.limit("20/minute")
async def customer_callback(
    request: Request,
    sessions: Sessions,
    guard: AuthGuard,
    code: str = Query(...),
    state: str = Query(...),
    shop: str = Query(...),
) -> RedirectResponse:
    """Complete sign-in. Every exchange can be completed at most once."""
    identifier = f"callback:{get_client_ip(request)}"
    await guard.enforce(identifier)

    exchange_id = request.cookies.get(settings.exchange_cookie_name)
    try:
        if not exchange_id:
            raise StateMismatch()
        issued = await sessions.complete_auth(exchange_id, shop, code, state)
    except (StateOrPKCEMismatch, ExpiredExchange):
        await guard.record_failure(identifier)
        raise
    await guard.record_success(identifier)

    response = RedirectResponse(
        issued.return_url or settings.app_url, status_code=status.HTTP_302_FOUND
    )
    set_session_cookie(response, issued.cookie)
    response.delete_cookie(settings.exchange_cookie_name, path=CALLBACK_COOKIE_PATH)
    return response


@router.post("/customer/logout")
async def customer_logout(
    actor: CurrentActor,
    sessions: Sessions,
    response: Response,
) -> dict[str, str]:
    if actor.session is not None:
        await sessions.revoke_session(actor.session)
    response.delete_cookie(settings.session_cookie_name, path="/")
    return {"status": "logged_out"}


@router.post("/customer/refresh", response_model=SessionRefreshResponse)
async def customer_refresh(
    actor: CurrentActor,
    sessions: Sessions,
) -> SessionRefreshResponse:
    """Renew the upstream access token behind the current session."""
    if actor.session is None:
        raise Unauthenticated("Only customer sessions can be refreshed")
    session = await sessions.refresh_tokens(actor.session)
    return SessionRefreshResponse(refreshed=True, token_expires_at=session.token_expires_at)


@router.get("/me", response_model=CurrentActorResponse)
async def me(actor: CurrentActor) -> CurrentActorResponse:
    return CurrentActorResponse(
        kind=actor.kind.value,
        email=actor.email,
        name=actor.name,
        shop_id=actor.shop_id,
        session_expires_at=actor.session.expires_at if actor.session else None,
    )
