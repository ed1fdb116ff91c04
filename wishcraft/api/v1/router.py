"""API v1 router combining all route modules."""

from fastapi import APIRouter

from wishcraft.api.v1 import auth, collaborate, collaborators, health
from wishcraft.api.v1.webhooks import shopify as shopify_webhooks

api_router = APIRouter()

# Include health check routes (no prefix)
api_router.include_router(health.router)

# Customer sign-in (OAuth + PKCE) and session management
api_router.include_router(
    auth.router,
    prefix="/auth",
    tags=["auth"],
)

# Registry collaboration (customer session or operator token)
api_router.include_router(
    collaborators.router,
    prefix="/registries",
    tags=["collaboration"],
)

# Invitation links (preview is public, accepting requires a session)
api_router.include_router(
    collaborate.router,
    prefix="/collaborate",
    tags=["collaboration"],
)

# Shopify webhooks (no auth - verified via HMAC)
api_router.include_router(
    shopify_webhooks.router,
    prefix="/webhooks/shopify",
    tags=["webhooks"],
)
