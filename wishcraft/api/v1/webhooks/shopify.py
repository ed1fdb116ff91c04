"""Shopify webhook handlers: app lifecycle and privacy compliance."""

import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from wishcraft.core.config import settings
from wishcraft.core.deps import DBSession
from wishcraft.core.logging_config import shop_var
from wishcraft.integrations.shopify.webhooks import HMAC_HEADER, SHOP_HEADER, verify_webhook
from wishcraft.services.shop_service import ShopService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _verify_and_parse(request: Request) -> tuple[str, dict[str, Any]]:
    """Read body, verify HMAC against the raw bytes, then parse JSON."""
    body = await request.body()
    verify_webhook(body, request.headers.get(HMAC_HEADER), settings.webhook_secret)

    shop = request.headers.get(SHOP_HEADER, "")
    shop_var.set(shop)
    try:
        data = json.loads(body) if body else {}
    except json.JSONDecodeError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")
    return shop, data


@router.post("/app-uninstalled")
async def app_uninstalled(request: Request, db: DBSession) -> dict[str, str]:
    """Mark the shop uninstalled; every customer session of the shop stops working."""
    shop, _ = await _verify_and_parse(request)
    if not await ShopService(db).mark_uninstalled(shop):
        return {"status": "ignored"}
    return {"status": "accepted"}


@router.post("/customers-data-request")
async def customers_data_request(request: Request) -> dict[str, str]:
    """Acknowledge a data request; the shop owner receives data out of band."""
    shop, data = await _verify_and_parse(request)
    customer = data.get("customer") or {}
    logger.info(
        "Customer data request received: shop=%s customer=%s",
        shop,
        customer.get("id"),
    )
    return {"status": "accepted"}


@router.post("/customers-redact")
async def customers_redact(request: Request, db: DBSession) -> dict[str, str]:
    shop, data = await _verify_and_parse(request)
    email = (data.get("customer") or {}).get("email")
    if not email:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing customer email")

    await ShopService(db).redact_customer(shop, email)
    return {"status": "accepted"}


@router.post("/shop-redact")
async def shop_redact(request: Request, db: DBSession) -> dict[str, str]:
    shop, _ = await _verify_and_parse(request)
    if not await ShopService(db).redact_shop(shop):
        return {"status": "ignored"}
    return {"status": "accepted"}
