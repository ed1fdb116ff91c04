"""Shopify webhook HMAC verification."""

import base64
import hashlib
import hmac
import logging

from wishcraft.core.crypto import constant_time_equals
from wishcraft.core.exceptions import SignatureInvalid

logger = logging.getLogger(__name__)

HMAC_HEADER = "X-Shopify-Hmac-Sha256"
SHOP_HEADER = "X-Shopify-Shop-Domain"
TOPIC_HEADER = "X-Shopify-Topic"


def compute_signature(data: bytes, secret: str) -> str:
    """Base64-encoded HMAC-SHA256 of ``data``."""
    return base64.b64encode(
        hmac.new(
            secret.encode("utf-8"),
            data,
            hashlib.sha256,
        ).digest()
    ).decode("utf-8")


def verify_webhook(data: bytes, hmac_header: str | None, secret: str) -> None:
    """Verify a Shopify webhook's HMAC-SHA256 signature.

    The signature is always recomputed from ``data`` as received; callers must
    pass the raw request body, never a re-serialized payload.

    Args:
        data: The raw request body bytes.
        hmac_header: The X-Shopify-Hmac-Sha256 header value.
        secret: The shared webhook secret.

    Raises:
        SignatureInvalid: If the header is missing, the secret is not
            configured, or the signature does not match.
    """
    if not hmac_header:
        logger.warning("Webhook rejected: missing %s header", HMAC_HEADER)
        raise SignatureInvalid("Missing webhook signature")
    if not secret:
        logger.error("Webhook rejected: webhook secret is not configured")
        raise SignatureInvalid()

    if not constant_time_equals(compute_signature(data, secret), hmac_header.strip()):
        logger.warning("Webhook rejected: signature mismatch")
        raise SignatureInvalid()
