"""HMAC signing helper for simulating Shopify webhooks.

Reads a JSON body from stdin and prints its base64-encoded HMAC-SHA256
signature, computed with the configured webhook secret (SHOPIFY_WEBHOOK_SECRET,
falling back to SHOPIFY_CLIENT_SECRET).

Usage:
    BODY='{"customer":{"id":1,"email":"guest@example.com"}}'
    HMAC=$(echo -n "$BODY" | python -m scripts.sign_webhook)
    curl -X POST http://localhost:8000/api/v1/webhooks/shopify/customers-redact \\
      -H "Content-Type: application/json" \\
      -H "X-Shopify-Hmac-Sha256: $HMAC" \\
      -H "X-Shopify-Shop-Domain: demo.myshopify.com" \\
      -d "$BODY"
"""

import sys

from wishcraft.core.config import settings
from wishcraft.integrations.shopify.webhooks import compute_signature


def main() -> None:
    secret = settings.webhook_secret
    if not secret:
        print("ERROR: SHOPIFY_WEBHOOK_SECRET is not set in .env", file=sys.stderr)
        sys.exit(1)

    body = sys.stdin.buffer.read()
    if not body:
        print("ERROR: No input received on stdin", file=sys.stderr)
        sys.exit(1)

    print(compute_signature(body, secret), end="")


if __name__ == "__main__":
    main()
