"""Email delivery service using Resend API."""

import logging
from typing import Any

import httpx

from wishcraft.core.config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailService:
    """Sends transactional emails via the Resend API."""

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        from_name: str = "Wishcraft",
        tags: list[dict[str, str]] | None = None,
    ) -> str | None:
        """Send a transactional email.

        Returns the Resend email ID on success, None on failure.
        """
        payload: dict[str, Any] = {
            "from": f"{from_name} <{settings.email_from_address}>",
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        if tags:
            payload["tags"] = tags

        if not settings.resend_api_key:
            logger.warning("Resend API key not configured, email not sent: subject=%s", subject)
            return None

        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {settings.resend_api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError:
            logger.exception("Error sending email: subject=%s", subject)
            return None

        if not response.is_success:
            logger.error(
                "Failed to send email: subject=%s status=%s body=%s",
                subject,
                response.status_code,
                response.text[:500],
            )
            return None

        email_id = response.json().get("id")
        logger.info("Email sent: subject=%s id=%s", subject, email_id)
        return str(email_id) if email_id else None
