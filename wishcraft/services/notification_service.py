"""Collaboration notifications: queued after commit, rendered and sent by a worker."""

import enum
import logging
from pathlib import Path
from typing import Any
from uuid import UUID

from jinja2 import Environment, FileSystemLoader
from pydantic import Field

from wishcraft.schemas.common import BaseSchema
from wishcraft.services.email_service import EmailService

logger = logging.getLogger(__name__)

# Jinja2 template environment
TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"
_jinja_env = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=True)


class NotificationType(str, enum.Enum):
    COLLABORATION_INVITE = "collaboration_invite"
    INVITATION_ACCEPTED = "invitation_accepted"
    COLLABORATOR_REMOVED = "collaborator_removed"


_TEMPLATES = {
    NotificationType.COLLABORATION_INVITE: (
        "collaboration_invite.html",
        "You're invited to collaborate on {registry_title}",
    ),
    NotificationType.INVITATION_ACCEPTED: (
        "invitation_accepted.html",
        "{collaborator_name} joined {registry_title}",
    ),
    NotificationType.COLLABORATOR_REMOVED: (
        "collaborator_removed.html",
        "Your access to {registry_title} has ended",
    ),
}


class NotificationEvent(BaseSchema):
    type: NotificationType
    recipient_email: str
    registry_id: UUID
    collaborator_id: UUID
    payload: dict[str, Any] = Field(default_factory=dict)


def render_notification(event: NotificationEvent) -> tuple[str, str]:
    """Return ``(subject, html)`` for an event."""
    template_name, subject_format = _TEMPLATES[event.type]
    context = {"registry_title": "a registry", "collaborator_name": "A collaborator", **event.payload}
    subject = subject_format.format(**context)
    html = _jinja_env.get_template(template_name).render(subject=subject, **context)
    return subject, html


class NotificationDispatcher:
    """Hands events to the worker queue without blocking the caller."""

    def dispatch(self, event: NotificationEvent) -> None:
        """Enqueue delivery. Only called after the triggering change is committed.

        An enqueue failure is logged and does not undo the committed change.
        """
        from wishcraft.workers.tasks.collaboration import deliver_notification

        try:
            deliver_notification.delay(event.model_dump(mode="json"))
        except Exception:
            logger.exception(
                "Failed to enqueue %s notification: collaborator=%s",
                event.type.value,
                event.collaborator_id,
            )


async def deliver(event: NotificationEvent, email_service: EmailService | None = None) -> str | None:
    """Render and send one notification. Returns the provider's email id."""
    subject, html = render_notification(event)
    service = email_service or EmailService()
    return await service.send_email(
        to_email=event.recipient_email,
        subject=subject,
        html_content=html,
        tags=[
            {"name": "type", "value": event.type.value},
            {"name": "registry_id", "value": str(event.registry_id)},
        ],
    )
