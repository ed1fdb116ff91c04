"""Celery tasks for collaboration: notification delivery and invitation expiry."""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any, TypeVar

from wishcraft.core.database import async_session_maker, engine
from wishcraft.services.collaboration_service import CollaborationService
from wishcraft.services.notification_service import NotificationEvent, deliver
from wishcraft.workers.celery_app import BaseTask, celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a fresh event loop, disposing DB connections after.

    asyncpg connections are bound to the loop that created them, so pooled
    connections from a previous task's loop must not be reused.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(engine.dispose())
        loop.close()


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.collaboration.deliver_notification",
    base=BaseTask,
    bind=True,
    # An email may already be accepted by the provider when an error surfaces
    autoretry_for=(),
)
def deliver_notification(self: BaseTask, event: dict[str, Any]) -> dict[str, Any]:  # noqa: ARG001
    """Render and send one collaboration email."""
    parsed = NotificationEvent.model_validate(event)
    email_id = _run_async(deliver(parsed))
    if email_id is None:
        logger.warning(
            "Notification not delivered: type=%s collaborator=%s",
            parsed.type.value,
            parsed.collaborator_id,
        )
        return {"status": "not_sent", "type": parsed.type.value}
    return {"status": "sent", "type": parsed.type.value, "email_id": email_id}


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.collaboration.cleanup_expired_invitations",
    base=BaseTask,
    bind=True,
)
def cleanup_expired_invitations(self: BaseTask) -> dict[str, int]:  # noqa: ARG001
    """Periodic task: expire pending invitations past their deadline."""
    expired = _run_async(_cleanup_expired_invitations_async())
    return {"expired": expired}


async def _cleanup_expired_invitations_async() -> int:
    async with async_session_maker() as db:
        return await CollaborationService(db).cleanup_expired_invitations()
