"""Append-only audit trail of collaboration events."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wishcraft.core.crypto import decrypt_pii, email_index, encrypt_pii
from wishcraft.models.activity import ActivityAction, RegistryActivity


@dataclass(frozen=True)
class ActivityEntry:
    id: uuid.UUID
    registry_id: uuid.UUID
    actor_email: str | None
    actor_name: str | None
    action: str
    description: str
    metadata: dict[str, Any]
    is_system: bool
    created_at: datetime


class ActivityLog:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def track_activity(
        self,
        registry_id: uuid.UUID,
        action: ActivityAction,
        description: str,
        *,
        actor_email: str | None = None,
        actor_name: str | None = None,
        metadata: dict[str, Any] | None = None,
        is_system: bool = False,
    ) -> RegistryActivity:
        """Add an activity to the current transaction and flush it.

        The caller commits, so the entry lands atomically with the change it
        describes. Flush errors propagate.
        """
        activity = RegistryActivity(
            registry_id=registry_id,
            actor_email_encrypted=encrypt_pii(actor_email) if actor_email else None,
            actor_email_hash=email_index(actor_email) if actor_email else None,
            actor_name=actor_name,
            action=action.value,
            description=description,
            metadata_=metadata or {},
            is_system=is_system,
        )
        self.db.add(activity)
        await self.db.flush()
        return activity

    async def list_activities(
        self,
        registry_id: uuid.UUID,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ActivityEntry]:
        """Newest first."""
        result = await self.db.execute(
            select(RegistryActivity)
            .where(RegistryActivity.registry_id == registry_id)
            .order_by(RegistryActivity.created_at.desc(), RegistryActivity.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [
            ActivityEntry(
                id=row.id,
                registry_id=row.registry_id,
                actor_email=decrypt_pii(row.actor_email_encrypted)
                if row.actor_email_encrypted
                else None,
                actor_name=row.actor_name,
                action=row.action,
                description=row.description,
                metadata=row.metadata_,
                is_system=row.is_system,
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]
