"""Resolve an actor's effective permission on a registry."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wishcraft.core.auth import Actor
from wishcraft.core.crypto import constant_time_equals, email_index
from wishcraft.core.exceptions import PermissionDenied
from wishcraft.models.collaborator import (
    CollaboratorStatus,
    PermissionLevel,
    RegistryCollaborator,
)
from wishcraft.models.registry import Registry

logger = logging.getLogger(__name__)


class PermissionResolver:
    """Maps (actor, registry) to a PermissionLevel.

    Only the stored ``permission`` of an ACTIVE collaborator grants access;
    the descriptive ``role`` is never consulted.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def resolve(self, actor_email: str, registry: Registry) -> PermissionLevel:
        email_hash = email_index(actor_email)
        if constant_time_equals(email_hash, registry.owner_email_hash):
            return PermissionLevel.ADMIN

        result = await self.db.execute(
            select(RegistryCollaborator.permission).where(
                RegistryCollaborator.registry_id == registry.id,
                RegistryCollaborator.email_hash == email_hash,
                RegistryCollaborator.status == CollaboratorStatus.ACTIVE,
            )
        )
        permission = result.scalars().first()
        return permission if permission is not None else PermissionLevel.NONE

    async def has_permission(
        self,
        actor_email: str,
        registry: Registry,
        required: PermissionLevel,
    ) -> bool:
        return await self.resolve(actor_email, registry) >= required

    async def resolve_actor(self, actor: Actor, registry: Registry) -> PermissionLevel:
        """Like :meth:`resolve`, but aware of shop scoping and operators."""
        if actor.shop_id != registry.shop_id:
            return PermissionLevel.NONE
        if actor.is_operator:
            return PermissionLevel.ADMIN
        return await self.resolve(actor.email, registry)

    async def require(
        self,
        actor: Actor,
        registry: Registry,
        required: PermissionLevel,
    ) -> PermissionLevel:
        """Return the actor's level, or raise PermissionDenied if it is below ``required``."""
        level = await self.resolve_actor(actor, registry)
        if level < required:
            logger.warning(
                "Permission denied: registry=%s actor_kind=%s level=%s required=%s",
                registry.id,
                actor.kind.value,
                level.value,
                required.value,
            )
            raise PermissionDenied()
        return level
