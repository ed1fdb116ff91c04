"""Registry collaboration: enable/disable, invitations, collaborator management."""

import asyncio
import logging
import uuid
import weakref
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wishcraft.core.auth import Actor
from wishcraft.core.config import settings
from wishcraft.core.crypto import (
    constant_time_equals,
    decrypt_pii,
    email_index,
    encrypt_pii,
    sign_value,
    verify_signed_value,
)
from wishcraft.core.exceptions import (
    AlreadyCollaborator,
    CollaborationDisabled,
    CollaboratorNotFound,
    EmailMismatch,
    InvalidCollaborationSettings,
    InvalidInvitation,
    InvitationExpired,
    InvitationNotFound,
    InvitationNotPending,
    LimitReached,
    RegistryNotFound,
)
from wishcraft.models.activity import ActivityAction
from wishcraft.models.collaborator import (
    CollaboratorRole,
    CollaboratorStatus,
    PermissionLevel,
    RegistryCollaborator,
)
from wishcraft.models.registry import Registry
from wishcraft.schemas.collaboration import (
    PERMISSION_DISPLAY_NAMES,
    ROLE_DISPLAY_NAMES,
    CollaborationSettings,
    CollaboratorResponse,
    InvitationDetails,
    validate_collaboration_settings,
)
from wishcraft.services.activity_service import ActivityEntry, ActivityLog
from wishcraft.services.notification_service import (
    NotificationDispatcher,
    NotificationEvent,
    NotificationType,
)
from wishcraft.services.permission_service import PermissionResolver
from wishcraft.services.session_service import mark_rotation_required

logger = logging.getLogger(__name__)

INVITATION_TOKEN_CONTEXT = "invitation"

# Serializes count-then-insert per registry within this process; the row lock
# on the registry does the same across processes.
_registry_locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = (
    weakref.WeakValueDictionary()
)


def _registry_lock(registry_id: uuid.UUID) -> asyncio.Lock:
    lock = _registry_locks.get(registry_id)
    if lock is None:
        lock = asyncio.Lock()
        _registry_locks[registry_id] = lock
    return lock


def invitation_token(collaborator_id: uuid.UUID) -> str:
    return sign_value(str(collaborator_id), INVITATION_TOKEN_CONTEXT)


def invitation_link(collaborator_id: uuid.UUID) -> str:
    return (
        f"{settings.app_url}/collaborate/accept/{collaborator_id}"
        f"?token={invitation_token(collaborator_id)}"
    )


def verify_invitation_token(collaborator_id: uuid.UUID, token: str) -> None:
    """Raises InvitationNotFound for a bad token, the same as for a missing invitation."""
    if not verify_signed_value(str(collaborator_id), token, INVITATION_TOKEN_CONTEXT):
        raise InvitationNotFound()


def _occupies_slot(now: datetime) -> Any:
    """Active collaborators and unexpired pending invitations count against the limit."""
    return or_(
        RegistryCollaborator.status == CollaboratorStatus.ACTIVE,
        and_(
            RegistryCollaborator.status == CollaboratorStatus.PENDING,
            RegistryCollaborator.expires_at > now,
        ),
    )


class CollaborationService:
    """Owns collaborator records and the activity entries describing them.

    Every mutation re-checks the caller's permission against current state,
    writes its activity entry in the same transaction, and only then emits
    notifications.
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationDispatcher | None = None,
    ) -> None:
        self.db = db
        self.notifier = notifier or NotificationDispatcher()
        self.permissions = PermissionResolver(db)
        self.activity = ActivityLog(db)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    async def _get_registry(self, registry_id: uuid.UUID, *, for_update: bool = False) -> Registry:
        query = select(Registry).where(Registry.id == registry_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        registry = result.scalar_one_or_none()
        if registry is None:
            raise RegistryNotFound()
        return registry

    async def _get_visible_registry(
        self, registry_id: uuid.UUID, actor: Actor, *, for_update: bool = False
    ) -> Registry:
        """Like :meth:`_get_registry`, but a registry of another shop is not found."""
        registry = await self._get_registry(registry_id, for_update=for_update)
        if registry.shop_id != actor.shop_id:
            raise RegistryNotFound()
        return registry

    async def _get_collaborator(
        self, registry_id: uuid.UUID, collaborator_id: uuid.UUID
    ) -> RegistryCollaborator:
        result = await self.db.execute(
            select(RegistryCollaborator).where(
                RegistryCollaborator.id == collaborator_id,
                RegistryCollaborator.registry_id == registry_id,
                RegistryCollaborator.status.in_(
                    [CollaboratorStatus.PENDING, CollaboratorStatus.ACTIVE]
                ),
            )
        )
        collaborator = result.scalar_one_or_none()
        if collaborator is None:
            raise CollaboratorNotFound()
        return collaborator

    def _notify(self, event: NotificationEvent) -> None:
        self.notifier.dispatch(event)

    # ------------------------------------------------------------------
    # Registry-level collaboration
    # ------------------------------------------------------------------

    async def get_settings(self, registry_id: uuid.UUID, actor: Actor) -> Registry:
        registry = await self._get_visible_registry(registry_id, actor)
        await self.permissions.require(actor, registry, PermissionLevel.READ_ONLY)
        return registry

    async def enable_collaboration(
        self,
        registry_id: uuid.UUID,
        raw_settings: dict[str, Any] | None,
        actor: Actor,
    ) -> CollaborationSettings:
        """Turn collaboration on (or update its settings).

        Raises:
            InvalidCollaborationSettings: Lists every invalid field, or
                a limit below the slots already taken.
        """
        validated = validate_collaboration_settings(raw_settings)
        async with _registry_lock(registry_id):
            try:
                registry = await self._get_visible_registry(registry_id, actor, for_update=True)
                await self.permissions.require(actor, registry, PermissionLevel.ADMIN)

                occupied = await self.db.scalar(
                    select(func.count(RegistryCollaborator.id)).where(
                        RegistryCollaborator.registry_id == registry.id,
                        _occupies_slot(self._now()),
                    )
                ) or 0
                if validated.max_collaborators < occupied:
                    raise InvalidCollaborationSettings(
                        [
                            f"Max collaborators cannot be lower than the {occupied} "
                            "current collaborators and pending invitations"
                        ]
                    )

                was_enabled = registry.collaboration_enabled
                registry.collaboration_enabled = True
                registry.collaboration_settings = validated.model_dump()

                if was_enabled:
                    action = ActivityAction.SETTINGS_UPDATED
                    description = "Updated collaboration settings"
                else:
                    action = ActivityAction.COLLABORATION_ENABLED
                    description = "Enabled collaboration"
                await self.activity.track_activity(
                    registry.id,
                    action,
                    description,
                    actor_email=actor.email,
                    actor_name=actor.name,
                    metadata={"settings": validated.model_dump()},
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info("Collaboration %s: registry=%s", action.value, registry_id)
        return validated

    async def disable_collaboration(self, registry_id: uuid.UUID, actor: Actor) -> int:
        """Turn collaboration off and delete every collaborator record.

        Returns the number of records removed.
        """
        async with _registry_lock(registry_id):
            try:
                registry = await self._get_visible_registry(registry_id, actor, for_update=True)
                await self.permissions.require(actor, registry, PermissionLevel.ADMIN)

                active_hashes = (
                    await self.db.execute(
                        select(RegistryCollaborator.email_hash).where(
                            RegistryCollaborator.registry_id == registry.id,
                            RegistryCollaborator.status == CollaboratorStatus.ACTIVE,
                        )
                    )
                ).scalars().all()

                result = await self.db.execute(
                    delete(RegistryCollaborator).where(
                        RegistryCollaborator.registry_id == registry.id
                    )
                )
                removed = result.rowcount or 0

                registry.collaboration_enabled = False
                registry.collaboration_settings = {}

                for email_hash in set(active_hashes):
                    await mark_rotation_required(self.db, registry.shop_id, email_hash)

                await self.activity.track_activity(
                    registry.id,
                    ActivityAction.COLLABORATION_DISABLED,
                    "Disabled collaboration",
                    actor_email=actor.email,
                    actor_name=actor.name,
                    metadata={"removed_collaborators": removed},
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info("Collaboration disabled: registry=%s removed=%d", registry_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    async def invite_collaborator(
        self,
        registry_id: uuid.UUID,
        email: str,
        role: CollaboratorRole,
        permission: PermissionLevel,
        invited_by: Actor,
        message: str | None = None,
    ) -> RegistryCollaborator:
        """Create a pending invitation and queue the invitation email.

        Raises:
            RegistryNotFound, PermissionDenied, CollaborationDisabled,
            LimitReached, AlreadyCollaborator (checked in that order).
        """
        email = email.strip()
        if role is CollaboratorRole.OWNER:
            raise InvalidInvitation("The owner role cannot be granted by invitation")
        if permission is PermissionLevel.NONE:
            raise InvalidInvitation("An invitation must grant some permission")

        async with _registry_lock(registry_id):
            try:
                registry = await self._get_visible_registry(
                    registry_id, invited_by, for_update=True
                )
                await self.permissions.require(invited_by, registry, PermissionLevel.ADMIN)

                if not registry.collaboration_enabled:
                    raise CollaborationDisabled()

                collab_settings = CollaborationSettings.model_validate(
                    registry.collaboration_settings or {}
                )
                now = self._now()

                count = await self.db.scalar(
                    select(func.count(RegistryCollaborator.id)).where(
                        RegistryCollaborator.registry_id == registry.id,
                        _occupies_slot(now),
                    )
                )
                if (count or 0) >= collab_settings.max_collaborators:
                    raise LimitReached(
                        f"Maximum collaborators limit reached ({collab_settings.max_collaborators})"
                    )

                email_hash = email_index(email)
                if constant_time_equals(email_hash, registry.owner_email_hash):
                    raise AlreadyCollaborator()
                existing = await self.db.scalar(
                    select(RegistryCollaborator.id).where(
                        RegistryCollaborator.registry_id == registry.id,
                        RegistryCollaborator.email_hash == email_hash,
                        _occupies_slot(now),
                    )
                )
                if existing is not None:
                    raise AlreadyCollaborator()

                collaborator = RegistryCollaborator(
                    id=uuid.uuid4(),
                    registry_id=registry.id,
                    email_encrypted=encrypt_pii(email),
                    email_hash=email_hash,
                    role=role,
                    permission=permission,
                    status=CollaboratorStatus.PENDING,
                    message=message,
                    invited_by=invited_by.email,
                    invited_at=now,
                    expires_at=now + timedelta(days=collab_settings.expire_invites_after_days),
                )
                self.db.add(collaborator)

                await self.activity.track_activity(
                    registry.id,
                    ActivityAction.COLLABORATOR_INVITED,
                    f"Invited a collaborator with {PERMISSION_DISPLAY_NAMES[permission]} access",
                    actor_email=invited_by.email,
                    actor_name=invited_by.name,
                    metadata={
                        "collaborator_id": str(collaborator.id),
                        "role": role.value,
                        "permission": permission.value,
                    },
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            "Collaborator invited: registry=%s collaborator=%s", registry.id, collaborator.id
        )
        self._notify(
            NotificationEvent(
                type=NotificationType.COLLABORATION_INVITE,
                recipient_email=email,
                registry_id=registry.id,
                collaborator_id=collaborator.id,
                payload={
                    "registry_title": registry.title,
                    "inviter_name": invited_by.name or invited_by.email,
                    "permission_display": PERMISSION_DISPLAY_NAMES[permission],
                    "message": message,
                    "invitation_link": invitation_link(collaborator.id),
                    "expires_at": collaborator.expires_at.strftime("%B %d, %Y"),
                },
            )
        )
        return collaborator

    async def get_invitation(self, collaborator_id: uuid.UUID, token: str) -> InvitationDetails:
        """Look up an invitation from its signed link."""
        verify_invitation_token(collaborator_id, token)
        collaborator = await self.db.get(RegistryCollaborator, collaborator_id)
        if collaborator is None:
            raise InvitationNotFound()
        registry = await self._get_registry(collaborator.registry_id)
        return InvitationDetails(
            collaborator_id=collaborator.id,
            registry_id=registry.id,
            registry_title=registry.title,
            invited_by=collaborator.invited_by,
            role=collaborator.role,
            permission=collaborator.permission,
            permission_display=PERMISSION_DISPLAY_NAMES[collaborator.permission],
            status=collaborator.status,
            message=collaborator.message,
            expires_at=collaborator.expires_at,
        )

    async def _load_invitation_for(
        self, collaborator_id: uuid.UUID, email: str, shop_id: uuid.UUID | None
    ) -> RegistryCollaborator:
        collaborator = await self.db.get(
            RegistryCollaborator, collaborator_id, with_for_update=True
        )
        if collaborator is None:
            raise InvitationNotFound()
        if shop_id is not None:
            registry_shop = await self.db.scalar(
                select(Registry.shop_id).where(Registry.id == collaborator.registry_id)
            )
            if registry_shop != shop_id:
                raise InvitationNotFound()
        if not constant_time_equals(email_index(email), collaborator.email_hash):
            logger.warning("Invitation email mismatch: collaborator=%s", collaborator_id)
            raise EmailMismatch()

        now = self._now()
        if collaborator.status is CollaboratorStatus.EXPIRED or (
            collaborator.status is CollaboratorStatus.PENDING and now > collaborator.expires_at
        ):
            raise InvitationExpired()
        if collaborator.status is not CollaboratorStatus.PENDING:
            raise InvitationNotPending(f"Invitation already {collaborator.status.value}")
        return collaborator

    async def accept_invitation(
        self,
        collaborator_id: uuid.UUID,
        acceptor_email: str,
        acceptor_name: str | None = None,
        *,
        shop_id: uuid.UUID | None = None,
    ) -> RegistryCollaborator:
        """Accept a pending invitation.

        When ``shop_id`` is given, invitations to registries of other shops
        are reported as not found.

        Raises:
            InvitationNotFound, EmailMismatch, InvitationExpired,
            InvitationNotPending.
        """
        try:
            collaborator = await self._load_invitation_for(
                collaborator_id, acceptor_email, shop_id
            )
            registry = await self._get_registry(collaborator.registry_id)

            collaborator.status = CollaboratorStatus.ACTIVE
            collaborator.accepted_at = self._now()
            if acceptor_name:
                collaborator.name = acceptor_name

            # Identity stays in the actor columns so customer redaction can clear it
            await self.activity.track_activity(
                registry.id,
                ActivityAction.COLLABORATOR_JOINED,
                "Joined as a collaborator",
                actor_email=acceptor_email,
                actor_name=collaborator.name,
                metadata={
                    "collaborator_id": str(collaborator.id),
                    "permission": collaborator.permission.value,
                },
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Invitation accepted: collaborator=%s", collaborator.id)
        self._notify(
            NotificationEvent(
                type=NotificationType.INVITATION_ACCEPTED,
                recipient_email=decrypt_pii(registry.owner_email_encrypted),
                registry_id=registry.id,
                collaborator_id=collaborator.id,
                payload={
                    "registry_title": registry.title,
                    "collaborator_name": display_name,
                    "permission_display": PERMISSION_DISPLAY_NAMES[collaborator.permission],
                },
            )
        )
        return collaborator

    async def decline_invitation(
        self,
        collaborator_id: uuid.UUID,
        email: str,
        *,
        shop_id: uuid.UUID | None = None,
    ) -> RegistryCollaborator:
        try:
            collaborator = await self._load_invitation_for(collaborator_id, email, shop_id)
            collaborator.status = CollaboratorStatus.DECLINED
            collaborator.declined_at = self._now()
            await self.activity.track_activity(
                collaborator.registry_id,
                ActivityAction.COLLABORATOR_DECLINED,
                "An invitation was declined",
                actor_email=email,
                metadata={"collaborator_id": str(collaborator.id)},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Invitation declined: collaborator=%s", collaborator.id)
        return collaborator

    # ------------------------------------------------------------------
    # Collaborator management
    # ------------------------------------------------------------------

    async def update_collaborator(
        self,
        registry_id: uuid.UUID,
        collaborator_id: uuid.UUID,
        updated_by: Actor,
        *,
        role: CollaboratorRole | None = None,
        permission: PermissionLevel | None = None,
    ) -> RegistryCollaborator:
        if role is CollaboratorRole.OWNER:
            raise InvalidInvitation("The owner role cannot be granted")
        if permission is PermissionLevel.NONE:
            raise InvalidInvitation("Remove the collaborator instead of granting no access")

        try:
            registry = await self._get_visible_registry(registry_id, updated_by, for_update=True)
            await self.permissions.require(updated_by, registry, PermissionLevel.ADMIN)
            collaborator = await self._get_collaborator(registry.id, collaborator_id)

            changes: dict[str, dict[str, str]] = {}
            if role is not None and role is not collaborator.role:
                changes["role"] = {"from": collaborator.role.value, "to": role.value}
                collaborator.role = role
            if permission is not None and permission is not collaborator.permission:
                changes["permission"] = {
                    "from": collaborator.permission.value,
                    "to": permission.value,
                }
                collaborator.permission = permission

            if changes:
                await mark_rotation_required(self.db, registry.shop_id, collaborator.email_hash)
                await self.activity.track_activity(
                    registry.id,
                    ActivityAction.COLLABORATOR_UPDATED,
                    "Updated a collaborator's access",
                    actor_email=updated_by.email,
                    actor_name=updated_by.name,
                    metadata={"collaborator_id": str(collaborator.id), "changes": changes},
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return collaborator

    async def remove_collaborator(
        self,
        registry_id: uuid.UUID,
        collaborator_id: uuid.UUID,
        removed_by: Actor,
    ) -> None:
        """Revoke a collaborator. Their sessions rotate on the next request."""
        try:
            registry = await self._get_visible_registry(registry_id, removed_by, for_update=True)
            await self.permissions.require(removed_by, registry, PermissionLevel.ADMIN)
            collaborator = await self._get_collaborator(registry.id, collaborator_id)

            was_active = collaborator.status is CollaboratorStatus.ACTIVE
            collaborator.status = CollaboratorStatus.REVOKED
            collaborator.revoked_at = self._now()
            await mark_rotation_required(self.db, registry.shop_id, collaborator.email_hash)

            await self.activity.track_activity(
                registry.id,
                ActivityAction.COLLABORATOR_REMOVED,
                "Removed a collaborator" if was_active else "Cancelled an invitation",
                actor_email=removed_by.email,
                actor_name=removed_by.name,
                metadata={"collaborator_id": str(collaborator.id)},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Collaborator removed: registry=%s collaborator=%s", registry_id, collaborator_id
        )
        if was_active:
            self._notify(
                NotificationEvent(
                    type=NotificationType.COLLABORATOR_REMOVED,
                    recipient_email=decrypt_pii(collaborator.email_encrypted),
                    registry_id=registry.id,
                    collaborator_id=collaborator.id,
                    payload={"registry_title": registry.title},
                )
            )

    async def list_collaborators(
        self, registry_id: uuid.UUID, actor: Actor
    ) -> list[CollaboratorResponse]:
        registry = await self._get_visible_registry(registry_id, actor)
        await self.permissions.require(actor, registry, PermissionLevel.READ_ONLY)

        result = await self.db.execute(
            select(RegistryCollaborator)
            .where(RegistryCollaborator.registry_id == registry.id)
            .order_by(RegistryCollaborator.invited_at.desc())
        )
        return [self.to_response(c) for c in result.scalars().all()]

    @staticmethod
    def to_response(collaborator: RegistryCollaborator) -> CollaboratorResponse:
        return CollaboratorResponse(
            id=collaborator.id,
            registry_id=collaborator.registry_id,
            email=decrypt_pii(collaborator.email_encrypted),
            name=collaborator.name,
            role=collaborator.role,
            role_display=ROLE_DISPLAY_NAMES[collaborator.role],
            permission=collaborator.permission,
            permission_display=PERMISSION_DISPLAY_NAMES[collaborator.permission],
            status=collaborator.status,
            invited_by=collaborator.invited_by,
            invited_at=collaborator.invited_at,
            expires_at=collaborator.expires_at,
            accepted_at=collaborator.accepted_at,
        )

    async def get_activity_feed(
        self,
        registry_id: uuid.UUID,
        actor: Actor,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ActivityEntry]:
        registry = await self._get_visible_registry(registry_id, actor)
        await self.permissions.require(actor, registry, PermissionLevel.READ_ONLY)
        return await self.activity.list_activities(registry.id, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_expired_invitations(self, now: datetime | None = None) -> int:
        """Mark pending invitations past their expiry as EXPIRED.

        Writes one system activity per affected registry. Running it again
        with nothing left to expire changes nothing.
        """
        now = now or self._now()
        try:
            rows = (
                await self.db.execute(
                    select(RegistryCollaborator.id, RegistryCollaborator.registry_id)
                    .where(
                        RegistryCollaborator.status == CollaboratorStatus.PENDING,
                        RegistryCollaborator.expires_at < now,
                    )
                    .with_for_update()
                )
            ).all()
            if not rows:
                await self.db.rollback()
                return 0

            by_registry: dict[uuid.UUID, list[str]] = defaultdict(list)
            for collaborator_id, registry_id in rows:
                by_registry[registry_id].append(str(collaborator_id))

            await self.db.execute(
                update(RegistryCollaborator)
                .where(
                    RegistryCollaborator.id.in_([row.id for row in rows]),
                    RegistryCollaborator.status == CollaboratorStatus.PENDING,
                )
                .values(status=CollaboratorStatus.EXPIRED, updated_at=now)
            )
            for registry_id, collaborator_ids in by_registry.items():
                await self.activity.track_activity(
                    registry_id,
                    ActivityAction.INVITATIONS_EXPIRED,
                    f"{len(collaborator_ids)} invitation(s) expired",
                    actor_name="System",
                    metadata={"collaborator_ids": collaborator_ids},
                    is_system=True,
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Expired %d invitation(s) across %d registries", len(rows), len(by_registry))
        return len(rows)
