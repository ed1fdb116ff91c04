"""Tests for CollaborationService.

Each service call runs in its own database session (like a request), so a
failed call's rollback never touches the objects the test set up.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wishcraft.core.auth import Actor, ActorKind
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
    PermissionDenied,
    RegistryNotFound,
)
from wishcraft.models.activity import ActivityAction, RegistryActivity
from wishcraft.models.collaborator import (
    CollaboratorRole,
    CollaboratorStatus,
    PermissionLevel,
    RegistryCollaborator,
)
from wishcraft.models.registry import Registry
from wishcraft.models.session import CustomerSession
from wishcraft.models.shop import Shop
from wishcraft.services.collaboration_service import (
    CollaborationService,
    invitation_token,
)
from wishcraft.services.notification_service import NotificationType
from wishcraft.services.permission_service import PermissionResolver
from tests.conftest import GUEST_EMAIL, OWNER_EMAIL, RecordingNotifier, make_actor


@pytest_asyncio.fixture
async def service(
    session_maker: async_sessionmaker[AsyncSession],
    notifier: RecordingNotifier,
) -> AsyncGenerator[CollaborationService, None]:
    async with session_maker() as db:
        yield CollaborationService(db, notifier)


@pytest.fixture
def owner(shop: Shop) -> Actor:
    return make_actor(shop.id, OWNER_EMAIL)


@pytest.fixture
def guest(shop: Shop) -> Actor:
    return make_actor(shop.id, GUEST_EMAIL)


async def _activities(
    session_maker: async_sessionmaker[AsyncSession], registry_id: Any
) -> list[RegistryActivity]:
    async with session_maker() as db:
        result = await db.execute(
            select(RegistryActivity)
            .where(RegistryActivity.registry_id == registry_id)
            .order_by(RegistryActivity.created_at)
        )
        return list(result.scalars().all())


async def _collaborator(
    session_maker: async_sessionmaker[AsyncSession], collaborator_id: Any
) -> RegistryCollaborator | None:
    async with session_maker() as db:
        return await db.get(RegistryCollaborator, collaborator_id)


# ---------------------------------------------------------------------------
# Enable / disable
# ---------------------------------------------------------------------------


class TestEnableCollaboration:
    @pytest.mark.asyncio
    async def test_enable_with_defaults(
        self,
        service: CollaborationService,
        registry_factory: Callable[..., Any],
        shop: Shop,
        owner: Actor,
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        registry = await registry_factory(
            shop_id=shop.id, collaboration_enabled=False, collaboration_settings={}
        )

        settings = await service.enable_collaboration(registry.id, {}, owner)

        assert settings.max_collaborators == 10
        assert settings.expire_invites_after_days == 7
        activities = await _activities(session_maker, registry.id)
        assert [a.action for a in activities] == [ActivityAction.COLLABORATION_ENABLED.value]

    @pytest.mark.asyncio
    async def test_update_when_enabled_records_settings_change(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        await service.enable_collaboration(registry.id, {"max_collaborators": 3}, owner)

        async with session_maker() as db:
            refreshed = await db.get(Registry, registry.id)
            assert refreshed is not None
            assert refreshed.collaboration_settings["max_collaborators"] == 3
        activities = await _activities(session_maker, registry.id)
        assert activities[-1].action == ActivityAction.SETTINGS_UPDATED.value

    @pytest.mark.asyncio
    async def test_invalid_settings_report_every_field(
        self, service: CollaborationService, registry: Registry, owner: Actor
    ) -> None:
        with pytest.raises(InvalidCollaborationSettings) as exc_info:
            await service.enable_collaboration(
                registry.id,
                {"max_collaborators": 0, "expire_invites_after_days": 31},
                owner,
            )

        assert exc_info.value.errors == [
            "Max collaborators must be between 1 and 50",
            "Expire invites after days must be between 1 and 30",
        ]

    @pytest.mark.asyncio
    async def test_requires_admin(
        self,
        service: CollaborationService,
        registry: Registry,
        guest: Actor,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        await collaborator_factory(registry_id=registry.id, permission=PermissionLevel.READ_WRITE)

        with pytest.raises(PermissionDenied):
            await service.enable_collaboration(registry.id, {}, guest)


class TestDisableCollaboration:
    @pytest.mark.asyncio
    async def test_removes_all_collaborators(
        self,
        service: CollaborationService,
        shop: Shop,
        registry: Registry,
        owner: Actor,
        collaborator_factory: Callable[..., Any],
        customer_session_factory: Callable[..., Any],
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        await collaborator_factory(registry_id=registry.id, email=GUEST_EMAIL)
        await collaborator_factory(
            registry_id=registry.id,
            email="pending@example.com",
            status=CollaboratorStatus.PENDING,
        )
        guest_session = await customer_session_factory(shop_id=shop.id, email=GUEST_EMAIL)

        removed = await service.disable_collaboration(registry.id, owner)

        assert removed == 2
        async with session_maker() as db:
            refreshed = await db.get(Registry, registry.id)
            assert refreshed is not None
            assert refreshed.collaboration_enabled is False
            assert refreshed.collaboration_settings == {}
            remaining = (
                await db.execute(
                    select(RegistryCollaborator).where(
                        RegistryCollaborator.registry_id == registry.id
                    )
                )
            ).scalars().all()
            assert remaining == []
            session = await db.get(CustomerSession, guest_session.id)
            assert session is not None and session.rotation_required is True

    @pytest.mark.asyncio
    async def test_requires_admin(
        self, service: CollaborationService, registry: Registry, guest: Actor
    ) -> None:
        with pytest.raises(PermissionDenied):
            await service.disable_collaboration(registry.id, guest)


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


class TestInviteCollaborator:
    @pytest.mark.asyncio
    async def test_creates_pending_invitation(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        notifier: RecordingNotifier,
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        collaborator = await service.invite_collaborator(
            registry.id,
            GUEST_EMAIL,
            CollaboratorRole.COLLABORATOR,
            PermissionLevel.READ_WRITE,
            owner,
            message="Help me pick!",
        )

        assert collaborator.status is CollaboratorStatus.PENDING
        assert collaborator.invited_by == OWNER_EMAIL
        assert GUEST_EMAIL not in collaborator.email_encrypted
        expected_expiry = datetime.now(UTC) + timedelta(days=7)
        assert abs((collaborator.expires_at - expected_expiry).total_seconds()) < 60

        activities = await _activities(session_maker, registry.id)
        assert [a.action for a in activities] == [ActivityAction.COLLABORATOR_INVITED.value]

        assert len(notifier.events) == 1
        event = notifier.events[0]
        assert event.type is NotificationType.COLLABORATION_INVITE
        assert event.recipient_email == GUEST_EMAIL
        assert event.payload["permission_display"] == "Edit Registry"
        assert invitation_token(collaborator.id) in event.payload["invitation_link"]

    @pytest.mark.asyncio
    async def test_invitee_has_no_access_until_accepted(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        db_session: AsyncSession,
    ) -> None:
        await service.invite_collaborator(
            registry.id, GUEST_EMAIL, CollaboratorRole.COLLABORATOR, PermissionLevel.ADMIN, owner
        )

        level = await PermissionResolver(db_session).resolve(GUEST_EMAIL, registry)
        assert level is PermissionLevel.NONE

    @pytest.mark.asyncio
    async def test_unknown_registry(self, service: CollaborationService, owner: Actor) -> None:
        with pytest.raises(RegistryNotFound):
            await service.invite_collaborator(
                uuid.uuid4(),
                GUEST_EMAIL,
                CollaboratorRole.COLLABORATOR,
                PermissionLevel.READ_ONLY,
                owner,
            )

    @pytest.mark.asyncio
    async def test_requires_admin(
        self,
        service: CollaborationService,
        registry: Registry,
        guest: Actor,
        collaborator_factory: Callable[..., Any],
        notifier: RecordingNotifier,
    ) -> None:
        await collaborator_factory(registry_id=registry.id, permission=PermissionLevel.READ_WRITE)

        with pytest.raises(PermissionDenied):
            await service.invite_collaborator(
                registry.id,
                "friend@example.com",
                CollaboratorRole.COLLABORATOR,
                PermissionLevel.READ_ONLY,
                guest,
            )
        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_registry_of_other_shop_is_not_found(
        self, service: CollaborationService, registry: Registry, other_shop: Shop
    ) -> None:
        with pytest.raises(RegistryNotFound):
            await service.invite_collaborator(
                registry.id,
                GUEST_EMAIL,
                CollaboratorRole.COLLABORATOR,
                PermissionLevel.READ_ONLY,
                make_actor(other_shop.id, OWNER_EMAIL, ActorKind.OPERATOR),
            )

    @pytest.mark.asyncio
    async def test_permission_checked_before_enabled(
        self,
        service: CollaborationService,
        registry_factory: Callable[..., Any],
        shop: Shop,
        guest: Actor,
    ) -> None:
        registry = await registry_factory(shop_id=shop.id, collaboration_enabled=False)

        with pytest.raises(PermissionDenied):
            await service.invite_collaborator(
                registry.id,
                "friend@example.com",
                CollaboratorRole.COLLABORATOR,
                PermissionLevel.READ_ONLY,
                guest,
            )

    @pytest.mark.asyncio
    async def test_collaboration_disabled(
        self,
        service: CollaborationService,
        registry_factory: Callable[..., Any],
        shop: Shop,
        owner: Actor,
    ) -> None:
        registry = await registry_factory(shop_id=shop.id, collaboration_enabled=False)

        with pytest.raises(CollaborationDisabled):
            await service.invite_collaborator(
                registry.id,
                GUEST_EMAIL,
                CollaboratorRole.COLLABORATOR,
                PermissionLevel.READ_ONLY,
                owner,
            )

    @pytest.mark.asyncio
    async def test_duplicate_invitation(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        await collaborator_factory(registry_id=registry.id, status=CollaboratorStatus.PENDING)

        with pytest.raises(AlreadyCollaborator):
            await service.invite_collaborator(
                registry.id,
                "GUEST@example.com",
                CollaboratorRole.COLLABORATOR,
                PermissionLevel.READ_ONLY,
                owner,
            )

    @pytest.mark.asyncio
    async def test_owner_cannot_be_invited(
        self, service: CollaborationService, registry: Registry, owner: Actor
    ) -> None:
        with pytest.raises(AlreadyCollaborator):
            await service.invite_collaborator(
                registry.id,
                OWNER_EMAIL,
                CollaboratorRole.COLLABORATOR,
                PermissionLevel.READ_ONLY,
                owner,
            )

    @pytest.mark.asyncio
    async def test_reinvite_after_decline(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        await collaborator_factory(registry_id=registry.id, status=CollaboratorStatus.DECLINED)

        collaborator = await service.invite_collaborator(
            registry.id,
            GUEST_EMAIL,
            CollaboratorRole.COLLABORATOR,
            PermissionLevel.READ_ONLY,
            owner,
        )
        assert collaborator.status is CollaboratorStatus.PENDING

    @pytest.mark.asyncio
    async def test_owner_role_rejected(
        self, service: CollaborationService, registry: Registry, owner: Actor
    ) -> None:
        with pytest.raises(InvalidInvitation):
            await service.invite_collaborator(
                registry.id, GUEST_EMAIL, CollaboratorRole.OWNER, PermissionLevel.ADMIN, owner
            )

    @pytest.mark.asyncio
    async def test_no_access_permission_rejected(
        self, service: CollaborationService, registry: Registry, owner: Actor
    ) -> None:
        with pytest.raises(InvalidInvitation):
            await service.invite_collaborator(
                registry.id,
                GUEST_EMAIL,
                CollaboratorRole.VIEWER,
                PermissionLevel.NONE,
                owner,
            )


class TestCollaboratorLimit:
    @pytest.mark.asyncio
    async def test_limit_reached(
        self,
        service: CollaborationService,
        registry_factory: Callable[..., Any],
        collaborator_factory: Callable[..., Any],
        shop: Shop,
        owner: Actor,
    ) -> None:
        registry = await registry_factory(
            shop_id=shop.id, collaboration_settings={"max_collaborators": 2}
        )
        await collaborator_factory(registry_id=registry.id, email="a@example.com")
        await collaborator_factory(
            registry_id=registry.id, email="b@example.com", status=CollaboratorStatus.PENDING
        )

        with pytest.raises(LimitReached) as exc_info:
            await service.invite_collaborator(
                registry.id,
                GUEST_EMAIL,
                CollaboratorRole.COLLABORATOR,
                PermissionLevel.READ_ONLY,
                owner,
            )
        assert exc_info.value.message == "Maximum collaborators limit reached (2)"

    @pytest.mark.asyncio
    async def test_expired_and_revoked_do_not_count(
        self,
        service: CollaborationService,
        registry_factory: Callable[..., Any],
        collaborator_factory: Callable[..., Any],
        shop: Shop,
        owner: Actor,
    ) -> None:
        registry = await registry_factory(
            shop_id=shop.id, collaboration_settings={"max_collaborators": 1}
        )
        await collaborator_factory(
            registry_id=registry.id,
            email="late@example.com",
            status=CollaboratorStatus.PENDING,
            expires_at=datetime.now(UTC) - timedelta(days=1),
        )
        await collaborator_factory(
            registry_id=registry.id, email="gone@example.com", status=CollaboratorStatus.REVOKED
        )

        collaborator = await service.invite_collaborator(
            registry.id,
            GUEST_EMAIL,
            CollaboratorRole.COLLABORATOR,
            PermissionLevel.READ_ONLY,
            owner,
        )
        assert collaborator.status is CollaboratorStatus.PENDING

    @pytest.mark.asyncio
    async def test_limit_cannot_drop_below_current_count(
        self,
        service: CollaborationService,
        registry_factory: Callable[..., Any],
        collaborator_factory: Callable[..., Any],
        shop: Shop,
        owner: Actor,
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        registry = await registry_factory(
            shop_id=shop.id, collaboration_settings={"max_collaborators": 5}
        )
        for email in ("a@example.com", "b@example.com"):
            await collaborator_factory(registry_id=registry.id, email=email)
        await collaborator_factory(
            registry_id=registry.id, email="c@example.com", status=CollaboratorStatus.PENDING
        )

        with pytest.raises(InvalidCollaborationSettings) as exc_info:
            await service.enable_collaboration(registry.id, {"max_collaborators": 2}, owner)

        assert exc_info.value.errors == [
            "Max collaborators cannot be lower than the 3 "
            "current collaborators and pending invitations"
        ]
        async with session_maker() as db:
            refreshed = await db.get(Registry, registry.id)
            assert refreshed is not None
            assert refreshed.collaboration_settings["max_collaborators"] == 5

    @pytest.mark.asyncio
    async def test_limit_can_match_current_count(
        self,
        service: CollaborationService,
        registry_factory: Callable[..., Any],
        collaborator_factory: Callable[..., Any],
        shop: Shop,
        owner: Actor,
    ) -> None:
        registry = await registry_factory(
            shop_id=shop.id, collaboration_settings={"max_collaborators": 5}
        )
        await collaborator_factory(registry_id=registry.id, email="a@example.com")
        await collaborator_factory(
            registry_id=registry.id,
            email="late@example.com",
            status=CollaboratorStatus.PENDING,
            expires_at=datetime.now(UTC) - timedelta(days=1),
        )

        updated = await service.enable_collaboration(
            registry.id, {"max_collaborators": 1}, owner
        )

        assert updated.max_collaborators == 1

    @pytest.mark.asyncio
    async def test_concurrent_invites_never_exceed_limit(
        self,
        registry_factory: Callable[..., Any],
        shop: Shop,
        owner: Actor,
        session_maker: async_sessionmaker[AsyncSession],
        notifier: RecordingNotifier,
    ) -> None:
        registry = await registry_factory(
            shop_id=shop.id, collaboration_settings={"max_collaborators": 2}
        )

        async def _invite(email: str) -> RegistryCollaborator:
            async with session_maker() as db:
                return await CollaborationService(db, notifier).invite_collaborator(
                    registry.id,
                    email,
                    CollaboratorRole.COLLABORATOR,
                    PermissionLevel.READ_ONLY,
                    owner,
                )

        results = await asyncio.gather(
            *(_invite(f"friend{i}@example.com") for i in range(5)),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, RegistryCollaborator)]
        rejected = [r for r in results if isinstance(r, LimitReached)]
        assert len(created) == 2
        assert len(rejected) == 3

        async with session_maker() as db:
            rows = (
                await db.execute(
                    select(RegistryCollaborator).where(
                        RegistryCollaborator.registry_id == registry.id
                    )
                )
            ).scalars().all()
            assert len(rows) == 2


class TestGetInvitation:
    @pytest.mark.asyncio
    async def test_valid_token(
        self,
        service: CollaborationService,
        registry: Registry,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        collaborator = await collaborator_factory(
            registry_id=registry.id, status=CollaboratorStatus.PENDING
        )

        details = await service.get_invitation(collaborator.id, invitation_token(collaborator.id))

        assert details.registry_title == registry.title
        assert details.status is CollaboratorStatus.PENDING

    @pytest.mark.asyncio
    async def test_bad_token(
        self,
        service: CollaborationService,
        registry: Registry,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        collaborator = await collaborator_factory(
            registry_id=registry.id, status=CollaboratorStatus.PENDING
        )

        with pytest.raises(InvitationNotFound):
            await service.get_invitation(collaborator.id, "forged")


# ---------------------------------------------------------------------------
# Accept / decline
# ---------------------------------------------------------------------------


class TestAcceptInvitation:
    @pytest.mark.asyncio
    async def test_accept_grants_permission(
        self,
        service: CollaborationService,
        shop: Shop,
        registry: Registry,
        collaborator_factory: Callable[..., Any],
        notifier: RecordingNotifier,
        db_session: AsyncSession,
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        pending = await collaborator_factory(
            registry_id=registry.id,
            status=CollaboratorStatus.PENDING,
            permission=PermissionLevel.READ_WRITE,
        )

        accepted = await service.accept_invitation(
            pending.id, "Guest@Example.com", "Guest", shop_id=shop.id
        )

        assert accepted.status is CollaboratorStatus.ACTIVE
        assert accepted.accepted_at is not None
        assert accepted.name == "Guest"
        level = await PermissionResolver(db_session).resolve(GUEST_EMAIL, registry)
        assert level is PermissionLevel.READ_WRITE

        activities = await _activities(session_maker, registry.id)
        assert activities[-1].action == ActivityAction.COLLABORATOR_JOINED.value
        assert notifier.events[-1].type is NotificationType.INVITATION_ACCEPTED
        assert notifier.events[-1].recipient_email == OWNER_EMAIL

    @pytest.mark.asyncio
    async def test_email_mismatch(
        self,
        service: CollaborationService,
        registry: Registry,
        collaborator_factory: Callable[..., Any],
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        pending = await collaborator_factory(
            registry_id=registry.id, status=CollaboratorStatus.PENDING
        )

        with pytest.raises(EmailMismatch):
            await service.accept_invitation(pending.id, "intruder@example.com")

        refreshed = await _collaborator(session_maker, pending.id)
        assert refreshed is not None and refreshed.status is CollaboratorStatus.PENDING

    @pytest.mark.asyncio
    async def test_expired_invitation(
        self,
        service: CollaborationService,
        registry: Registry,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        pending = await collaborator_factory(
            registry_id=registry.id,
            status=CollaboratorStatus.PENDING,
            expires_at=datetime.now(UTC) - timedelta(minutes=1),
        )

        with pytest.raises(InvitationExpired):
            await service.accept_invitation(pending.id, GUEST_EMAIL)

    @pytest.mark.asyncio
    async def test_already_active(
        self,
        service: CollaborationService,
        registry: Registry,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        active = await collaborator_factory(registry_id=registry.id)

        with pytest.raises(InvitationNotPending):
            await service.accept_invitation(active.id, GUEST_EMAIL)

    @pytest.mark.asyncio
    async def test_unknown_invitation(self, service: CollaborationService) -> None:
        with pytest.raises(InvitationNotFound):
            await service.accept_invitation(uuid.uuid4(), GUEST_EMAIL)

    @pytest.mark.asyncio
    async def test_other_shop_reported_as_not_found(
        self,
        service: CollaborationService,
        registry: Registry,
        other_shop: Shop,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        pending = await collaborator_factory(
            registry_id=registry.id, status=CollaboratorStatus.PENDING
        )

        with pytest.raises(InvitationNotFound):
            await service.accept_invitation(pending.id, GUEST_EMAIL, shop_id=other_shop.id)


class TestDeclineInvitation:
    @pytest.mark.asyncio
    async def test_decline(
        self,
        service: CollaborationService,
        registry: Registry,
        collaborator_factory: Callable[..., Any],
        db_session: AsyncSession,
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        pending = await collaborator_factory(
            registry_id=registry.id, status=CollaboratorStatus.PENDING
        )

        declined = await service.decline_invitation(pending.id, GUEST_EMAIL)

        assert declined.status is CollaboratorStatus.DECLINED
        assert declined.declined_at is not None
        activities = await _activities(session_maker, registry.id)
        assert activities[-1].action == ActivityAction.COLLABORATOR_DECLINED.value

        with pytest.raises(InvitationNotPending):
            await service.accept_invitation(pending.id, GUEST_EMAIL)


# ---------------------------------------------------------------------------
# Management
# ---------------------------------------------------------------------------


class TestUpdateCollaborator:
    @pytest.mark.asyncio
    async def test_change_permission(
        self,
        service: CollaborationService,
        shop: Shop,
        registry: Registry,
        owner: Actor,
        collaborator_factory: Callable[..., Any],
        customer_session_factory: Callable[..., Any],
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        collaborator = await collaborator_factory(
            registry_id=registry.id, permission=PermissionLevel.READ_ONLY
        )
        guest_session = await customer_session_factory(shop_id=shop.id)

        updated = await service.update_collaborator(
            registry.id, collaborator.id, owner, permission=PermissionLevel.READ_WRITE
        )

        assert updated.permission is PermissionLevel.READ_WRITE
        async with session_maker() as db:
            session = await db.get(CustomerSession, guest_session.id)
            assert session is not None and session.rotation_required is True
        activities = await _activities(session_maker, registry.id)
        assert activities[-1].action == ActivityAction.COLLABORATOR_UPDATED.value
        assert activities[-1].metadata_["changes"]["permission"] == {
            "from": "read_only",
            "to": "read_write",
        }

    @pytest.mark.asyncio
    async def test_revoked_collaborator_not_found(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        revoked = await collaborator_factory(
            registry_id=registry.id, status=CollaboratorStatus.REVOKED
        )

        with pytest.raises(CollaboratorNotFound):
            await service.update_collaborator(
                registry.id, revoked.id, owner, permission=PermissionLevel.ADMIN
            )

    @pytest.mark.asyncio
    async def test_cannot_grant_owner_role(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        collaborator = await collaborator_factory(registry_id=registry.id)

        with pytest.raises(InvalidInvitation):
            await service.update_collaborator(
                registry.id, collaborator.id, owner, role=CollaboratorRole.OWNER
            )


class TestRemoveCollaborator:
    @pytest.mark.asyncio
    async def test_remove_active_collaborator(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        collaborator_factory: Callable[..., Any],
        notifier: RecordingNotifier,
        db_session: AsyncSession,
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        collaborator = await collaborator_factory(
            registry_id=registry.id, permission=PermissionLevel.ADMIN
        )

        await service.remove_collaborator(registry.id, collaborator.id, owner)

        refreshed = await _collaborator(session_maker, collaborator.id)
        assert refreshed is not None
        assert refreshed.status is CollaboratorStatus.REVOKED
        assert refreshed.revoked_at is not None
        level = await PermissionResolver(db_session).resolve(GUEST_EMAIL, registry)
        assert level is PermissionLevel.NONE
        assert notifier.events[-1].type is NotificationType.COLLABORATOR_REMOVED

    @pytest.mark.asyncio
    async def test_cancel_pending_invitation_sends_nothing(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        collaborator_factory: Callable[..., Any],
        notifier: RecordingNotifier,
    ) -> None:
        pending = await collaborator_factory(
            registry_id=registry.id, status=CollaboratorStatus.PENDING
        )

        await service.remove_collaborator(registry.id, pending.id, owner)

        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_collaborator_cannot_remove_others(
        self,
        service: CollaborationService,
        registry: Registry,
        guest: Actor,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        await collaborator_factory(registry_id=registry.id, permission=PermissionLevel.READ_WRITE)
        other = await collaborator_factory(registry_id=registry.id, email="other@example.com")

        with pytest.raises(PermissionDenied):
            await service.remove_collaborator(registry.id, other.id, guest)


class TestListingAndActivity:
    @pytest.mark.asyncio
    async def test_list_requires_read_access(
        self,
        service: CollaborationService,
        registry: Registry,
        shop: Shop,
    ) -> None:
        with pytest.raises(PermissionDenied):
            await service.list_collaborators(registry.id, make_actor(shop.id, "nobody@x.com"))

    @pytest.mark.asyncio
    async def test_list_decrypts_emails(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        await collaborator_factory(registry_id=registry.id)

        collaborators = await service.list_collaborators(registry.id, owner)

        assert [c.email for c in collaborators] == [GUEST_EMAIL]
        assert collaborators[0].permission_display == "Edit Registry"
        assert collaborators[0].role_display == "Collaborator"

    @pytest.mark.asyncio
    async def test_activity_feed_newest_first(
        self,
        service: CollaborationService,
        registry: Registry,
        owner: Actor,
    ) -> None:
        await service.enable_collaboration(registry.id, {"max_collaborators": 5}, owner)
        await service.invite_collaborator(
            registry.id,
            GUEST_EMAIL,
            CollaboratorRole.VIEWER,
            PermissionLevel.READ_ONLY,
            owner,
        )

        feed = await service.get_activity_feed(registry.id, owner)

        assert [e.action for e in feed] == [
            ActivityAction.COLLABORATOR_INVITED.value,
            ActivityAction.SETTINGS_UPDATED.value,
        ]
        assert feed[0].actor_email == OWNER_EMAIL


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


class TestCleanupExpiredInvitations:
    @pytest.mark.asyncio
    async def test_expires_overdue_invitations(
        self,
        service: CollaborationService,
        shop: Shop,
        registry: Registry,
        registry_factory: Callable[..., Any],
        collaborator_factory: Callable[..., Any],
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        past = datetime.now(UTC) - timedelta(hours=1)
        other = await registry_factory(shop_id=shop.id, title="Other")
        overdue_a = await collaborator_factory(
            registry_id=registry.id,
            email="a@example.com",
            status=CollaboratorStatus.PENDING,
            expires_at=past,
        )
        overdue_b = await collaborator_factory(
            registry_id=registry.id,
            email="b@example.com",
            status=CollaboratorStatus.PENDING,
            expires_at=past,
        )
        overdue_c = await collaborator_factory(
            registry_id=other.id, status=CollaboratorStatus.PENDING, expires_at=past
        )
        fresh = await collaborator_factory(
            registry_id=registry.id, email="fresh@example.com", status=CollaboratorStatus.PENDING
        )
        active = await collaborator_factory(
            registry_id=registry.id, email="active@example.com", expires_at=past
        )

        expired = await service.cleanup_expired_invitations()

        assert expired == 3
        for collaborator_id in (overdue_a.id, overdue_b.id, overdue_c.id):
            row = await _collaborator(session_maker, collaborator_id)
            assert row is not None and row.status is CollaboratorStatus.EXPIRED
        fresh_row = await _collaborator(session_maker, fresh.id)
        active_row = await _collaborator(session_maker, active.id)
        assert fresh_row is not None and fresh_row.status is CollaboratorStatus.PENDING
        assert active_row is not None and active_row.status is CollaboratorStatus.ACTIVE

        # One system entry per registry
        for registry_id, count in ((registry.id, 2), (other.id, 1)):
            activities = await _activities(session_maker, registry_id)
            assert len(activities) == 1
            assert activities[0].action == ActivityAction.INVITATIONS_EXPIRED.value
            assert activities[0].is_system is True
            assert len(activities[0].metadata_["collaborator_ids"]) == count

    @pytest.mark.asyncio
    async def test_idempotent(
        self,
        service: CollaborationService,
        registry: Registry,
        collaborator_factory: Callable[..., Any],
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        await collaborator_factory(
            registry_id=registry.id,
            status=CollaboratorStatus.PENDING,
            expires_at=datetime.now(UTC) - timedelta(hours=1),
        )

        assert await service.cleanup_expired_invitations() == 1
        assert await service.cleanup_expired_invitations() == 0
        assert len(await _activities(session_maker, registry.id)) == 1

    @pytest.mark.asyncio
    async def test_expired_invitation_cannot_be_accepted(
        self,
        service: CollaborationService,
        registry: Registry,
        collaborator_factory: Callable[..., Any],
    ) -> None:
        pending = await collaborator_factory(
            registry_id=registry.id,
            status=CollaboratorStatus.PENDING,
            expires_at=datetime.now(UTC) - timedelta(hours=1),
        )
        await service.cleanup_expired_invitations()

        with pytest.raises(InvitationExpired):
            await service.accept_invitation(pending.id, GUEST_EMAIL)


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invite_accept_remove_lifecycle(
    session_maker: async_sessionmaker[AsyncSession],
    notifier: RecordingNotifier,
    registry_factory: Callable[..., Any],
    shop: Shop,
    owner: Actor,
    guest: Actor,
) -> None:
    registry = await registry_factory(
        shop_id=shop.id, collaboration_enabled=False, collaboration_settings={}
    )

    async with session_maker() as db:
        service = CollaborationService(db, notifier)
        await service.enable_collaboration(registry.id, {"max_collaborators": 1}, owner)
        invited = await service.invite_collaborator(
            registry.id,
            GUEST_EMAIL,
            CollaboratorRole.COLLABORATOR,
            PermissionLevel.READ_WRITE,
            owner,
        )

    async with session_maker() as db:
        service = CollaborationService(db, notifier)
        await service.accept_invitation(invited.id, guest.email, shop_id=shop.id)
        feed = await service.get_activity_feed(registry.id, guest)
        assert feed[0].action == ActivityAction.COLLABORATOR_JOINED.value

    async with session_maker() as db:
        service = CollaborationService(db, notifier)
        with pytest.raises(LimitReached):
            await service.invite_collaborator(
                registry.id,
                "second@example.com",
                CollaboratorRole.VIEWER,
                PermissionLevel.READ_ONLY,
                owner,
            )

    async with session_maker() as db:
        service = CollaborationService(db, notifier)
        await service.remove_collaborator(registry.id, invited.id, owner)
        with pytest.raises(PermissionDenied):
            await service.get_activity_feed(registry.id, guest)

    assert [e.type for e in notifier.events] == [
        NotificationType.COLLABORATION_INVITE,
        NotificationType.INVITATION_ACCEPTED,
        NotificationType.COLLABORATOR_REMOVED,
    ]
