"""Shop lifecycle and privacy-compliance handling driven by Shopify webhooks."""

import logging
from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wishcraft.core.crypto import email_index, encrypt_pii
from wishcraft.models.activity import RegistryActivity
from wishcraft.models.collaborator import RegistryCollaborator
from wishcraft.models.registry import Registry
from wishcraft.models.session import CustomerSession
from wishcraft.models.shop import Shop
from wishcraft.services.session_service import revoke_shop_sessions

logger = logging.getLogger(__name__)

REDACTED = "REDACTED"


class ShopService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_domain(self, domain: str) -> Shop | None:
        result = await self.db.execute(select(Shop).where(Shop.domain == domain))
        return result.scalar_one_or_none()

    async def mark_uninstalled(self, domain: str) -> bool:
        """Flag the shop uninstalled and revoke all of its customer sessions."""
        shop = await self.get_by_domain(domain)
        if shop is None:
            return False

        shop.is_installed = False
        shop.uninstalled_at = datetime.now(UTC)
        revoked = await revoke_shop_sessions(self.db, shop.id)
        await self.db.commit()

        logger.info("Shop uninstalled: shop=%s sessions_revoked=%d", domain, revoked)
        return True

    async def redact_customer(self, domain: str, email: str) -> int:
        """Remove a customer's personal data from one shop.

        Deletes their sessions and collaborator records, and anonymizes any
        registry they own, the activity entries they authored and the
        invitations they sent. Returns the number of rows touched.
        """
        shop = await self.get_by_domain(domain)
        if shop is None:
            return 0

        email_hash = email_index(email)
        registry_ids = select(Registry.id).where(Registry.shop_id == shop.id)

        sessions = await self.db.execute(
            delete(CustomerSession).where(
                CustomerSession.shop_id == shop.id,
                CustomerSession.email_hash == email_hash,
            )
        )
        collaborators = await self.db.execute(
            delete(RegistryCollaborator).where(
                RegistryCollaborator.registry_id.in_(registry_ids),
                RegistryCollaborator.email_hash == email_hash,
            ).execution_options(synchronize_session=False)
        )

        activities = await self.db.execute(
            update(RegistryActivity)
            .where(
                RegistryActivity.registry_id.in_(registry_ids),
                RegistryActivity.actor_email_hash == email_hash,
            )
            .values(actor_email_encrypted=None, actor_email_hash=None, actor_name=REDACTED)
            .execution_options(synchronize_session=False)
        )
        invitations = await self.db.execute(
            update(RegistryCollaborator)
            .where(
                RegistryCollaborator.registry_id.in_(registry_ids),
                func.lower(RegistryCollaborator.invited_by) == email.strip().lower(),
            )
            .values(invited_by=REDACTED)
            .execution_options(synchronize_session=False)
        )

        owned = (
            await self.db.execute(
                select(Registry).where(
                    Registry.shop_id == shop.id,
                    Registry.owner_email_hash == email_hash,
                )
            )
        ).scalars().all()
        for registry in owned:
            registry.owner_email_encrypted = encrypt_pii(REDACTED)
            # Unique per registry so the redacted owner can never be matched again
            registry.owner_email_hash = email_index(f"{REDACTED}:{registry.id}")
            registry.owner_name = REDACTED
            registry.owner_customer_id = None

        await self.db.commit()

        touched = (
            (sessions.rowcount or 0)
            + (collaborators.rowcount or 0)
            + (activities.rowcount or 0)
            + (invitations.rowcount or 0)
            + len(owned)
        )
        logger.info("Customer redacted: shop=%s rows=%d", domain, touched)
        return touched

    async def redact_shop(self, domain: str) -> bool:
        """Delete every record belonging to a shop."""
        shop = await self.get_by_domain(domain)
        if shop is None:
            return False

        registry_ids = select(Registry.id).where(Registry.shop_id == shop.id)
        await self.db.execute(
            delete(RegistryActivity)
            .where(RegistryActivity.registry_id.in_(registry_ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(RegistryCollaborator)
            .where(RegistryCollaborator.registry_id.in_(registry_ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(delete(Registry).where(Registry.shop_id == shop.id))
        await self.db.execute(delete(CustomerSession).where(CustomerSession.shop_id == shop.id))
        await self.db.execute(delete(Shop).where(Shop.id == shop.id))
        await self.db.commit()

        logger.info("Shop redacted: shop=%s", domain)
        return True

