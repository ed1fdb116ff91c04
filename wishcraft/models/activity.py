"""Append-only activity log for registry collaboration."""

import enum
import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wishcraft.models.base import Base, JSONType

if TYPE_CHECKING:
    from wishcraft.models.registry import Registry


class ActivityAction(str, enum.Enum):
    COLLABORATION_ENABLED = "collaboration_enabled"
    COLLABORATION_DISABLED = "collaboration_disabled"
    SETTINGS_UPDATED = "settings_updated"
    COLLABORATOR_INVITED = "collaborator_invited"
    COLLABORATOR_JOINED = "collaborator_joined"
    COLLABORATOR_DECLINED = "collaborator_declined"
    COLLABORATOR_UPDATED = "collaborator_updated"
    COLLABORATOR_REMOVED = "collaborator_removed"
    INVITATIONS_EXPIRED = "invitations_expired"


class RegistryActivity(Base):
    """One audit entry. Rows are only ever updated to redact a customer."""

    __tablename__ = "registry_activities"

    registry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("registries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    actor_email_encrypted: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    actor_email_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Stored as plain string so retired actions stay readable
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        default=dict,
        nullable=False,
    )
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    registry: Mapped["Registry"] = relationship("Registry", back_populates="activities")

    def __repr__(self) -> str:
        return f"<RegistryActivity {self.action} registry={self.registry_id}>"
