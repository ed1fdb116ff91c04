"""Registry collaborator model and its closed enums."""

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wishcraft.models.base import Base, UTCDateTime

if TYPE_CHECKING:
    from wishcraft.models.registry import Registry


class PermissionLevel(str, enum.Enum):
    """Effective permission on a registry, totally ordered.

    ``NONE < READ_ONLY < READ_WRITE < ADMIN``. Comparisons use the rank, not
    the string value.
    """

    NONE = "none"
    READ_ONLY = "read_only"
    READ_WRITE = "read_write"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _PERMISSION_RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PermissionLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, PermissionLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, PermissionLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, PermissionLevel):
            return NotImplemented
        return self.rank >= other.rank

    __hash__ = str.__hash__


_PERMISSION_RANK = {
    PermissionLevel.NONE: 0,
    PermissionLevel.READ_ONLY: 1,
    PermissionLevel.READ_WRITE: 2,
    PermissionLevel.ADMIN: 3,
}


class CollaboratorRole(str, enum.Enum):
    """Descriptive role. Never used for authorization decisions."""

    OWNER = "owner"
    COLLABORATOR = "collaborator"
    VIEWER = "viewer"


class CollaboratorStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DECLINED = "declined"
    EXPIRED = "expired"
    REVOKED = "revoked"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [e.value for e in enum_cls]


class RegistryCollaborator(Base):
    """An invited or active collaborator on a registry.

    Records move through status transitions and are not hard-deleted, except
    when collaboration is disabled for the whole registry.
    """

    __tablename__ = "registry_collaborators"
    __table_args__ = (
        Index("ix_registry_collaborators_registry_status", "registry_id", "status"),
        Index("ix_registry_collaborators_registry_email", "registry_id", "email_hash"),
    )

    registry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("registries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Invitee identity (email encrypted at rest, blind index for lookups)
    email_encrypted: Mapped[str] = mapped_column(String(1024), nullable=False)
    email_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    role: Mapped[CollaboratorRole] = mapped_column(
        Enum(CollaboratorRole, name="collaborator_role", values_callable=_enum_values),
        default=CollaboratorRole.COLLABORATOR,
        nullable=False,
    )
    permission: Mapped[PermissionLevel] = mapped_column(
        Enum(PermissionLevel, name="permission_level", values_callable=_enum_values),
        default=PermissionLevel.READ_ONLY,
        nullable=False,
    )
    status: Mapped[CollaboratorStatus] = mapped_column(
        Enum(CollaboratorStatus, name="collaborator_status", values_callable=_enum_values),
        default=CollaboratorStatus.PENDING,
        nullable=False,
    )

    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    invited_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Lifecycle timestamps
    invited_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    registry: Mapped["Registry"] = relationship("Registry", back_populates="collaborators")

    def __repr__(self) -> str:
        return f"<RegistryCollaborator {self.id} {self.status.value}:{self.permission.value}>"
