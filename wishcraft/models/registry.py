"""Registry model (only the fields access control needs)."""

import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wishcraft.models.base import Base, JSONType

if TYPE_CHECKING:
    from wishcraft.models.activity import RegistryActivity
    from wishcraft.models.collaborator import RegistryCollaborator
    from wishcraft.models.shop import Shop


class Registry(Base):
    """A gift registry owned by one customer of a shop."""

    __tablename__ = "registries"

    shop_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("shops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    # Owner identity (email encrypted at rest, blind index for lookups)
    owner_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_email_encrypted: Mapped[str] = mapped_column(String(1024), nullable=False)
    owner_email_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Collaboration
    collaboration_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    collaboration_settings: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        default=dict,
        nullable=False,
    )

    # Relationships
    shop: Mapped["Shop"] = relationship("Shop", back_populates="registries")
    collaborators: Mapped[list["RegistryCollaborator"]] = relationship(
        "RegistryCollaborator",
        back_populates="registry",
        cascade="all, delete-orphan",
    )
    activities: Mapped[list["RegistryActivity"]] = relationship(
        "RegistryActivity",
        back_populates="registry",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Registry {self.title} collaboration={self.collaboration_enabled}>"
