"""Shop model: the tenant boundary."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wishcraft.models.base import Base, UTCDateTime

if TYPE_CHECKING:
    from wishcraft.models.registry import Registry


class Shop(Base):
    """A Shopify shop that installed the app.

    Every registry, session and collaborator is scoped to exactly one shop.
    """

    __tablename__ = "shops"

    domain: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Installation status
    is_installed: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    installed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    uninstalled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    registries: Mapped[list["Registry"]] = relationship(
        "Registry",
        back_populates="shop",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Shop {self.domain} installed={self.is_installed}>"
