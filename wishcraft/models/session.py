"""Customer session model."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from wishcraft.models.base import Base, UTCDateTime


class CustomerSession(Base):
    """An authenticated customer session created by a completed OAuth exchange.

    Token material is stored as a single encrypted blob. Only the session
    service reads or writes these rows.
    """

    __tablename__ = "customer_sessions"

    shop_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("shops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email_encrypted: Mapped[str] = mapped_column(String(1024), nullable=False)
    email_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Encrypted {"access_token", "refresh_token"}
    token_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Hash of the OAuth state that produced this session; one session per exchange
    exchange_nonce: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    # Lifecycle
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    rotated_to_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    grace_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    rotation_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<CustomerSession {self.id} customer={self.customer_id}>"
