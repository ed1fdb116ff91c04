"""Customer auth Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from wishcraft.schemas.common import BaseSchema


class CurrentActorResponse(BaseSchema):
    kind: str
    email: str
    name: str | None
    shop_id: UUID
    session_expires_at: datetime | None = None


class SessionRefreshResponse(BaseSchema):
    refreshed: bool
    token_expires_at: datetime | None
