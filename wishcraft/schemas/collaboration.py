"""Collaboration Pydantic schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import EmailStr, Field, ValidationError

from wishcraft.core.exceptions import InvalidCollaborationSettings
from wishcraft.models.collaborator import (
    CollaboratorRole,
    CollaboratorStatus,
    PermissionLevel,
)
from wishcraft.schemas.common import BaseSchema

PERMISSION_DISPLAY_NAMES = {
    PermissionLevel.NONE: "No Access",
    PermissionLevel.READ_ONLY: "View Only",
    PermissionLevel.READ_WRITE: "Edit Registry",
    PermissionLevel.ADMIN: "Full Access",
}

ROLE_DISPLAY_NAMES = {
    CollaboratorRole.OWNER: "Owner",
    CollaboratorRole.COLLABORATOR: "Collaborator",
    CollaboratorRole.VIEWER: "Viewer",
}

MAX_COLLABORATORS_LIMIT = 50
MAX_EXPIRE_DAYS = 30

_SETTINGS_ERRORS = {
    "max_collaborators": f"Max collaborators must be between 1 and {MAX_COLLABORATORS_LIMIT}",
    "expire_invites_after_days": f"Expire invites after days must be between 1 and {MAX_EXPIRE_DAYS}",
}


class CollaborationSettings(BaseSchema):
    """Per-registry collaboration settings, stored as JSON on the registry."""

    max_collaborators: int = Field(default=10, ge=1, le=MAX_COLLABORATORS_LIMIT)
    require_approval: bool = True
    expire_invites_after_days: int = Field(default=7, ge=1, le=MAX_EXPIRE_DAYS)


def validate_collaboration_settings(data: dict[str, Any] | None) -> CollaborationSettings:
    """Validate raw settings, reporting every invalid field at once.

    Raises:
        InvalidCollaborationSettings: With one message per invalid field.
    """
    try:
        return CollaborationSettings.model_validate(data or {})
    except ValidationError as e:
        errors = []
        for error in e.errors():
            field = str(error["loc"][0]) if error["loc"] else "settings"
            errors.append(_SETTINGS_ERRORS.get(field, f"{field}: {error['msg']}"))
        raise InvalidCollaborationSettings(errors) from e


# =============================================================================
# Requests
# =============================================================================


class EnableCollaborationRequest(BaseSchema):
    settings: dict[str, Any] = Field(default_factory=dict)


class InviteCollaboratorRequest(BaseSchema):
    email: EmailStr
    role: CollaboratorRole = CollaboratorRole.COLLABORATOR
    permission: PermissionLevel = PermissionLevel.READ_ONLY
    message: str | None = Field(default=None, max_length=2000)


class UpdateCollaboratorRequest(BaseSchema):
    role: CollaboratorRole | None = None
    permission: PermissionLevel | None = None


class InvitationResponseRequest(BaseSchema):
    """Accept or decline an invitation."""

    token: str
    accept: bool = True
    name: str | None = Field(default=None, max_length=255)


# =============================================================================
# Responses
# =============================================================================


class CollaborationStatusResponse(BaseSchema):
    registry_id: UUID
    collaboration_enabled: bool
    settings: CollaborationSettings | None = None


class CollaboratorResponse(BaseSchema):
    id: UUID
    registry_id: UUID
    email: str
    name: str | None
    role: CollaboratorRole
    role_display: str
    permission: PermissionLevel
    permission_display: str
    status: CollaboratorStatus
    invited_by: str | None
    invited_at: datetime
    expires_at: datetime
    accepted_at: datetime | None


class InviteCollaboratorResponse(BaseSchema):
    collaborator: CollaboratorResponse
    invitation_link: str


class InvitationDetails(BaseSchema):
    """What an invitee sees before accepting."""

    collaborator_id: UUID
    registry_id: UUID
    registry_title: str
    invited_by: str | None
    role: CollaboratorRole
    permission: PermissionLevel
    permission_display: str
    status: CollaboratorStatus
    message: str | None
    expires_at: datetime


class ActivityResponse(BaseSchema):
    id: UUID
    actor_email: str | None
    actor_name: str | None
    action: str
    description: str
    metadata: dict[str, Any]
    is_system: bool
    created_at: datetime
