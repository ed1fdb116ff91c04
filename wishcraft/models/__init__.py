"""SQLAlchemy models."""

from wishcraft.models.activity import ActivityAction, RegistryActivity
from wishcraft.models.base import Base
from wishcraft.models.collaborator import (
    CollaboratorRole,
    CollaboratorStatus,
    PermissionLevel,
    RegistryCollaborator,
)
from wishcraft.models.registry import Registry
from wishcraft.models.session import CustomerSession
from wishcraft.models.shop import Shop

__all__ = [
    # Base
    "Base",
    # Tenancy
    "Shop",
    "CustomerSession",
    # Registries & collaboration
    "Registry",
    "RegistryCollaborator",
    "CollaboratorRole",
    "CollaboratorStatus",
    "PermissionLevel",
    # Audit
    "RegistryActivity",
    "ActivityAction",
]
