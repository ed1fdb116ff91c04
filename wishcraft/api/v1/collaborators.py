"""Registry collaboration management endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from wishcraft.core.deps import Collaboration, CurrentActor
from wishcraft.schemas.collaboration import (
    ActivityResponse,
    CollaborationSettings,
    CollaborationStatusResponse,
    CollaboratorResponse,
    EnableCollaborationRequest,
    InviteCollaboratorRequest,
    InviteCollaboratorResponse,
    UpdateCollaboratorRequest,
)
from wishcraft.services.collaboration_service import invitation_link

router = APIRouter()


@router.get("/{registry_id}/collaboration", response_model=CollaborationStatusResponse)
async def get_collaboration(
    registry_id: UUID,
    actor: CurrentActor,
    service: Collaboration,
) -> CollaborationStatusResponse:
    registry = await service.get_settings(registry_id, actor)
    return CollaborationStatusResponse(
        registry_id=registry.id,
        collaboration_enabled=registry.collaboration_enabled,
        settings=CollaborationSettings.model_validate(registry.collaboration_settings)
        if registry.collaboration_enabled
        else None,
    )


@router.put("/{registry_id}/collaboration", response_model=CollaborationStatusResponse)
async def enable_collaboration(
    registry_id: UUID,
    data: EnableCollaborationRequest,
    actor: CurrentActor,
    service: Collaboration,
) -> CollaborationStatusResponse:
    """Enable collaboration, or update its settings if already enabled."""
    validated = await service.enable_collaboration(registry_id, data.settings, actor)
    return CollaborationStatusResponse(
        registry_id=registry_id,
        collaboration_enabled=True,
        settings=validated,
    )


@router.delete("/{registry_id}/collaboration", status_code=status.HTTP_200_OK)
async def disable_collaboration(
    registry_id: UUID,
    actor: CurrentActor,
    service: Collaboration,
) -> dict[str, int | str]:
    """Disable collaboration. Removes every collaborator and pending invitation."""
    removed = await service.disable_collaboration(registry_id, actor)
    return {"status": "disabled", "removed_collaborators": removed}


@router.get("/{registry_id}/collaborators", response_model=list[CollaboratorResponse])
async def list_collaborators(
    registry_id: UUID,
    actor: CurrentActor,
    service: Collaboration,
) -> list[CollaboratorResponse]:
    return await service.list_collaborators(registry_id, actor)


@router.post(
    "/{registry_id}/collaborators",
    response_model=InviteCollaboratorResponse,
    status_code=status.HTTP_201_CREATED,
)
async def invite_collaborator(
    registry_id: UUID,
    data: InviteCollaboratorRequest,
    actor: CurrentActor,
    service: Collaboration,
) -> InviteCollaboratorResponse:
    collaborator = await service.invite_collaborator(
        registry_id,
        str(data.email),
        data.role,
        data.permission,
        actor,
        data.message,
    )
    return InviteCollaboratorResponse(
        collaborator=service.to_response(collaborator),
        invitation_link=invitation_link(collaborator.id),
    )


@router.patch(
    "/{registry_id}/collaborators/{collaborator_id}",
    response_model=CollaboratorResponse,
)
async def update_collaborator(
    registry_id: UUID,
    collaborator_id: UUID,
    data: UpdateCollaboratorRequest,
    actor: CurrentActor,
    service: Collaboration,
) -> CollaboratorResponse:
    collaborator = await service.update_collaborator(
        registry_id,
        collaborator_id,
        actor,
        role=data.role,
        permission=data.permission,
    )
    return service.to_response(collaborator)


@router.delete(
    "/{registry_id}/collaborators/{collaborator_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_collaborator(
    registry_id: UUID,
    collaborator_id: UUID,
    actor: CurrentActor,
    service: Collaboration,
) -> None:
    await service.remove_collaborator(registry_id, collaborator_id, actor)


@router.get("/{registry_id}/activity", response_model=list[ActivityResponse])
async def get_activity(
    registry_id: UUID,
    actor: CurrentActor,
    service: Collaboration,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> list[ActivityResponse]:
    entries = await service.get_activity_feed(registry_id, actor, limit=limit, offset=offset)
    return [ActivityResponse.model_validate(entry) for entry in entries]
