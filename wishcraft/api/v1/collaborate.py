"""Invitation links: view, accept or decline an invitation."""

from uuid import UUID

from fastapi import APIRouter, Query

from wishcraft.core.deps import Collaboration, CurrentActor
from wishcraft.core.exceptions import PermissionDenied
from wishcraft.schemas.collaboration import (
    CollaboratorResponse,
    InvitationDetails,
    InvitationResponseRequest,
)
from wishcraft.services.collaboration_service import verify_invitation_token

router = APIRouter()


@router.get("/accept/{collaborator_id}", response_model=InvitationDetails)
async def get_invitation(
    collaborator_id: UUID,
    service: Collaboration,
    token: str = Query(...),
) -> InvitationDetails:
    """Invitation preview. The signed token is the only credential needed."""
    return await service.get_invitation(collaborator_id, token)


@router.post("/accept/{collaborator_id}", response_model=CollaboratorResponse)
async def respond_to_invitation(
    collaborator_id: UUID,
    data: InvitationResponseRequest,
    actor: CurrentActor,
    service: Collaboration,
) -> CollaboratorResponse:
    """Accept or decline as the signed-in customer the invitation was sent to."""
    verify_invitation_token(collaborator_id, data.token)
    if actor.is_operator:
        raise PermissionDenied()

    if data.accept:
        collaborator = await service.accept_invitation(
            collaborator_id, actor.email, data.name or actor.name, shop_id=actor.shop_id
        )
    else:
        collaborator = await service.decline_invitation(
            collaborator_id, actor.email, shop_id=actor.shop_id
        )
    return service.to_response(collaborator)
