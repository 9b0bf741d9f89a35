from typing import List

from fastapi import APIRouter, Depends

from experttalk.api.dependencies import get_presence
from experttalk.core.security import get_current_user, has_any_role
from experttalk.models.user import User, UserRole
from experttalk.schemas.user import AvailabilityUpdate, ExpertResponse
from experttalk.services.presence_service import PresenceService

router = APIRouter()


@router.get("", response_model=List[ExpertResponse])
async def list_available_experts(
    current_user: User = Depends(get_current_user),
    presence: PresenceService = Depends(get_presence),
):
    """
    Experts that can be booked right now.
    """
    experts = await presence.list_available_experts()
    return [ExpertResponse.model_validate(e) for e in experts]


@router.put("/me/availability", response_model=ExpertResponse)
async def update_availability(
    request: AvailabilityUpdate,
    current_user: User = Depends(has_any_role([UserRole.EXPERT])),
    presence: PresenceService = Depends(get_presence),
):
    if request.is_available:
        await presence.set_available(current_user.id)
    else:
        await presence.set_unavailable(current_user.id)
    return ExpertResponse(
        id=current_user.id,
        name=current_user.name,
        role=current_user.role,
        hourly_rate=float(current_user.hourly_rate) if current_user.hourly_rate is not None else None,
        is_available=request.is_available,
    )
