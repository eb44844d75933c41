from datetime import date, time
from fastapi import APIRouter, Depends, Query
from typing import List

from ...api.deps import get_staff_actor, get_session_service
from ...core.config import settings
from ...core.security import TokenPayload
from ...schemas.scheduling import RoomAvailability
from ...services.session_service import SessionService

router = APIRouter(prefix="/rooms", tags=["Rooms"])

@router.get("/availability", response_model=List[RoomAvailability])
def room_availability(
    therapy_type: str = Query(..., alias="therapyType"),
    on_date: date = Query(..., alias="date"),
    at_time: time = Query(..., alias="time"),
    duration: int = Query(settings.DEFAULT_SESSION_MINUTES, gt=0),
    actor: TokenPayload = Depends(get_staff_actor),
    service: SessionService = Depends(get_session_service),
):
    """Rooms that can host the therapy at that time, most free spots first."""
    return service.find_available_rooms(actor.clinic_id, therapy_type, on_date, at_time, duration)
