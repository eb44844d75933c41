from datetime import date, datetime
from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional

from ...api.deps import (
    get_current_actor, get_scheduler_actor, get_session_service
)
from ...core.security import TokenPayload
from ...models.session import SessionStatus
from ...schemas.scheduling import (
    SessionCreate, SessionReschedule, SessionResponse, StatusChange
)
from ...services.session_service import SessionService

router = APIRouter(prefix="/sessions", tags=["Therapy Sessions"])

@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def create_session(
    data: SessionCreate,
    actor: TokenPayload = Depends(get_scheduler_actor),
    service: SessionService = Depends(get_session_service),
):
    """Book a single therapy session."""
    return service.book_session(actor.clinic_id, data)

@router.get("", response_model=List[SessionResponse])
def list_sessions(
    patient_id: Optional[int] = None,
    staff_id: Optional[int] = None,
    status: Optional[SessionStatus] = None,
    scheduled_date: Optional[date] = None,
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    actor: TokenPayload = Depends(get_current_actor),
    service: SessionService = Depends(get_session_service),
):
    """List clinic sessions; patients only see their own."""
    return service.list_sessions(
        actor,
        patient_id=patient_id,
        staff_id=staff_id,
        status=status,
        on_date=scheduled_date,
        date_from=date_from,
        date_to=date_to,
    )

@router.get("/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: int,
    actor: TokenPayload = Depends(get_current_actor),
    service: SessionService = Depends(get_session_service),
):
    return service.get_session(session_id, actor)

@router.post("/{session_id}/status", response_model=SessionResponse)
def change_status(
    session_id: int,
    change: StatusChange,
    actor: TokenPayload = Depends(get_current_actor),
    service: SessionService = Depends(get_session_service),
):
    """Move a session through its lifecycle (start, complete, cancel, confirm, reopen)."""
    return service.change_status(session_id, change.new_status, actor)

@router.post("/{session_id}/reschedule", response_model=SessionResponse)
def reschedule_session(
    session_id: int,
    data: SessionReschedule,
    actor: TokenPayload = Depends(get_scheduler_actor),
    service: SessionService = Depends(get_session_service),
):
    """Staff reschedule; the session waits for patient confirmation."""
    return service.reschedule(session_id, actor.clinic_id, data.date, data.time, room_id=data.room_id)
