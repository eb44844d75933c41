from datetime import datetime
from fastapi import APIRouter, Depends
from typing import List, Optional

from ...api.deps import (
    get_current_actor, get_scheduler_actor, get_reschedule_service
)
from ...core.security import TokenPayload
from ...models.reschedule_request import RescheduleRequestStatus
from ...schemas.scheduling import (
    ApproveRequest, AutoApproveResult, CleanupResult, RescheduleRequestCreate,
    RescheduleRequestResponse, SessionResponse, Slot
)
from ...services.reschedule_service import RescheduleService

router = APIRouter(prefix="/reschedule-requests", tags=["Reschedule Requests"])

@router.post("", response_model=RescheduleRequestResponse)
def create_request(
    data: RescheduleRequestCreate,
    actor: TokenPayload = Depends(get_current_actor),
    service: RescheduleService = Depends(get_reschedule_service),
):
    """Ask the clinic to move a session."""
    return service.create_request(
        actor,
        data.session_id,
        data.reason,
        requested_date=data.requested_date,
        requested_time=data.requested_time,
    )

@router.get("", response_model=List[RescheduleRequestResponse])
def list_requests(
    status: Optional[RescheduleRequestStatus] = None,
    updated_since: Optional[datetime] = None,
    limit: int = 100,
    actor: TokenPayload = Depends(get_current_actor),
    service: RescheduleService = Depends(get_reschedule_service),
):
    """List requests, newest first. Poll with ``updated_since`` for changes."""
    return service.list_requests(actor, status=status, updated_since=updated_since, limit=limit)

# Declared before "/{request_id}" so the path is not parsed as an id
@router.post("/cleanup", response_model=CleanupResult)
def cleanup_stale_requests(
    actor: TokenPayload = Depends(get_scheduler_actor),
    service: RescheduleService = Depends(get_reschedule_service),
):
    """Cancel pending requests nobody acted on."""
    return CleanupResult(cancelled=service.cleanup_stale_requests(actor))

@router.post("/auto-approve", response_model=AutoApproveResult)
def auto_approve_requests(
    actor: TokenPayload = Depends(get_scheduler_actor),
    service: RescheduleService = Depends(get_reschedule_service),
):
    """Approve pending requests whose preferred slot is free."""
    return AutoApproveResult(approved=service.auto_approve_requests(clinic_id=actor.clinic_id))

@router.get("/{request_id}", response_model=RescheduleRequestResponse)
def get_request(
    request_id: int,
    actor: TokenPayload = Depends(get_current_actor),
    service: RescheduleService = Depends(get_reschedule_service),
):
    return service.get_request(request_id, actor)

@router.get("/{request_id}/suggestions", response_model=List[Slot])
def suggest_slots(
    request_id: int,
    actor: TokenPayload = Depends(get_scheduler_actor),
    service: RescheduleService = Depends(get_reschedule_service),
):
    """Up to three conflict-free alternatives for the request."""
    return service.suggest_slots(request_id, actor)

@router.post("/{request_id}/approve", response_model=SessionResponse)
def approve_request(
    request_id: int,
    data: Optional[ApproveRequest] = None,
    actor: TokenPayload = Depends(get_scheduler_actor),
    service: RescheduleService = Depends(get_reschedule_service),
):
    """Apply the chosen (or requested) slot to the session."""
    chosen_slot = data.chosen_slot if data else None
    return service.approve(request_id, actor, chosen_slot=chosen_slot)

@router.post("/{request_id}/reject", response_model=RescheduleRequestResponse)
def reject_request(
    request_id: int,
    actor: TokenPayload = Depends(get_scheduler_actor),
    service: RescheduleService = Depends(get_reschedule_service),
):
    return service.reject(request_id, actor)
