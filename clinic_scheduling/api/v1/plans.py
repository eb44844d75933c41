from fastapi import APIRouter, Depends
from typing import List

from ...api.deps import get_scheduler_actor, get_session_service
from ...core.security import TokenPayload
from ...schemas.scheduling import CandidateSession, CommitResult, PlanSpec
from ...services.session_service import SessionService

router = APIRouter(prefix="/plans", tags=["Treatment Plans"])

@router.post("/preview", response_model=List[CandidateSession])
def preview_plan(
    spec: PlanSpec,
    actor: TokenPayload = Depends(get_scheduler_actor),
    service: SessionService = Depends(get_session_service),
):
    """Expand a treatment plan into candidate sessions without booking them."""
    return service.preview_plan(actor.clinic_id, spec)

@router.post("/commit", response_model=CommitResult)
def commit_plan(
    candidates: List[CandidateSession],
    actor: TokenPayload = Depends(get_scheduler_actor),
    service: SessionService = Depends(get_session_service),
):
    """Book previewed sessions in order; stops at the first row that no longer fits."""
    return service.commit_plan(actor.clinic_id, candidates)
