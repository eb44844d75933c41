import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import settings
from ..models.session import SessionStatus
from ..models.reschedule_request import RescheduleRequestStatus


# Plans

class PlanItem(BaseModel):
    """One explicit row of an itemized plan."""
    date: Optional[dt.date] = None
    time: Optional[dt.time] = None
    duration_minutes: Optional[int] = None
    therapy_type: Optional[str] = None
    other_therapy: Optional[str] = None
    room_id: Optional[int] = None
    assigned_staff_id: Optional[int] = None
    notes: Optional[str] = None


class PlanSpec(BaseModel):
    patient_id: int
    therapy_type: Optional[str] = None
    # Free-text label used when therapy_type is "other"
    other_therapy: Optional[str] = None
    session_count: Optional[int] = Field(default=None, ge=1, le=settings.MAX_PLAN_SESSIONS)
    start_date: Optional[dt.date] = None
    preferred_time: Optional[dt.time] = None
    interval_days: int = Field(default=1, ge=1)
    duration_minutes: int = Field(default=settings.DEFAULT_SESSION_MINUTES, gt=0)
    assigned_staff_id: Optional[int] = None
    room_id: Optional[int] = None
    notes: Optional[str] = None
    items: Optional[List[PlanItem]] = None


class CandidateSession(BaseModel):
    index: int = 0
    patient_id: int
    therapy_type: str
    scheduled_at: dt.datetime
    date: Optional[dt.date] = None
    time: Optional[dt.time] = None
    duration_minutes: int = Field(gt=0)
    assigned_staff_id: Optional[int] = None
    room_id: Optional[int] = None
    room_name: Optional[str] = None
    requested_room_id: Optional[int] = None
    room_fallback: bool = False
    room_unresolved: bool = False
    # Resource kinds ("staff", "patient", "room") overlapping at preview time
    conflicts: List[str] = []
    notes: Optional[str] = None


# Sessions

class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    patient_id: int
    assigned_staff_id: Optional[int] = None
    room_id: Optional[int] = None
    therapy_type: str
    scheduled_at: dt.datetime
    ends_at: dt.datetime
    duration_minutes: int
    status: SessionStatus
    notes: Optional[str] = None
    completed_at: Optional[dt.datetime] = None


class CommitResult(BaseModel):
    created: List[SessionResponse] = []
    failed_at: Optional[int] = None
    reason: Optional[str] = None


class SessionCreate(BaseModel):
    patient_id: int
    therapy_type: str
    other_therapy: Optional[str] = None
    date: dt.date
    time: dt.time
    duration_minutes: int = Field(default=settings.DEFAULT_SESSION_MINUTES, gt=0)
    assigned_staff_id: Optional[int] = None
    room_id: Optional[int] = None
    notes: Optional[str] = None


class StatusChange(BaseModel):
    new_status: SessionStatus


class SessionReschedule(BaseModel):
    date: dt.date
    time: dt.time
    room_id: Optional[int] = None


# Reschedule requests

class Slot(BaseModel):
    date: dt.date
    time: dt.time


class RescheduleRequestCreate(BaseModel):
    session_id: int
    reason: Optional[str] = None
    requested_date: Optional[dt.date] = None
    requested_time: Optional[dt.time] = None


class RescheduleRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    session_id: int
    patient_id: int
    requested_by: int
    requested_date: Optional[dt.date] = None
    requested_time: Optional[dt.time] = None
    reason: str
    status: RescheduleRequestStatus
    processed_by: Optional[int] = None
    processed_at: Optional[dt.datetime] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


class ApproveRequest(BaseModel):
    chosen_slot: Optional[Slot] = None


class CleanupResult(BaseModel):
    cancelled: int


class AutoApproveResult(BaseModel):
    approved: List[int]


# Rooms

class RoomAvailability(BaseModel):
    room_id: int
    name: str
    capacity: int
    available_spots: int
