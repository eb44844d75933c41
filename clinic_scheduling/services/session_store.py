from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import NotFound
from ..models.session import SessionStatus, TherapySession
from .state_machine import apply_transition

# Columns a session can be looked up by when checking for overlaps
RESOURCE_COLUMNS = {
    "staff": TherapySession.assigned_staff_id,
    "patient": TherapySession.patient_id,
    "room": TherapySession.room_id,
}


class SessionStore:
    """Repository for therapy sessions.

    Sessions are never deleted; cancellation is a status.
    """

    def __init__(self, db: Session):
        self.db = db

    def add(self, session: TherapySession) -> TherapySession:
        self.db.add(session)
        self.db.flush()
        return session

    def get(self, session_id: int, clinic_id: Optional[int] = None) -> TherapySession:
        query = self.db.query(TherapySession).filter(TherapySession.id == session_id)
        if clinic_id is not None:
            query = query.filter(TherapySession.clinic_id == clinic_id)
        session = query.first()
        if not session:
            raise NotFound(f"Session {session_id} not found")
        return session

    def update_status(self, session: TherapySession, status: SessionStatus) -> TherapySession:
        apply_transition(session, status)
        self.db.flush()
        return session

    def find_overlapping(
        self,
        resource: str,
        resource_id: int,
        start: datetime,
        end: datetime,
        clinic_id: Optional[int] = None,
        exclude_session_id: Optional[int] = None,
    ) -> List[TherapySession]:
        """Non-cancelled sessions on ``resource`` overlapping ``[start, end)``."""
        column = RESOURCE_COLUMNS[resource]
        query = self.db.query(TherapySession).filter(
            column == resource_id,
            TherapySession.status != SessionStatus.CANCELLED,
            TherapySession.scheduled_at < end,
            TherapySession.ends_at > start,
        )
        if clinic_id is not None:
            query = query.filter(TherapySession.clinic_id == clinic_id)
        if exclude_session_id is not None:
            query = query.filter(TherapySession.id != exclude_session_id)
        return query.order_by(TherapySession.scheduled_at, TherapySession.id).all()

    def count_overlapping(self, resource: str, resource_id: int, start: datetime, end: datetime,
                          exclude_session_id: Optional[int] = None) -> int:
        return len(self.find_overlapping(resource, resource_id, start, end,
                                         exclude_session_id=exclude_session_id))

    def list_sessions(
        self,
        clinic_id: int,
        patient_id: Optional[int] = None,
        staff_id: Optional[int] = None,
        status: Optional[SessionStatus] = None,
        on_date: Optional[date] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[TherapySession]:
        query = self.db.query(TherapySession).filter(TherapySession.clinic_id == clinic_id)
        if patient_id is not None:
            query = query.filter(TherapySession.patient_id == patient_id)
        if staff_id is not None:
            query = query.filter(TherapySession.assigned_staff_id == staff_id)
        if status is not None:
            query = query.filter(TherapySession.status == status)
        # A single day takes precedence over an explicit range
        if on_date is not None:
            day_start = datetime.combine(on_date, time.min)
            query = query.filter(
                TherapySession.scheduled_at >= day_start,
                TherapySession.scheduled_at < day_start + timedelta(days=1),
            )
        else:
            if date_from is not None:
                query = query.filter(TherapySession.scheduled_at >= date_from)
            if date_to is not None:
                query = query.filter(TherapySession.scheduled_at <= date_to)
        return query.order_by(TherapySession.scheduled_at, TherapySession.id).limit(limit).all()
