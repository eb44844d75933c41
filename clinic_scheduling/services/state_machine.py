"""
Session status transitions.

``ALLOWED_TRANSITIONS`` is the single source of truth for plain status
changes. Moving a session to ``awaiting_confirmation`` is not a plain status
change: it only happens through :func:`apply_reschedule`, which writes the new
time, room and status together.
"""
from datetime import datetime
from typing import Optional

from ..core.exceptions import InvalidTransition
from ..models.session import SessionStatus, TherapySession

ALLOWED_TRANSITIONS = {
    SessionStatus.SCHEDULED: {SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED},
    SessionStatus.IN_PROGRESS: {SessionStatus.COMPLETED, SessionStatus.CANCELLED},
    # Patient confirms the new time
    SessionStatus.AWAITING_CONFIRMATION: {SessionStatus.SCHEDULED},
    # Reopen
    SessionStatus.COMPLETED: {SessionStatus.SCHEDULED},
    SessionStatus.CANCELLED: {SessionStatus.SCHEDULED},
}

RESCHEDULABLE = frozenset({
    SessionStatus.SCHEDULED,
    SessionStatus.IN_PROGRESS,
    SessionStatus.AWAITING_CONFIRMATION,
})

TERMINAL = frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED})

# The only transition a patient may perform
PATIENT_TRANSITIONS = frozenset({
    (SessionStatus.AWAITING_CONFIRMATION, SessionStatus.SCHEDULED),
})


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, ()):
        raise InvalidTransition(current, target)


def is_reopen(current: SessionStatus, target: SessionStatus) -> bool:
    return current in TERMINAL and target == SessionStatus.SCHEDULED


def patient_may_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return (current, target) in PATIENT_TRANSITIONS


def apply_transition(session: TherapySession, target: SessionStatus) -> TherapySession:
    previous = session.status
    validate_transition(previous, target)
    session.status = target
    if target == SessionStatus.COMPLETED:
        session.completed_at = datetime.utcnow()
    elif is_reopen(previous, target):
        session.completed_at = None
    return session


def apply_reschedule(session: TherapySession, start: datetime, room_id: Optional[int]) -> TherapySession:
    """Move the session and mark it ``awaiting_confirmation`` in one step."""
    if session.status not in RESCHEDULABLE:
        raise InvalidTransition(session.status, SessionStatus.AWAITING_CONFIRMATION)
    session.set_window(start, session.duration_minutes)
    session.room_id = room_id
    session.status = SessionStatus.AWAITING_CONFIRMATION
    return session
