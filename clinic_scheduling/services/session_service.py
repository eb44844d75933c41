"""
Write paths for therapy sessions.

Every write that puts a session on the calendar (booking, plan commit,
rescheduling, reopening a cancelled session) holds the locks of the staff
member, patient and room involved, re-runs the conflict check against live
data and commits before releasing. Previews never reserve anything.
"""
import logging
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import Conflict, InvalidTransition, SchedulingError, ValidationError
from ..core.locks import get_lock_manager, resource_keys
from ..core.security import AuthorizationError, TokenPayload, UserRole
from ..models.session import SessionStatus, TherapySession
from ..schemas.scheduling import (
    CandidateSession, CommitResult, PlanSpec, RoomAvailability, SessionCreate, SessionResponse,
)
from . import notifications
from .conflict_checker import ConflictChecker, SlotCandidate
from .directory import ResourceDirectory
from .notifications import NotificationSender, get_notification_sender
from .plan_generator import PlanGenerator, normalize_therapy_type, resolve_therapy_type, validate_duration
from .room_availability import RoomAvailabilityResolver
from .session_store import SessionStore
from .state_machine import RESCHEDULABLE, apply_reschedule, is_reopen, patient_may_transition, validate_transition

logger = logging.getLogger(__name__)


def conflict_message(conflicts: List[str], start: datetime) -> str:
    labels = {
        "staff": "the assigned therapist is already booked",
        "patient": "the patient already has a session",
        "room": "the room is at capacity",
    }
    reasons = "; ".join(labels[c] for c in conflicts)
    return f"Slot {start:%Y-%m-%d %H:%M} is unavailable: {reasons}"


class SessionService:
    def __init__(self, db: Session, locks=None, notifier: Optional[NotificationSender] = None):
        self.db = db
        self.locks = locks or get_lock_manager()
        self.notifier = notifier or get_notification_sender()
        self.store = SessionStore(db)
        self.directory = ResourceDirectory(db)
        self.checker = ConflictChecker(self.store, self.directory)
        self.resolver = RoomAvailabilityResolver(self.store, self.directory)
        self.planner = PlanGenerator(self.directory, self.resolver, self.checker)

    # Reads

    def get_session(self, session_id: int, actor: TokenPayload) -> TherapySession:
        session = self.store.get(session_id, actor.clinic_id)
        if actor.role == UserRole.PATIENT:
            self._ensure_own_session(session, actor)
        return session

    def list_sessions(self, actor: TokenPayload, **filters) -> List[TherapySession]:
        if actor.role == UserRole.PATIENT:
            patient = self.directory.get_patient_for_user(actor.sub)
            if not patient:
                return []
            filters["patient_id"] = patient.id
        return self.store.list_sessions(actor.clinic_id, **filters)

    def find_available_rooms(self, clinic_id: int, therapy_type: str, on_date: date,
                             at_time: time, duration_minutes: int) -> List[RoomAvailability]:
        validate_duration(duration_minutes)
        therapy = normalize_therapy_type(therapy_type)
        if not therapy:
            raise ValidationError("Therapy type is required")
        start = datetime.combine(on_date, at_time)
        return self.resolver.rooms_for_window(
            clinic_id, therapy, start, self.occupied_until(clinic_id, therapy, start, duration_minutes)
        )

    # Plans

    def preview_plan(self, clinic_id: int, spec: PlanSpec) -> List[CandidateSession]:
        return self.planner.generate_preview(clinic_id, spec)

    def commit_plan(self, clinic_id: int, candidates: List[CandidateSession]) -> CommitResult:
        """Insert previewed candidates in order, stopping at the first failure.

        Each row is its own transaction: rows created before a failure stay
        committed and the caller decides whether to retry the remainder.
        """
        created = []
        for position, candidate in enumerate(candidates):
            try:
                if candidate.room_unresolved or candidate.room_id is None:
                    raise Conflict("No room available for this session")
                session = self._book(
                    clinic_id=clinic_id,
                    patient_id=candidate.patient_id,
                    therapy_type=resolve_therapy_type(candidate.therapy_type),
                    start=candidate.scheduled_at,
                    duration_minutes=candidate.duration_minutes,
                    staff_id=candidate.assigned_staff_id,
                    room_id=candidate.room_id,
                    notes=candidate.notes,
                )
            except SchedulingError as e:
                logger.warning(f"Plan commit stopped at row {position}: {e.detail}")
                return CommitResult(
                    created=[SessionResponse.model_validate(s) for s in created],
                    failed_at=position,
                    reason=e.detail,
                )
            created.append(session)

        logger.info(f"Committed {len(created)} sessions for clinic {clinic_id}")
        return CommitResult(created=[SessionResponse.model_validate(s) for s in created])

    # Single booking

    def book_session(self, clinic_id: int, data: SessionCreate) -> TherapySession:
        therapy = resolve_therapy_type(data.therapy_type, data.other_therapy)
        start = datetime.combine(data.date, data.time)
        duration = validate_duration(data.duration_minutes)

        room_id = data.room_id
        if room_id is None:
            rooms = self.resolver.rooms_for_window(
                clinic_id, therapy, start, self.occupied_until(clinic_id, therapy, start, duration)
            )
            if not rooms:
                raise Conflict(f"No room available for {therapy} at {start:%Y-%m-%d %H:%M}")
            room_id = rooms[0].room_id

        return self._book(
            clinic_id=clinic_id,
            patient_id=data.patient_id,
            therapy_type=therapy,
            start=start,
            duration_minutes=duration,
            staff_id=data.assigned_staff_id,
            room_id=room_id,
            notes=data.notes,
        )

    def _book(self, clinic_id: int, patient_id: int, therapy_type: str, start: datetime,
              duration_minutes: int, staff_id: Optional[int], room_id: int,
              notes: Optional[str]) -> TherapySession:
        validate_duration(duration_minutes)
        self.directory.get_patient(patient_id, clinic_id)
        if staff_id is not None:
            self.directory.get_staff(staff_id, clinic_id)
        self._check_room(clinic_id, room_id, therapy_type)

        candidate = SlotCandidate(
            clinic_id=clinic_id,
            patient_id=patient_id,
            staff_id=staff_id,
            room_id=room_id,
            start=start,
            end=self.occupied_until(clinic_id, therapy_type, start, duration_minutes),
        )
        session = TherapySession(
            clinic_id=clinic_id,
            patient_id=patient_id,
            assigned_staff_id=staff_id,
            room_id=room_id,
            therapy_type=therapy_type,
            status=SessionStatus.SCHEDULED,
            notes=notes,
        )
        session.set_window(start, duration_minutes)

        with self.locks.hold(resource_keys(clinic_id, patient_id, staff_id, room_id)):
            self._ensure_free(candidate)
            try:
                self.store.add(session)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.db.refresh(session)
        logger.info(f"Booked session {session.id} for patient {patient_id} at {start}")
        self.notifier.send(notifications.SESSION_CREATED, notifications.session_payload(session))
        return session

    # Status changes

    def change_status(self, session_id: int, new_status: SessionStatus, actor: TokenPayload) -> TherapySession:
        session = self.store.get(session_id, actor.clinic_id)
        if new_status == SessionStatus.AWAITING_CONFIRMATION:
            # Only a reschedule can set this, together with the new time
            raise InvalidTransition(session.status, new_status)

        if actor.role == UserRole.PATIENT:
            self._ensure_own_session(session, actor)
            if not patient_may_transition(session.status, new_status):
                raise AuthorizationError("Patients can only confirm a rescheduled session")
        elif not actor.is_staff:
            raise AuthorizationError()

        validate_transition(session.status, new_status)
        previous = session.status

        keys = resource_keys(session.clinic_id, session.patient_id,
                             session.assigned_staff_id, session.room_id)
        with self.locks.hold(keys):
            self.db.expire_all()
            if is_reopen(session.status, new_status) and session.status == SessionStatus.CANCELLED:
                # Back on the calendar, so it must still fit
                self._ensure_free(self._candidate_for(session, session.scheduled_at))
            try:
                self.store.update_status(session, new_status)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.db.refresh(session)
        logger.info(f"Session {session.id} status {previous.value} -> {new_status.value}")
        payload = notifications.session_payload(session)
        payload["previous_status"] = previous.value
        self.notifier.send(notifications.SESSION_STATUS_CHANGED, payload)
        return session

    # Rescheduling

    def reschedule(self, session_id: int, clinic_id: int, on_date: date, at_time: time,
                   room_id: Optional[int] = None) -> TherapySession:
        """Staff-initiated move; the patient must confirm the new time."""
        session = self.store.get(session_id, clinic_id)
        return self.move_session(session, datetime.combine(on_date, at_time), room_id=room_id)

    def move_session(
        self,
        session: TherapySession,
        start: datetime,
        room_id: Optional[int] = None,
        on_applied: Optional[Callable[[TherapySession], None]] = None,
    ) -> TherapySession:
        """Move ``session`` to ``start`` and mark it awaiting confirmation.

        ``on_applied`` runs inside the same transaction, after the session has
        been updated and before commit.
        """
        if session.status not in RESCHEDULABLE:
            raise InvalidTransition(session.status, SessionStatus.AWAITING_CONFIRMATION)
        end = self.occupied_until(session.clinic_id, session.therapy_type, start, session.duration_minutes)
        target_room = self._pick_room(session, start, end, room_id)

        keys = resource_keys(session.clinic_id, session.patient_id, session.assigned_staff_id, target_room)
        if session.room_id is not None:
            keys.append(f"room:{session.room_id}")

        with self.locks.hold(keys):
            self.db.expire_all()
            if session.status not in RESCHEDULABLE:
                raise InvalidTransition(session.status, SessionStatus.AWAITING_CONFIRMATION)
            candidate = self._candidate_for(session, start, room_id=target_room)
            self._ensure_free(candidate)
            try:
                apply_reschedule(session, start, target_room)
                if on_applied is not None:
                    on_applied(session)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.db.refresh(session)
        logger.info(f"Session {session.id} moved to {start} in room {target_room}")
        self.notifier.send(notifications.SESSION_RESCHEDULED, notifications.session_payload(session))
        return session

    def slot_is_free(self, session: TherapySession, start: datetime,
                     now: Optional[datetime] = None) -> bool:
        """Read-only check used by slot suggestions and auto-approval.

        The slot must satisfy the clinic rules (lead time only when ``now`` is
        given), leave a free room and clash with no staff or patient booking.
        """
        policy = self.directory.get_policy(session.clinic_id)
        if policy.slot_violation(session.therapy_type, start, now=now):
            return False
        end = start + timedelta(minutes=session.duration_minutes + policy.buffer_minutes(session.therapy_type))
        rooms = self.resolver.rooms_for_window(
            session.clinic_id, session.therapy_type, start, end, exclude_session_id=session.id
        )
        if not rooms:
            return False
        # Rooms were covered above; only staff and patient remain
        return not self.checker.has_conflict(SlotCandidate(
            clinic_id=session.clinic_id,
            patient_id=session.patient_id,
            staff_id=session.assigned_staff_id,
            start=start,
            end=end,
            exclude_session_id=session.id,
        ))

    def occupied_until(self, clinic_id: int, therapy_type: str, start: datetime,
                       duration_minutes: int) -> datetime:
        """End of the window a session blocks, including the therapy's buffer."""
        buffer = self.directory.get_policy(clinic_id).buffer_minutes(therapy_type)
        return start + timedelta(minutes=duration_minutes + buffer)

    # Helpers

    def _pick_room(self, session: TherapySession, start: datetime, end: datetime,
                   requested_room_id: Optional[int]) -> int:
        rooms = self.resolver.rooms_for_window(
            session.clinic_id, session.therapy_type, start, end, exclude_session_id=session.id
        )
        available = {r.room_id for r in rooms}
        if requested_room_id is not None:
            if requested_room_id not in available:
                raise Conflict(f"Room {requested_room_id} is not available at {start:%Y-%m-%d %H:%M}")
            return requested_room_id
        if session.room_id in available:
            return session.room_id
        if not rooms:
            raise Conflict(f"No room available for {session.therapy_type} at {start:%Y-%m-%d %H:%M}")
        return rooms[0].room_id

    def _check_room(self, clinic_id: int, room_id: int, therapy_type: str) -> None:
        room = self.directory.get_room(room_id)
        if room.clinic_id != clinic_id or not room.is_active:
            raise ValidationError(f"Room {room_id} cannot be booked")
        if not room.supports(therapy_type):
            raise ValidationError(f"Room {room.name} is not equipped for {therapy_type}")

    def _candidate_for(self, session: TherapySession, start: datetime,
                       room_id: Optional[int] = None) -> SlotCandidate:
        return SlotCandidate(
            clinic_id=session.clinic_id,
            patient_id=session.patient_id,
            staff_id=session.assigned_staff_id,
            room_id=room_id if room_id is not None else session.room_id,
            start=start,
            end=self.occupied_until(session.clinic_id, session.therapy_type, start, session.duration_minutes),
            exclude_session_id=session.id,
        )

    def _ensure_free(self, candidate: SlotCandidate) -> None:
        conflicts = self.checker.find_conflicts(candidate)
        if conflicts:
            raise Conflict(conflict_message(conflicts, candidate.start))

    def _ensure_own_session(self, session: TherapySession, actor: TokenPayload) -> None:
        patient = self.directory.get_patient_for_user(actor.sub)
        if not patient or patient.id != session.patient_id:
            raise AuthorizationError("Not allowed to access this session")
