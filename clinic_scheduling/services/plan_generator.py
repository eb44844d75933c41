"""
Treatment plan expansion.

A plan is either a repeating series (``session_count`` sessions every
``interval_days`` at ``preferred_time``) or a list of itemized rows. Each
resulting candidate gets a room and a conflict report, but nothing is written:
the preview is advisory and commit re-checks everything against live data.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from ..core.config import settings
from ..core.exceptions import ValidationError
from ..schemas.scheduling import CandidateSession, PlanItem, PlanSpec
from .conflict_checker import ConflictChecker, SlotCandidate
from .directory import ResourceDirectory
from .room_availability import RoomAvailabilityResolver

logger = logging.getLogger(__name__)

OTHER_THERAPY = "other"


def normalize_therapy_type(name: Optional[str]) -> str:
    return "_".join((name or "").strip().lower().split())


def resolve_therapy_type(therapy_type: Optional[str], other_label: Optional[str] = None) -> str:
    """Return the stored therapy type, resolving "other" to its free-text label."""
    therapy = normalize_therapy_type(therapy_type)
    if therapy == OTHER_THERAPY:
        therapy = normalize_therapy_type(other_label)
        if not therapy:
            raise ValidationError("Therapy type 'other' requires a therapy name")
    if not therapy:
        raise ValidationError("Therapy type is required")
    return therapy


def validate_duration(duration_minutes: int) -> int:
    if duration_minutes is None or duration_minutes <= 0:
        raise ValidationError("Duration must be a positive number of minutes")
    if duration_minutes > settings.MAX_SESSION_MINUTES:
        raise ValidationError(
            f"Duration cannot exceed {settings.MAX_SESSION_MINUTES} minutes"
        )
    return duration_minutes


class PlanGenerator:
    def __init__(
        self,
        directory: ResourceDirectory,
        resolver: RoomAvailabilityResolver,
        checker: ConflictChecker,
    ):
        self.directory = directory
        self.resolver = resolver
        self.checker = checker

    def generate_preview(self, clinic_id: int, spec: PlanSpec) -> List[CandidateSession]:
        self.directory.get_patient(spec.patient_id, clinic_id)

        if spec.items:
            candidates = self._itemized(clinic_id, spec)
        else:
            candidates = self._repeating(clinic_id, spec)

        logger.info(
            f"Generated {len(candidates)} candidate sessions for patient {spec.patient_id} "
            f"({sum(c.room_unresolved for c in candidates)} without a room)"
        )
        return candidates

    def _repeating(self, clinic_id: int, spec: PlanSpec) -> List[CandidateSession]:
        therapy = resolve_therapy_type(spec.therapy_type, spec.other_therapy)
        if spec.assigned_staff_id is None:
            raise ValidationError("A therapist must be assigned to the plan")
        if not spec.session_count:
            raise ValidationError("Session count is required")
        if spec.start_date is None or spec.preferred_time is None:
            raise ValidationError("Start date and preferred time are required")
        duration = validate_duration(spec.duration_minutes)
        self.directory.get_staff(spec.assigned_staff_id, clinic_id)

        first = datetime.combine(spec.start_date, spec.preferred_time)
        return [
            self._build_candidate(
                index=i,
                clinic_id=clinic_id,
                patient_id=spec.patient_id,
                therapy_type=therapy,
                start=first + timedelta(days=i * spec.interval_days),
                duration_minutes=duration,
                staff_id=spec.assigned_staff_id,
                requested_room_id=spec.room_id,
                notes=spec.notes,
            )
            for i in range(spec.session_count)
        ]

    def _itemized(self, clinic_id: int, spec: PlanSpec) -> List[CandidateSession]:
        candidates = []
        for i, row in enumerate(spec.items):
            start, therapy, duration = self._validate_row(i, row, spec)
            self.directory.get_staff(row.assigned_staff_id, clinic_id)
            candidates.append(self._build_candidate(
                index=i,
                clinic_id=clinic_id,
                patient_id=spec.patient_id,
                therapy_type=therapy,
                start=start,
                duration_minutes=duration,
                staff_id=row.assigned_staff_id,
                requested_room_id=row.room_id,
                notes=row.notes if row.notes is not None else spec.notes,
            ))
        return candidates

    @staticmethod
    def _validate_row(index: int, row: PlanItem, spec: PlanSpec):
        if row.date is None or row.time is None:
            raise ValidationError(f"Row {index}: date and time are required")
        if row.assigned_staff_id is None:
            raise ValidationError(f"Row {index}: a therapist must be assigned")
        try:
            therapy = resolve_therapy_type(row.therapy_type, row.other_therapy)
            duration = validate_duration(
                row.duration_minutes if row.duration_minutes is not None else spec.duration_minutes
            )
        except ValidationError as e:
            raise ValidationError(f"Row {index}: {e.detail}")
        return datetime.combine(row.date, row.time), therapy, duration

    def _build_candidate(
        self,
        index: int,
        clinic_id: int,
        patient_id: int,
        therapy_type: str,
        start: datetime,
        duration_minutes: int,
        staff_id: Optional[int],
        requested_room_id: Optional[int],
        notes: Optional[str],
    ) -> CandidateSession:
        # The therapy's turnover buffer keeps the room and people blocked
        buffer = self.directory.get_policy(clinic_id).buffer_minutes(therapy_type)
        end = start + timedelta(minutes=duration_minutes + buffer)
        rooms = self.resolver.rooms_for_window(clinic_id, therapy_type, start, end)

        room = None
        fallback = False
        if requested_room_id is not None:
            room = next((r for r in rooms if r.room_id == requested_room_id), None)
            fallback = room is None and bool(rooms)
        if room is None and rooms:
            room = rooms[0]

        conflicts = self.checker.find_conflicts(SlotCandidate(
            clinic_id=clinic_id,
            patient_id=patient_id,
            staff_id=staff_id,
            start=start,
            end=end,
        ))

        return CandidateSession(
            index=index,
            patient_id=patient_id,
            therapy_type=therapy_type,
            scheduled_at=start,
            date=start.date(),
            time=start.time(),
            duration_minutes=duration_minutes,
            assigned_staff_id=staff_id,
            room_id=room.room_id if room else None,
            room_name=room.name if room else None,
            requested_room_id=requested_room_id,
            room_fallback=fallback,
            room_unresolved=room is None,
            conflicts=conflicts,
            notes=notes,
        )
