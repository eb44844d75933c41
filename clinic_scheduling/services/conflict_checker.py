"""
Double-booking detection.

Two sessions overlap when ``a.start < b.end and b.start < a.end`` (half-open
intervals, so back-to-back sessions are fine). Staff and patients can hold one
session at a time; a room holds up to its capacity.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .directory import ResourceDirectory
from .session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotCandidate:
    clinic_id: int
    patient_id: int
    start: datetime
    end: datetime
    staff_id: Optional[int] = None
    room_id: Optional[int] = None
    # Ignore this session's own booking when moving it
    exclude_session_id: Optional[int] = None


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


class ConflictChecker:
    def __init__(self, store: SessionStore, directory: ResourceDirectory):
        self.store = store
        self.directory = directory

    def has_conflict(self, candidate: SlotCandidate) -> bool:
        return bool(self.find_conflicts(candidate, first_only=True))

    def find_conflicts(self, candidate: SlotCandidate, first_only: bool = False) -> List[str]:
        """Resource kinds the candidate would double-book, in check order."""
        conflicts = []

        if candidate.staff_id is not None and self._person_busy("staff", candidate.staff_id, candidate):
            conflicts.append("staff")
            if first_only:
                return conflicts

        if self._person_busy("patient", candidate.patient_id, candidate):
            conflicts.append("patient")
            if first_only:
                return conflicts

        if candidate.room_id is not None and self._room_full(candidate):
            conflicts.append("room")

        if conflicts:
            logger.debug(f"Conflicts {conflicts} for {candidate}")
        return conflicts

    def _person_busy(self, resource: str, resource_id: int, candidate: SlotCandidate) -> bool:
        # Staff ids are tenant-scoped; patient ids are global
        clinic_id = candidate.clinic_id if resource == "staff" else None
        existing = self.store.find_overlapping(
            resource, resource_id, candidate.start, candidate.end,
            clinic_id=clinic_id,
            exclude_session_id=candidate.exclude_session_id,
        )
        return any(
            overlaps(s.scheduled_at, s.ends_at, candidate.start, candidate.end)
            for s in existing
        )

    def _room_full(self, candidate: SlotCandidate) -> bool:
        room = self.directory.get_room(candidate.room_id)
        taken = self.store.count_overlapping(
            "room", room.id, candidate.start, candidate.end,
            exclude_session_id=candidate.exclude_session_id,
        )
        return taken >= room.capacity
