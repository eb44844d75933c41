from datetime import date, datetime, time, timedelta
from typing import List, Optional

from ..schemas.scheduling import RoomAvailability
from .directory import ResourceDirectory
from .session_store import SessionStore


class RoomAvailabilityResolver:
    """Rank the rooms that can still host a session.

    Results reflect the store at call time and reserve nothing; every write
    path re-checks capacity before inserting.
    """

    def __init__(self, store: SessionStore, directory: ResourceDirectory):
        self.store = store
        self.directory = directory

    def find_available_rooms(
        self,
        clinic_id: int,
        therapy_type: str,
        on_date: date,
        at_time: time,
        duration_minutes: int,
        exclude_session_id: Optional[int] = None,
    ) -> List[RoomAvailability]:
        start = datetime.combine(on_date, at_time)
        return self.rooms_for_window(
            clinic_id, therapy_type, start, start + timedelta(minutes=duration_minutes),
            exclude_session_id=exclude_session_id,
        )

    def rooms_for_window(
        self,
        clinic_id: int,
        therapy_type: str,
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[int] = None,
    ) -> List[RoomAvailability]:
        available = []
        for room in self.directory.get_rooms_by_capability(clinic_id, therapy_type):
            taken = self.store.count_overlapping(
                "room", room.id, start, end, exclude_session_id=exclude_session_id
            )
            spots = room.capacity - taken
            if spots <= 0:
                continue
            available.append(RoomAvailability(
                room_id=room.id,
                name=room.name,
                capacity=room.capacity,
                available_spots=spots,
            ))
        available.sort(key=lambda r: (-r.available_spots, r.room_id))
        return available
