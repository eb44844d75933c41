"""Read-only lookups of staff, patients and rooms.

The directory is owned by the clinic administration screens; the scheduling
core only reads it and never treats it as authoritative for conflict state.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import NotFound
from ..models.clinic_policy import ClinicPolicy
from ..models.patient import Patient
from ..models.room import Room
from ..models.staff import Staff
from .policy import SchedulingPolicy


class ResourceDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get_staff(self, staff_id: int, clinic_id: Optional[int] = None) -> Staff:
        query = self.db.query(Staff).filter(Staff.id == staff_id)
        if clinic_id is not None:
            query = query.filter(Staff.clinic_id == clinic_id)
        staff = query.first()
        if not staff or not staff.is_active:
            raise NotFound(f"Staff member {staff_id} not found")
        return staff

    def get_patient(self, patient_id: int, clinic_id: Optional[int] = None) -> Patient:
        query = self.db.query(Patient).filter(Patient.id == patient_id)
        if clinic_id is not None:
            query = query.filter(Patient.clinic_id == clinic_id)
        patient = query.first()
        if not patient:
            raise NotFound(f"Patient {patient_id} not found")
        return patient

    def get_patient_for_user(self, user_id: int) -> Optional[Patient]:
        """Patient record linked to a login account, if any."""
        return self.db.query(Patient).filter(Patient.user_id == user_id).first()

    def get_room(self, room_id: int) -> Room:
        room = self.db.query(Room).filter(Room.id == room_id).first()
        if not room:
            raise NotFound(f"Room {room_id} not found")
        return room

    def get_policy(self, clinic_id: int) -> SchedulingPolicy:
        policy = self.db.query(ClinicPolicy).filter(ClinicPolicy.clinic_id == clinic_id).first()
        return SchedulingPolicy(policy)

    def get_rooms_by_capability(self, clinic_id: int, therapy_type: str) -> List[Room]:
        """Active rooms of the clinic equipped for ``therapy_type``."""
        rooms = (
            self.db.query(Room)
            .filter(Room.clinic_id == clinic_id, Room.status == "active")
            .order_by(Room.id)
            .all()
        )
        # therapy_types is a JSON list, so capability matching happens here
        return [room for room in rooms if room.supports(therapy_type)]
