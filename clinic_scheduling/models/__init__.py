from .patient import Patient
from .staff import Staff
from .room import Room, ANY_THERAPY
from .session import TherapySession, SessionStatus
from .reschedule_request import RescheduleRequest, RescheduleRequestStatus
from .clinic_policy import ClinicPolicy

__all__ = [
    "Patient",
    "Staff",
    "Room",
    "ANY_THERAPY",
    "TherapySession",
    "SessionStatus",
    "RescheduleRequest",
    "RescheduleRequestStatus",
    "ClinicPolicy",
]
