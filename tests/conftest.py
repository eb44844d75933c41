import os
from datetime import datetime
from typing import Any, Dict, List, Tuple

import pytest

# Set testing environment before the app reads its settings
os.environ["TESTING"] = "1"
os.environ["TEST_DATABASE_URL"] = "sqlite:///./test.db"

from fastapi.testclient import TestClient

from clinic_scheduling.core.database import Base, SessionLocal, engine
from clinic_scheduling.core.locks import LocalLockManager, get_lock_manager
from clinic_scheduling.core.security import TokenPayload, UserRole, create_access_token
from clinic_scheduling.main import app
from clinic_scheduling.models import ClinicPolicy, Patient, Room, SessionStatus, Staff, TherapySession
from clinic_scheduling.services.notifications import NotificationSender, get_notification_sender
from clinic_scheduling.services.reschedule_service import RescheduleService
from clinic_scheduling.services.session_service import SessionService

CLINIC_ID = 1
OTHER_CLINIC_ID = 2


class RecordingNotificationSender(NotificationSender):
    """Keeps dispatched events in memory so tests can assert on them."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def _deliver(self, event, payload):
        self.events.append((event, payload))


@pytest.fixture(scope="function")
def test_db():
    # Create tables
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(test_db):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def locks():
    return LocalLockManager(timeout=5)


@pytest.fixture
def notifier():
    return RecordingNotificationSender()


@pytest.fixture
def service(db, locks, notifier):
    return SessionService(db, locks=locks, notifier=notifier)


@pytest.fixture
def reschedules(db, locks, notifier):
    return RescheduleService(db, locks=locks, notifier=notifier)


@pytest.fixture
def scheduler():
    return TokenPayload(sub=100, role=UserRole.OFFICE_EXECUTIVE, clinic_id=CLINIC_ID, token_type="access")


@pytest.fixture
def client(test_db, locks, notifier):
    app.dependency_overrides[get_lock_manager] = lambda: locks
    app.dependency_overrides[get_notification_sender] = lambda: notifier
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(role: str, sub: int = 100, clinic_id: int = CLINIC_ID) -> dict:
    token = create_access_token({"sub": sub, "role": role, "clinic_id": clinic_id})
    return {"Authorization": f"Bearer {token}"}


def make_patient(db, clinic_id=CLINIC_ID, user_id=None, first_name="Asha", last_name="Rao"):
    patient = Patient(clinic_id=clinic_id, user_id=user_id, first_name=first_name, last_name=last_name)
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


def make_staff(db, clinic_id=CLINIC_ID, first_name="Vikram", last_name="Nair"):
    staff = Staff(clinic_id=clinic_id, first_name=first_name, last_name=last_name, role="therapist")
    db.add(staff)
    db.commit()
    db.refresh(staff)
    return staff


def make_room(db, name="Room A", therapy_types=("abhyanga",), capacity=1,
              clinic_id=CLINIC_ID, status="active"):
    room = Room(clinic_id=clinic_id, name=name, therapy_types=list(therapy_types),
                capacity=capacity, status=status)
    db.add(room)
    db.commit()
    db.refresh(room)
    return room


def make_session(db, patient, start, duration=60, staff=None, room=None,
                 therapy_type="abhyanga", status=SessionStatus.SCHEDULED, clinic_id=CLINIC_ID):
    """Insert a session directly, bypassing conflict checks."""
    session = TherapySession(
        clinic_id=clinic_id,
        patient_id=patient.id,
        assigned_staff_id=staff.id if staff else None,
        room_id=room.id if room else None,
        therapy_type=therapy_type,
        status=status,
    )
    session.set_window(start, duration)
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def at(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%d %H:%M")


def make_policy(db, clinic_id=CLINIC_ID, **fields):
    policy = ClinicPolicy(clinic_id=clinic_id, **fields)
    db.add(policy)
    db.commit()
    db.refresh(policy)
    return policy
