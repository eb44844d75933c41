"""Concurrent commits racing for the same room.

Each worker gets its own database session and service, sharing one lock
manager the way request handlers in one process do.
"""
import threading

import pytest

from clinic_scheduling.core.database import SessionLocal
from clinic_scheduling.models import TherapySession
from clinic_scheduling.schemas.scheduling import CandidateSession
from clinic_scheduling.services.session_service import SessionService
from tests.conftest import CLINIC_ID, at, make_patient, make_room, make_staff


def race(locks, notifier, batches):
    barrier = threading.Barrier(len(batches))
    results = [None] * len(batches)
    errors = []

    def worker(position, candidates):
        db = SessionLocal()
        try:
            service = SessionService(db, locks=locks, notifier=notifier)
            barrier.wait()
            results[position] = service.commit_plan(CLINIC_ID, candidates)
        except Exception as e:
            errors.append(e)
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(i, batch)) for i, batch in enumerate(batches)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert not errors
    return results


def candidate_for(patient, staff, room, start="2030-03-04 09:00"):
    return CandidateSession(
        patient_id=patient.id,
        therapy_type="abhyanga",
        scheduled_at=at(start),
        duration_minutes=60,
        assigned_staff_id=staff.id,
        room_id=room.id,
    )


class TestConcurrentCommits:

    @pytest.fixture
    def two_teams(self, db):
        return [
            (make_patient(db, first_name="Asha"), make_staff(db, first_name="Vikram")),
            (make_patient(db, first_name="Meera"), make_staff(db, first_name="Lakshmi")),
        ]

    def test_single_room_goes_to_exactly_one(self, db, locks, notifier, two_teams):
        room = make_room(db, capacity=1)
        batches = [[candidate_for(p, s, room)] for p, s in two_teams]

        results = race(locks, notifier, batches)

        created = [r for r in results if r.created]
        failed = [r for r in results if r.failed_at is not None]
        assert len(created) == 1
        assert len(failed) == 1
        assert failed[0].failed_at == 0
        assert "room" in failed[0].reason
        db.expire_all()
        assert db.query(TherapySession).count() == 1

    def test_room_with_two_spots_takes_both(self, db, locks, notifier, two_teams):
        room = make_room(db, capacity=2)
        batches = [[candidate_for(p, s, room)] for p, s in two_teams]

        results = race(locks, notifier, batches)

        assert all(r.failed_at is None and len(r.created) == 1 for r in results)
        db.expire_all()
        assert db.query(TherapySession).count() == 2

    def test_same_therapist_is_never_double_booked(self, db, locks, notifier):
        staff = make_staff(db)
        room = make_room(db, capacity=2)
        patients = [make_patient(db, first_name=name) for name in ("Asha", "Meera", "Ravi")]
        batches = [[candidate_for(p, staff, room, start="2030-03-04 09:30")] for p in patients]

        results = race(locks, notifier, batches)

        assert sum(len(r.created) for r in results) == 1
        db.expire_all()
        assert db.query(TherapySession).count() == 1
