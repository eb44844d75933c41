import pytest

from clinic_scheduling.core.security import UserRole, create_access_token
from clinic_scheduling.models import SessionStatus
from tests.conftest import auth_headers, make_patient, make_policy, make_room, make_session, make_staff, at

PATIENT_USER_ID = 500


@pytest.fixture
def headers():
    return auth_headers(UserRole.OFFICE_EXECUTIVE.value)


@pytest.fixture
def setup(db):
    patient = make_patient(db, user_id=PATIENT_USER_ID)
    staff = make_staff(db)
    room = make_room(db, therapy_types=["abhyanga", "shirodhara"])
    return patient, staff, room


class TestService:

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_api_info(self, client):
        response = client.get("/api/v1/info")
        assert response.status_code == 200
        assert response.json()["endpoints"]["sessions"] == "/api/v1/sessions"


class TestAuth:

    def test_missing_token(self, client):
        response = client.get("/api/v1/sessions")
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client):
        response = client.get("/api/v1/sessions", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_token_without_clinic(self, client):
        response = client.get("/api/v1/sessions", headers=auth_headers("office_executive", clinic_id=None))
        assert response.status_code == 403

    def test_extra_claims_are_ignored(self, client, test_db):
        token = create_access_token({"sub": 100, "role": "office_executive", "clinic_id": 1,
                                     "email": "desk@clinic.example"})
        response = client.get("/api/v1/sessions", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_patient_cannot_book(self, client, setup):
        patient, staff, _ = setup
        response = client.post(
            "/api/v1/sessions",
            json={"patient_id": patient.id, "therapy_type": "abhyanga", "date": "2030-03-04", "time": "09:00"},
            headers=auth_headers("patient", sub=PATIENT_USER_ID),
        )
        assert response.status_code == 403

    def test_doctor_cannot_preview_plans(self, client, setup):
        patient, staff, _ = setup
        response = client.post(
            "/api/v1/plans/preview",
            json={"patient_id": patient.id, "therapy_type": "abhyanga", "session_count": 1,
                  "start_date": "2030-03-04", "preferred_time": "09:00", "assigned_staff_id": staff.id},
            headers=auth_headers("doctor"),
        )
        assert response.status_code == 403


class TestSessionsApi:

    def test_book_and_fetch(self, client, setup, headers, notifier):
        patient, staff, room = setup
        response = client.post(
            "/api/v1/sessions",
            json={"patient_id": patient.id, "therapy_type": "Abhyanga", "date": "2030-03-04",
                  "time": "09:00", "duration_minutes": 45, "assigned_staff_id": staff.id},
            headers=headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["room_id"] == room.id
        assert data["status"] == "scheduled"
        assert data["ends_at"] == "2030-03-04T09:45:00"

        fetched = client.get(f"/api/v1/sessions/{data['id']}", headers=headers)
        assert fetched.status_code == 200
        assert fetched.json()["therapy_type"] == "abhyanga"

    def test_conflict_error_shape(self, client, setup, headers):
        patient, staff, _ = setup
        body = {"patient_id": patient.id, "therapy_type": "abhyanga", "date": "2030-03-04",
                "time": "09:00", "assigned_staff_id": staff.id}
        assert client.post("/api/v1/sessions", json=body, headers=headers).status_code == 201

        response = client.post("/api/v1/sessions", json=body, headers=headers)

        assert response.status_code == 409
        assert response.json()["error"] == "Conflict"
        # The only room is taken, so no room can be picked
        assert response.json()["message"].startswith("No room available")

    def test_validation_error_shape(self, client, setup, headers):
        patient, _, _ = setup
        response = client.post(
            "/api/v1/sessions",
            json={"patient_id": patient.id, "therapy_type": "other", "date": "2030-03-04", "time": "09:00"},
            headers=headers,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_unknown_session(self, client, test_db, headers):
        response = client.get("/api/v1/sessions/999", headers=headers)
        assert response.status_code == 404
        assert response.json() == {"error": "NotFound", "message": "Session 999 not found"}

    def test_other_clinic_is_invisible(self, client, db, setup):
        patient, _, _ = setup
        session = make_session(db, patient, at("2030-03-04 09:00"))

        response = client.get(f"/api/v1/sessions/{session.id}", headers=auth_headers("office_executive", clinic_id=2))
        assert response.status_code == 404

    def test_list_by_date(self, client, db, setup, headers):
        patient, _, _ = setup
        make_session(db, patient, at("2030-03-04 09:00"))
        make_session(db, patient, at("2030-03-05 09:00"))

        response = client.get("/api/v1/sessions", params={"scheduled_date": "2030-03-05"}, headers=headers)

        assert response.status_code == 200
        assert [s["scheduled_at"] for s in response.json()] == ["2030-03-05T09:00:00"]

    def test_status_change(self, client, db, setup, headers):
        patient, _, _ = setup
        session = make_session(db, patient, at("2030-03-04 09:00"))

        started = client.post(f"/api/v1/sessions/{session.id}/status",
                              json={"new_status": "in_progress"}, headers=headers)
        assert started.status_code == 200
        assert started.json()["status"] == "in_progress"

        invalid = client.post(f"/api/v1/sessions/{session.id}/status",
                              json={"new_status": "awaiting_confirmation"}, headers=headers)
        assert invalid.status_code == 409
        assert invalid.json()["error"] == "InvalidTransition"


class TestPlansApi:

    def test_preview_then_commit(self, client, setup, headers):
        patient, staff, room = setup
        preview = client.post(
            "/api/v1/plans/preview",
            json={"patient_id": patient.id, "therapy_type": "abhyanga", "session_count": 3,
                  "start_date": "2030-03-04", "preferred_time": "09:00", "interval_days": 2,
                  "assigned_staff_id": staff.id},
            headers=headers,
        )
        assert preview.status_code == 200
        candidates = preview.json()
        assert [c["date"] for c in candidates] == ["2030-03-04", "2030-03-06", "2030-03-08"]
        assert all(c["room_id"] == room.id for c in candidates)

        commit = client.post("/api/v1/plans/commit", json=candidates, headers=headers)

        assert commit.status_code == 200
        result = commit.json()
        assert result["failed_at"] is None
        assert len(result["created"]) == 3

    def test_preview_requires_staff(self, client, setup, headers):
        patient, _, _ = setup
        response = client.post(
            "/api/v1/plans/preview",
            json={"patient_id": patient.id, "therapy_type": "abhyanga", "session_count": 2,
                  "start_date": "2030-03-04", "preferred_time": "09:00"},
            headers=headers,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"


class TestRoomsApi:

    def test_availability(self, client, db, setup):
        _, _, room = setup
        make_room(db, name="Steam", therapy_types=["swedana"])

        response = client.get(
            "/api/v1/rooms/availability",
            params={"therapyType": "shirodhara", "date": "2030-03-04", "time": "09:00", "duration": 60},
            headers=auth_headers("doctor"),
        )

        assert response.status_code == 200
        assert response.json() == [
            {"room_id": room.id, "name": room.name, "capacity": 1, "available_spots": 1}
        ]


class TestRescheduleFlow:

    def test_request_approve_confirm(self, client, db, setup, headers, notifier):
        patient, staff, room = setup
        session = make_session(db, patient, at("2030-03-04 09:00"), staff=staff, room=room)
        patient_headers = auth_headers("patient", sub=PATIENT_USER_ID)

        created = client.post(
            "/api/v1/reschedule-requests",
            json={"session_id": session.id, "reason": "Travelling",
                  "requested_date": "2030-03-06", "requested_time": "10:00"},
            headers=patient_headers,
        )
        assert created.status_code == 200
        request_id = created.json()["id"]
        assert created.json()["status"] == "pending"

        suggestions = client.get(f"/api/v1/reschedule-requests/{request_id}/suggestions", headers=headers)
        assert suggestions.status_code == 200
        assert suggestions.json()[0] == {"date": "2030-03-06", "time": "09:00:00"}

        forbidden = client.post(f"/api/v1/reschedule-requests/{request_id}/approve", headers=patient_headers)
        assert forbidden.status_code == 403

        approved = client.post(
            f"/api/v1/reschedule-requests/{request_id}/approve",
            json={"chosen_slot": {"date": "2030-03-06", "time": "10:00"}},
            headers=headers,
        )
        assert approved.status_code == 200
        assert approved.json()["status"] == SessionStatus.AWAITING_CONFIRMATION.value
        assert approved.json()["scheduled_at"] == "2030-03-06T10:00:00"

        again = client.post(f"/api/v1/reschedule-requests/{request_id}/reject", headers=headers)
        assert again.status_code == 409
        assert again.json()["error"] == "AlreadyResolved"

        confirmed = client.post(f"/api/v1/sessions/{session.id}/status",
                                json={"new_status": "scheduled"}, headers=patient_headers)
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "scheduled"

    def test_blank_reason(self, client, db, setup):
        patient, _, _ = setup
        session = make_session(db, patient, at("2030-03-04 09:00"))

        response = client.post(
            "/api/v1/reschedule-requests",
            json={"session_id": session.id, "reason": ""},
            headers=auth_headers("patient", sub=PATIENT_USER_ID),
        )
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_list_pending(self, client, db, setup, headers):
        patient, _, _ = setup
        session = make_session(db, patient, at("2030-03-04 09:00"))
        client.post("/api/v1/reschedule-requests", json={"session_id": session.id, "reason": "Fever"},
                    headers=auth_headers("patient", sub=PATIENT_USER_ID))

        response = client.get("/api/v1/reschedule-requests", params={"status": "pending"}, headers=headers)

        assert response.status_code == 200
        assert [r["session_id"] for r in response.json()] == [session.id]

    def test_cleanup_endpoint(self, client, headers, test_db):
        response = client.post("/api/v1/reschedule-requests/cleanup", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"cancelled": 0}

    def test_auto_approve_endpoint(self, client, db, setup, headers):
        patient, staff, room = setup
        session = make_session(db, patient, at("2030-03-04 09:00"), staff=staff, room=room)
        created = client.post(
            "/api/v1/reschedule-requests",
            json={"session_id": session.id, "reason": "Travelling",
                  "requested_date": "2030-03-06", "requested_time": "10:00"},
            headers=auth_headers("patient", sub=PATIENT_USER_ID),
        )

        response = client.post("/api/v1/reschedule-requests/auto-approve", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"approved": [created.json()["id"]]}

    def test_weekly_limit_is_429(self, client, db, setup):
        patient, _, _ = setup
        make_policy(db, max_reschedule_requests_per_week=1)
        first = make_session(db, patient, at("2030-03-04 09:00"))
        second = make_session(db, patient, at("2030-03-05 09:00"))
        patient_headers = auth_headers("patient", sub=PATIENT_USER_ID)

        client.post("/api/v1/reschedule-requests", json={"session_id": first.id, "reason": "Fever"},
                    headers=patient_headers)
        response = client.post("/api/v1/reschedule-requests", json={"session_id": second.id, "reason": "Fever"},
                               headers=patient_headers)

        assert response.status_code == 429
        assert response.json()["error"] == "TooManyRequests"
