"""
Tests for Events API
====================

Tests recording doses, undo, corrections and event queries.
"""

import pytest
from datetime import datetime, date
from fastapi import status
from fastapi.testclient import TestClient

from models import DailySummary


pytestmark = pytest.mark.usefixtures("clock")

BASE = "/api/v1/events"
MORNING = "2024-03-05T14:00:00"
EVENING = "2024-03-06T02:00:00"


@pytest.fixture
def taken_event(client: TestClient, twice_daily, clock):
    """Morning dose recorded through the API"""
    response = client.post(f"{BASE}/take", json={"command_id": twice_daily.id, "scheduled_for": MORNING})
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


# ==================== RECORD TESTS ====================

class TestRecordDoses:
    """Tests for dose recording endpoints"""

    @pytest.mark.api
    def test_take_on_time(self, taken_event):
        assert taken_event["event_type"] == "dose_taken_full"
        assert taken_event["is_on_time"] is True
        assert taken_event["time_bucket"] == "morning"
        assert taken_event["correlation_id"]

    @pytest.mark.api
    def test_take_partial(self, client: TestClient, twice_daily):
        response = client.post(
            f"{BASE}/take",
            json={"command_id": twice_daily.id, "scheduled_for": MORNING, "dose_percentage": 50},
        )
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["event_type"] == "dose_taken_partial"

    @pytest.mark.api
    def test_duplicate_take(self, client: TestClient, taken_event):
        response = client.post(f"{BASE}/take", json={"command_id": taken_event["command_id"], "scheduled_for": MORNING})

        assert response.status_code == status.HTTP_409_CONFLICT
        data = response.json()
        assert data["code"] == "duplicate_event"
        assert data["details"]["existing_event_id"] == taken_event["id"]

    @pytest.mark.api
    def test_missed_skipped_snoozed(self, client: TestClient, twice_daily):
        snoozed = client.post(f"{BASE}/snoozed", json={"command_id": twice_daily.id, "scheduled_for": EVENING})
        missed = client.post(f"{BASE}/missed", json={"command_id": twice_daily.id, "scheduled_for": EVENING})
        skipped = client.post(f"{BASE}/skipped", json={"command_id": twice_daily.id, "scheduled_for": MORNING})

        assert [r.status_code for r in (snoozed, missed, skipped)] == [201, 201, 201]
        assert missed.json()["correlation_id"] == snoozed.json()["correlation_id"]

    @pytest.mark.api
    def test_missed_after_taken(self, client: TestClient, taken_event):
        response = client.post(f"{BASE}/missed", json={"command_id": taken_event["command_id"], "scheduled_for": MORNING})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


# ==================== UNDO TESTS ====================

class TestUndo:
    """Tests for undo and correction endpoints"""

    @pytest.mark.api
    def test_undo_within_window(self, client: TestClient, taken_event, clock):
        clock.advance(seconds=20)
        response = client.post(f"{BASE}/{taken_event['id']}/undo", json={"reason": "wrong button"})

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["original_event_id"] == taken_event["id"]
        assert data["undo_event"]["event_type"] == "dose_taken_undone"
        assert data["undo_event"]["correlation_id"] == taken_event["correlation_id"]
        assert "streak_impact" in data["impact"]

    @pytest.mark.api
    def test_undo_window_expired(self, client: TestClient, taken_event, clock):
        clock.advance(seconds=31)
        response = client.post(f"{BASE}/{taken_event['id']}/undo", json={})

        assert response.status_code == status.HTTP_410_GONE
        data = response.json()
        assert data["code"] == "undo_window_expired"
        assert data["details"]["correction_available"] is True
        assert data["details"]["correction_deadline"] == "2024-03-06T14:00:00"

    @pytest.mark.api
    def test_undo_eligibility(self, client: TestClient, taken_event, clock):
        clock.advance(seconds=5)
        response = client.get(f"{BASE}/{taken_event['id']}/undo")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["can_undo"] is True

    @pytest.mark.api
    def test_correct(self, client: TestClient, taken_event, clock):
        clock.advance(hours=3)
        response = client.post(
            f"{BASE}/{taken_event['id']}/correct",
            json={"corrected_action": "missed", "reason": "Actually forgot"},
        )
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["event_type"] == "dose_missed_corrected"

    @pytest.mark.api
    def test_correct_too_old(self, client: TestClient, taken_event, clock):
        clock.advance(hours=25)
        response = client.post(
            f"{BASE}/{taken_event['id']}/correct",
            json={"corrected_action": "skipped", "reason": "late"},
        )
        assert response.status_code == status.HTTP_410_GONE
        assert response.json()["code"] == "too_old"

    @pytest.mark.api
    def test_correct_needs_reason(self, client: TestClient, taken_event):
        response = client.post(f"{BASE}/{taken_event['id']}/correct", json={"corrected_action": "missed", "reason": ""})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    @pytest.mark.api
    def test_correct_bad_action(self, client: TestClient, taken_event):
        response = client.post(f"{BASE}/{taken_event['id']}/correct", json={"corrected_action": "taken", "reason": "x"})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


# ==================== QUERY TESTS ====================

class TestQueries:
    """Tests for event reads"""

    @pytest.mark.api
    def test_today(self, client: TestClient, taken_event):
        response = client.get(f"{BASE}/today/1")
        assert response.status_code == status.HTTP_200_OK
        assert [item["state"] for item in response.json()] == ["taken_full", "pending"]

    @pytest.mark.api
    def test_chain(self, client: TestClient, taken_event, clock):
        clock.advance(seconds=5)
        client.post(f"{BASE}/{taken_event['id']}/undo", json={})

        response = client.get(f"{BASE}/chain/{taken_event['correlation_id']}")
        assert [e["event_type"] for e in response.json()] == ["dose_taken_full", "dose_taken_undone"]

    @pytest.mark.api
    def test_patient_events_by_type(self, client: TestClient, taken_event):
        response = client.get(f"{BASE}/patient/1", params={"event_type": ["dose_missed"]})
        assert response.json() == []

        response = client.get(f"{BASE}/patient/1", params={"archive_filter": "include_all"})
        assert [e["id"] for e in response.json()] == [taken_event["id"]]

    @pytest.mark.api
    def test_event_not_found(self, client: TestClient):
        response = client.get(f"{BASE}/99999")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.api
    def test_detect_missed(self, client: TestClient, twice_daily, db_session, clock):
        db_session.add(DailySummary(patient_id=1, summary_date=date(2024, 3, 4), timezone="America/Chicago"))
        db_session.commit()
        clock.set(datetime(2024, 3, 5, 14, 45))

        response = client.post(f"{BASE}/detect-missed", params={"patient_id": 1})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert [(e["event_type"], e["scheduled_for"]) for e in data] == [("dose_missed", MORNING)]
        assert client.post(f"{BASE}/detect-missed").json() == []
