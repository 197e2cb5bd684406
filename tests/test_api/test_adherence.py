"""
Tests for Adherence API
=======================

Tests adherence reports and milestones over live and archived days.
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient


pytestmark = pytest.mark.usefixtures("clock")

MORNING = "2024-03-05T14:00:00"


class TestAdherenceReport:
    """Tests for the adherence report endpoint"""

    @pytest.mark.api
    def test_report_for_day(self, client: TestClient, twice_daily, clock):
        client.post(f"/api/v1/commands/{twice_daily.id}/materialize", params={"day": "2024-03-05"})
        client.post("/api/v1/events/take", json={"command_id": twice_daily.id, "scheduled_for": MORNING})

        response = client.get("/api/v1/adherence/1", params={"start_date": "2024-03-05", "end_date": "2024-03-05"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["metrics"]["total_scheduled"] == 2
        assert data["metrics"]["total_taken"] == 1
        assert data["metrics"]["adherence_rate"] == 50.0
        assert data["risk"]["level"] == "high"
        assert data["daily"] == [{"date": "2024-03-05", "scheduled": 2, "taken": 1, "adherence_rate": 50.0}]

    @pytest.mark.api
    def test_default_window(self, client: TestClient, chicago_patient):
        response = client.get("/api/v1/adherence/1", params={"days": 7})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["end_date"] == "2024-03-05"
        assert data["start_date"] == "2024-02-28"
        assert data["metrics"]["adherence_rate"] is None

    @pytest.mark.api
    def test_inverted_range(self, client: TestClient, chicago_patient):
        response = client.get("/api/v1/adherence/1", params={"start_date": "2024-03-05", "end_date": "2024-03-01"})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    @pytest.mark.api
    def test_milestones(self, client: TestClient, twice_daily):
        client.post("/api/v1/events/take", json={"command_id": twice_daily.id, "scheduled_for": MORNING})

        response = client.get("/api/v1/adherence/1/milestones")

        assert response.status_code == status.HTTP_200_OK
        milestones = {m["milestone"]: m for m in response.json()}
        assert milestones["first_dose"]["achieved"] is True
