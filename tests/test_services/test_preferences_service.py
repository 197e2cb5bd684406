"""
Tests for Preferences Service
"""

import pytest

from exceptions import PreferencesMissingError, ValidationError
from services.preferences_service import preferences_service


class TestPreferences:
    """Tests for storing and resolving time preferences"""

    @pytest.mark.asyncio
    async def test_create_then_update(self, db_session):
        prefs = await preferences_service.upsert_preferences(
            5, timezone="Asia/Kolkata", wake_time="06:30", db=db_session
        )
        assert prefs.version == 1
        assert prefs.wake_time == "06:30"

        updated = await preferences_service.upsert_preferences(5, dinner_time="19:30", db=db_session)
        assert updated.version == 2
        assert updated.timezone == "Asia/Kolkata"
        assert updated.dinner_time == "19:30"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"timezone": "Atlantis/Capital"},
        {"wake_time": "6:30"},
        {"bed_time": "25:00"},
        {"nap_time": "14:00"},
    ])
    async def test_invalid_preferences(self, db_session, kwargs):
        with pytest.raises(ValidationError):
            await preferences_service.upsert_preferences(5, db=db_session, **kwargs)

    @pytest.mark.asyncio
    async def test_patient_timezone(self, db_session, chicago_patient):
        assert await preferences_service.get_patient_timezone(1, db=db_session) == "America/Chicago"
        assert await preferences_service.get_patient_timezone(2, db=db_session) is None

    @pytest.mark.unit
    def test_zone_resolution(self, db_session, make_preferences):
        make_preferences(patient_id=2, timezone=None)
        with pytest.raises(PreferencesMissingError):
            preferences_service.load_zone(db_session, 2)
        assert preferences_service.load_zone_or_utc(db_session, 2).key == "UTC"

    @pytest.mark.asyncio
    async def test_suggested_times_follow_meals(self, db_session, make_preferences):
        make_preferences(patient_id=3, breakfast_time="06:45", dinner_time="19:15")
        result = await preferences_service.suggest_times(3, "twice_daily", db=db_session)
        assert result["times"] == ["06:45", "19:15"]
