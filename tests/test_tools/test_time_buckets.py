"""
Tests for Time & Bucket Calculator
Timezone math, DST day lengths, buckets and grace periods
"""

import pytest
from datetime import datetime, date, time, timedelta, timezone
from zoneinfo import ZoneInfo

from tools.time_buckets import (
    DayAnchors,
    classify_medication,
    classify_time_bucket,
    closing_date,
    day_boundaries,
    default_times_for_frequency,
    evaluate_timing,
    get_zone,
    grace_period_minutes,
    is_within_midnight_window,
    local_date,
    local_to_utc,
    parse_hhmm,
    to_local,
)


CHICAGO = ZoneInfo("America/Chicago")


# ==================== PARSING ====================

class TestParsing:
    """Tests for HH:MM parsing and timezone resolution"""

    @pytest.mark.unit
    def test_parse_valid_time(self):
        assert parse_hhmm("08:30") == time(8, 30)
        assert parse_hhmm("23:59") == time(23, 59)

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["8:00", "24:00", "12:60", "ab:cd", "", None, "08-00"])
    def test_parse_invalid_time(self, value):
        with pytest.raises(ValueError):
            parse_hhmm(value)

    @pytest.mark.unit
    def test_unknown_timezone(self):
        with pytest.raises(ValueError):
            get_zone("Mars/Olympus_Mons")
        with pytest.raises(ValueError):
            get_zone(None)


# ==================== LOCAL CONVERSION ====================

class TestLocalConversion:
    """Tests for instant to local conversions"""

    @pytest.mark.unit
    def test_naive_instant_is_utc(self):
        local = to_local(datetime(2024, 3, 5, 14, 0), CHICAGO)
        assert local.hour == 8
        assert local.date() == date(2024, 3, 5)

    @pytest.mark.unit
    def test_aware_instant_is_respected(self):
        instant = datetime(2024, 3, 5, 9, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert to_local(instant, CHICAGO).hour == 8

    @pytest.mark.unit
    def test_local_date_crosses_midnight(self):
        # 03:00 UTC is 21:00 the previous evening in Chicago
        assert local_date(datetime(2024, 3, 6, 3, 0), CHICAGO) == date(2024, 3, 5)

    @pytest.mark.unit
    def test_nonexistent_time_shifts_forward(self):
        # 02:30 does not exist on 2024-03-10 in Chicago
        utc = local_to_utc(date(2024, 3, 10), time(2, 30), CHICAGO)
        assert utc == datetime(2024, 3, 10, 8, 30)
        assert to_local(utc, CHICAGO).time() == time(3, 30)

    @pytest.mark.unit
    def test_ambiguous_time_uses_first_occurrence(self):
        utc = local_to_utc(date(2024, 11, 3), time(1, 30), CHICAGO)
        assert utc == datetime(2024, 11, 3, 6, 30)


# ==================== DAY BOUNDARIES ====================

class TestDayBoundaries:
    """Tests for local day boundaries across DST"""

    @pytest.mark.unit
    def test_regular_day_is_24_hours(self):
        start, end = day_boundaries(date(2024, 3, 5), CHICAGO)
        assert start == datetime(2024, 3, 5, 6, 0)
        assert end - start == timedelta(hours=24)

    @pytest.mark.unit
    def test_spring_forward_day_is_23_hours(self):
        start, end = day_boundaries(date(2024, 3, 10), CHICAGO)
        assert start == datetime(2024, 3, 10, 6, 0)
        assert end == datetime(2024, 3, 11, 5, 0)
        assert end - start == timedelta(hours=23)

    @pytest.mark.unit
    def test_fall_back_day_is_25_hours(self):
        start, end = day_boundaries(date(2024, 11, 3), CHICAGO)
        assert end - start == timedelta(hours=25)

    @pytest.mark.unit
    def test_consecutive_days_tile_without_gaps(self):
        _, end = day_boundaries(date(2024, 3, 9), CHICAGO)
        start, _ = day_boundaries(date(2024, 3, 10), CHICAGO)
        assert end == start


# ==================== MIDNIGHT WINDOW ====================

class TestMidnightWindow:
    """Tests for the archival trigger window"""

    @pytest.mark.unit
    def test_just_after_midnight(self):
        # 00:05 CST
        assert is_within_midnight_window(datetime(2024, 3, 6, 6, 5), CHICAGO)

    @pytest.mark.unit
    def test_just_before_midnight(self):
        # 23:50 CST
        assert is_within_midnight_window(datetime(2024, 3, 6, 5, 50), CHICAGO)

    @pytest.mark.unit
    def test_window_edge_is_inclusive(self):
        assert is_within_midnight_window(datetime(2024, 3, 6, 6, 15), CHICAGO)
        assert not is_within_midnight_window(datetime(2024, 3, 6, 6, 16), CHICAGO)

    @pytest.mark.unit
    def test_midday_is_outside(self):
        assert not is_within_midnight_window(datetime(2024, 3, 5, 18, 0), CHICAGO)

    @pytest.mark.unit
    def test_midnight_after_spring_forward(self):
        # Local midnight ending 2024-03-10 is 05:00 UTC (CDT)
        assert is_within_midnight_window(datetime(2024, 3, 11, 5, 10), CHICAGO)
        assert not is_within_midnight_window(datetime(2024, 3, 11, 6, 10), CHICAGO)

    @pytest.mark.unit
    def test_closing_date_is_previous_local_day(self):
        assert closing_date(datetime(2024, 3, 6, 6, 5), CHICAGO) == date(2024, 3, 5)
        assert closing_date(datetime(2024, 3, 11, 5, 10), CHICAGO) == date(2024, 3, 10)


# ==================== BUCKETS ====================

class TestTimeBuckets:
    """Tests for time-of-day bucketing"""

    @pytest.mark.unit
    @pytest.mark.parametrize("local, bucket", [
        (time(7, 0), "morning"),
        (time(8, 0), "morning"),
        (time(11, 0), "afternoon"),
        (time(12, 0), "afternoon"),
        (time(17, 30), "evening"),
        (time(20, 0), "evening"),
        (time(21, 0), "bedtime"),
        (time(3, 0), "bedtime"),
    ])
    def test_default_day(self, local, bucket):
        assert classify_time_bucket(local, DayAnchors()) == bucket

    @pytest.mark.unit
    def test_night_shift_schedule(self):
        anchors = DayAnchors(
            wake_time=time(19, 0),
            bed_time=time(11, 0),
            breakfast_time=time(19, 30),
            lunch_time=time(0, 0),
            dinner_time=time(6, 0),
        )
        assert classify_time_bucket(time(20, 0), anchors) == "morning"
        assert classify_time_bucket(time(1, 0), anchors) == "afternoon"
        assert classify_time_bucket(time(8, 0), anchors) == "evening"
        assert classify_time_bucket(time(15, 0), anchors) == "bedtime"

    @pytest.mark.unit
    def test_missing_meals_fall_back_to_thirds(self):
        anchors = DayAnchors(breakfast_time=None, lunch_time=None, dinner_time=None)
        # waking span 07:00-22:00 is 900 minutes, thirds at 12:00 and 17:00
        assert classify_time_bucket(time(9, 0), anchors) == "morning"
        assert classify_time_bucket(time(13, 0), anchors) == "afternoon"
        assert classify_time_bucket(time(18, 0), anchors) == "evening"
        assert classify_time_bucket(time(21, 0), anchors) == "bedtime"


# ==================== GRACE PERIODS ====================

class TestGracePeriods:
    """Tests for class/bucket grace periods"""

    @pytest.mark.unit
    @pytest.mark.parametrize("med_class, bucket, minutes", [
        ("critical", "morning", 15),
        ("critical", "bedtime", 30),
        ("standard", "afternoon", 45),
        ("vitamin", "afternoon", 180),
        ("vitamin", "bedtime", 240),
        ("prn", "evening", 0),
    ])
    def test_table(self, med_class, bucket, minutes):
        assert grace_period_minutes(med_class, bucket) == minutes

    @pytest.mark.unit
    def test_noon_maps_to_afternoon(self):
        assert grace_period_minutes("critical", "noon") == 20

    @pytest.mark.unit
    def test_override_wins(self):
        assert grace_period_minutes("vitamin", "morning", override=5) == 5

    @pytest.mark.unit
    def test_unknown_class_uses_standard(self):
        assert grace_period_minutes("mystery", "morning") == 30

    @pytest.mark.unit
    def test_classify_medication(self):
        assert classify_medication("Insulin Glargine") == "critical"
        assert classify_medication("Spironolactone") == "critical"
        assert classify_medication("Vitamin D3") == "vitamin"
        assert classify_medication("Fish Oil 1000mg") == "vitamin"
        assert classify_medication("Ibuprofen") == "standard"


# ==================== TIMING ====================

class TestTiming:
    """Tests for lateness evaluation"""

    @pytest.mark.unit
    def test_late_within_grace(self):
        late, on_time = evaluate_timing(datetime(2024, 3, 5, 14, 0), datetime(2024, 3, 5, 14, 20), 30)
        assert late == 20.0
        assert on_time is True

    @pytest.mark.unit
    def test_late_beyond_grace(self):
        late, on_time = evaluate_timing(datetime(2024, 3, 5, 14, 0), datetime(2024, 3, 5, 14, 31), 30)
        assert late == 31.0
        assert on_time is False

    @pytest.mark.unit
    def test_early_within_grace(self):
        late, on_time = evaluate_timing(datetime(2024, 3, 5, 14, 0), datetime(2024, 3, 5, 13, 30), 30)
        assert late == -30.0
        assert on_time is True

    @pytest.mark.unit
    def test_unscheduled_dose_has_no_timing(self):
        assert evaluate_timing(None, datetime(2024, 3, 5, 14, 0), 30) == (None, None)


# ==================== SUGGESTED TIMES ====================

class TestSuggestedTimes:
    """Tests for frequency-based time suggestions"""

    @pytest.mark.unit
    def test_frequencies(self):
        anchors = DayAnchors()
        assert default_times_for_frequency("daily", anchors) == ["08:00"]
        assert default_times_for_frequency("twice_daily", anchors) == ["08:00", "18:00"]
        assert default_times_for_frequency("three_times_daily", anchors) == ["08:00", "12:00", "18:00"]
        assert default_times_for_frequency("four_times_daily", anchors) == ["08:00", "12:00", "18:00", "21:30"]

    @pytest.mark.unit
    def test_as_needed_has_no_times(self):
        assert default_times_for_frequency("as_needed") == []
