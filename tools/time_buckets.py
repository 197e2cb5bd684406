"""
Time & Bucket Calculator
Timezone-aware date math, time-of-day buckets and grace periods.

All instants handled here are UTC. Naive datetimes are treated as UTC and
results are returned as naive UTC, matching how timestamps are stored.
Local wall-clock conversion always goes through zoneinfo so DST days come
out as 23 or 25 hours long.
"""

import logging
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, date, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import engine_config


logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


@dataclass
class DayAnchors:
    """Lifestyle anchors used to bucket a patient's day"""
    wake_time: time = field(default_factory=lambda: time(7, 0))
    bed_time: time = field(default_factory=lambda: time(22, 0))
    breakfast_time: Optional[time] = field(default_factory=lambda: time(8, 0))
    lunch_time: Optional[time] = field(default_factory=lambda: time(12, 0))
    dinner_time: Optional[time] = field(default_factory=lambda: time(18, 0))

    @classmethod
    def from_preferences(cls, prefs) -> "DayAnchors":
        """Build anchors from a PatientTimePreferences row (or None)"""
        if prefs is None:
            return cls()
        return cls(
            wake_time=parse_hhmm(prefs.wake_time or engine_config.DEFAULT_WAKE_TIME),
            bed_time=parse_hhmm(prefs.bed_time or engine_config.DEFAULT_BED_TIME),
            breakfast_time=parse_hhmm(prefs.breakfast_time) if prefs.breakfast_time else None,
            lunch_time=parse_hhmm(prefs.lunch_time) if prefs.lunch_time else None,
            dinner_time=parse_hhmm(prefs.dinner_time) if prefs.dinner_time else None,
        )


# ==================== PARSING ====================

def parse_hhmm(value: str) -> time:
    """Parse a strict HH:MM string; raises ValueError when malformed"""
    if not isinstance(value, str) or len(value) != 5 or value[2] != ":":
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    hours, minutes = value[:2], value[3:]
    if not (hours.isdigit() and minutes.isdigit()):
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    h, m = int(hours), int(minutes)
    if h > 23 or m > 59:
        raise ValueError(f"Invalid time '{value}', out of range")
    return time(h, m)


def format_hhmm(t: time) -> str:
    return f"{t.hour:02d}:{t.minute:02d}"


def get_zone(name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA timezone name; raises ValueError when unknown"""
    if not name:
        raise ValueError("Timezone is not set")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone '{name}'") from e


def is_valid_timezone(name: Optional[str]) -> bool:
    try:
        get_zone(name)
        return True
    except ValueError:
        return False


# ==================== INSTANT <-> LOCAL ====================

def utc_now() -> datetime:
    """Current instant as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_aware_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def to_naive_utc(instant: datetime) -> datetime:
    return _as_aware_utc(instant).replace(tzinfo=None)


def to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    return _as_aware_utc(instant).astimezone(tz)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    return to_local(instant, tz).date()


def local_time_of_day(instant: datetime, tz: ZoneInfo) -> time:
    return to_local(instant, tz).time().replace(second=0, microsecond=0)


def local_to_utc(day: date, at: time, tz: ZoneInfo) -> datetime:
    """
    Convert a local wall-clock time to naive UTC.

    Nonexistent times (spring-forward gap) resolve with the pre-transition
    offset, which lands them after the gap. Ambiguous times (fall-back)
    resolve to their first occurrence.
    """
    local = datetime.combine(day, at).replace(tzinfo=tz, fold=0)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


# ==================== DAY BOUNDARIES ====================

def day_boundaries(day: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """Half-open UTC interval [start, end) covering a local calendar day"""
    start = local_to_utc(day, time(0, 0), tz)
    end = local_to_utc(day + timedelta(days=1), time(0, 0), tz)
    return start, end


def is_within_midnight_window(
    instant: datetime,
    tz: ZoneInfo,
    window_minutes: Optional[int] = None
) -> bool:
    """True when instant is within window_minutes of a local midnight"""
    if window_minutes is None:
        window_minutes = engine_config.MIDNIGHT_WINDOW_MINUTES
    now_utc = to_naive_utc(instant)
    today = local_date(instant, tz)
    window = timedelta(minutes=window_minutes)

    last_midnight = local_to_utc(today, time(0, 0), tz)
    next_midnight = local_to_utc(today + timedelta(days=1), time(0, 0), tz)
    return (now_utc - last_midnight) <= window or (next_midnight - now_utc) <= window


def closing_date(instant: datetime, tz: ZoneInfo) -> date:
    """The local day a reset run at `instant` closes: the day before today"""
    return local_date(instant, tz) - timedelta(days=1)


# ==================== BUCKETS & GRACE ====================

def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def _since_wake(t: time, wake: time) -> int:
    return (_minutes(t) - _minutes(wake)) % MINUTES_PER_DAY


def classify_time_bucket(local_time: time, anchors: Optional[DayAnchors] = None) -> str:
    """
    Bucket a local time of day relative to the patient's wake time.

    Offsets wrap at 24h so a night-shift schedule (wake 19:00, bed 11:00)
    buckets the same way as a day schedule.
    """
    anchors = anchors or DayAnchors()
    offset = _since_wake(local_time, anchors.wake_time)
    awake_span = _since_wake(anchors.bed_time, anchors.wake_time) or MINUTES_PER_DAY

    if anchors.lunch_time and anchors.dinner_time:
        morning_end = _since_wake(anchors.lunch_time, anchors.wake_time) - 60
        afternoon_end = _since_wake(anchors.dinner_time, anchors.wake_time) - 60
    else:
        morning_end = awake_span // 3
        afternoon_end = 2 * awake_span // 3
    evening_end = max(awake_span - 90, afternoon_end)

    if offset < morning_end:
        return "morning"
    if offset < afternoon_end:
        return "afternoon"
    if offset < evening_end:
        return "evening"
    return "bedtime"


def grace_period_minutes(
    medication_class: str,
    bucket: str,
    override: Optional[int] = None
) -> int:
    """Grace period for a class/bucket pair, a per-command override wins"""
    if override is not None:
        return override
    medication_class = getattr(medication_class, "value", medication_class)
    bucket = getattr(bucket, "value", bucket)
    if bucket == "noon":
        bucket = "afternoon"
    table = engine_config.GRACE_PERIODS.get(medication_class, engine_config.GRACE_PERIODS["standard"])
    return table.get(bucket, table["morning"])


def classify_medication(name: str) -> str:
    """Infer the medication class from its name"""
    lowered = (name or "").lower()
    if any(keyword in lowered for keyword in engine_config.CRITICAL_MEDICATION_KEYWORDS):
        return "critical"
    if any(keyword in lowered for keyword in engine_config.VITAMIN_KEYWORDS):
        return "vitamin"
    return "standard"


def evaluate_timing(
    scheduled_for: Optional[datetime],
    actual_at: datetime,
    grace_minutes: int
) -> Tuple[Optional[float], Optional[bool]]:
    """Minutes late (negative when early) and whether that is on time"""
    if scheduled_for is None:
        return None, None
    late = (to_naive_utc(actual_at) - to_naive_utc(scheduled_for)).total_seconds() / 60
    late = round(late, 2)
    return late, -grace_minutes <= late <= grace_minutes


# ==================== SUGGESTED TIMES ====================

def default_times_for_frequency(frequency: str, anchors: Optional[DayAnchors] = None) -> List[str]:
    """Suggest dose times for a frequency from the patient's meal anchors"""
    anchors = anchors or DayAnchors()
    frequency = getattr(frequency, "value", frequency)

    breakfast = anchors.breakfast_time or anchors.wake_time
    lunch = anchors.lunch_time or time(12, 0)
    dinner = anchors.dinner_time or time(18, 0)
    bedtime_minutes = (_minutes(anchors.bed_time) - 30) % MINUTES_PER_DAY
    bedtime = time(bedtime_minutes // 60, bedtime_minutes % 60)

    suggestions: Dict[str, List[time]] = {
        "daily": [breakfast],
        "weekly": [breakfast],
        "twice_daily": [breakfast, dinner],
        "three_times_daily": [breakfast, lunch, dinner],
        "four_times_daily": [breakfast, lunch, dinner, bedtime],
    }
    return [format_hhmm(t) for t in suggestions.get(frequency, [])]
