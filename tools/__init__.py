"""
Tools Package
Time calculations and notification dispatch for the MedTrack engine
"""

from .time_buckets import (
    DayAnchors,
    classify_medication,
    classify_time_bucket,
    closing_date,
    day_boundaries,
    default_times_for_frequency,
    grace_period_minutes,
    is_within_midnight_window,
    local_date,
    utc_now,
)

from .notification_service import (
    NotificationDispatcher,
    NotificationIntent,
    NotificationType,
    NotificationUrgency,
    notification_dispatcher,
)


__all__ = [
    "DayAnchors",
    "classify_medication",
    "classify_time_bucket",
    "closing_date",
    "day_boundaries",
    "default_times_for_frequency",
    "grace_period_minutes",
    "is_within_midnight_window",
    "local_date",
    "utc_now",
    "NotificationDispatcher",
    "NotificationIntent",
    "NotificationType",
    "NotificationUrgency",
    "notification_dispatcher",
]
