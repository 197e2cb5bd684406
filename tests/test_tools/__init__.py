"""
Test Tools Package
Tests for the tools module (time buckets, notification dispatch)
"""

__all__ = [
    "test_time_buckets",
    "test_notification_service",
]
