"""
Services Module
Business logic layer for the MedTrack engine
"""

from services.preferences_service import PreferencesService, preferences_service
from services.command_service import CommandService, Occurrence, command_service
from services.event_service import ArchiveFilter, EventService, event_service
from services.adherence_analytics_service import (
    AdherenceAnalyticsService, DayStats, adherence_analytics_service, compute_day_stats,
)
from services.undo_service import UndoResult, UndoService, undo_service
from services.daily_reset_service import DailyResetReport, DailyResetService, daily_reset_service


__all__ = [
    # Service classes
    "PreferencesService",
    "CommandService",
    "EventService",
    "AdherenceAnalyticsService",
    "UndoService",
    "DailyResetService",
    # Value types
    "Occurrence",
    "ArchiveFilter",
    "DayStats",
    "UndoResult",
    "DailyResetReport",
    "compute_day_stats",
    # Singleton instances
    "preferences_service",
    "command_service",
    "event_service",
    "adherence_analytics_service",
    "undo_service",
    "daily_reset_service",
]
