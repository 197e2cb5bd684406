"""
API Dependencies
Common dependencies for FastAPI endpoints
"""

# Session dependency shared by every router
from database import get_db  # noqa: F401


class ServiceDependency:
    """
    Dependency injection for services
    """

    @staticmethod
    def get_preferences_service():
        from services.preferences_service import preferences_service
        return preferences_service

    @staticmethod
    def get_command_service():
        from services.command_service import command_service
        return command_service

    @staticmethod
    def get_event_service():
        from services.event_service import event_service
        return event_service

    @staticmethod
    def get_undo_service():
        from services.undo_service import undo_service
        return undo_service

    @staticmethod
    def get_analytics_service():
        from services.adherence_analytics_service import adherence_analytics_service
        return adherence_analytics_service

    @staticmethod
    def get_daily_reset_service():
        from services.daily_reset_service import daily_reset_service
        return daily_reset_service


# Service dependency instances
services = ServiceDependency()
