"""
Configuration management for MedTrack Engine
"""

from typing import Dict, List
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "MedTrack Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./medtrack.db"
    DATABASE_ECHO: bool = False

    # Daily reset job
    DAILY_RESET_ENABLED: bool = False
    DAILY_RESET_INTERVAL_MINUTES: int = 15
    DAILY_RESET_MAX_WORKERS: int = 8

    # Notifications
    NOTIFICATIONS_ENABLED: bool = True

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class EngineConfig:
    """Domain constants for the command/event engine"""

    # Undo / correction windows
    UNDO_WINDOW_SECONDS: int = 30
    CORRECTION_WINDOW_HOURS: int = 24

    # Duplicate dose detection (minutes either side of scheduled time)
    DUPLICATE_WINDOW_MINUTES: int = 60

    # Daily reset
    MIDNIGHT_WINDOW_MINUTES: int = 15
    ARCHIVE_BATCH_SIZE: int = 500
    ARCHIVE_REASON: str = "daily_reset"

    # Analytics
    TREND_THRESHOLD: float = 5.0
    RISK_LOW_THRESHOLD: float = 90.0
    RISK_MEDIUM_THRESHOLD: float = 70.0
    RISK_HIGH_THRESHOLD: float = 50.0
    CONSECUTIVE_MISSED_ESCALATION: int = 3
    ALERT_WINDOW_DAYS: int = 7
    FULL_DOSE_PERCENTAGE: float = 100.0

    # Grace periods in minutes, by medication class then time bucket
    GRACE_PERIODS: Dict[str, Dict[str, int]] = {
        "critical": {"morning": 15, "afternoon": 20, "evening": 15, "bedtime": 30},
        "standard": {"morning": 30, "afternoon": 45, "evening": 30, "bedtime": 60},
        "vitamin": {"morning": 120, "afternoon": 180, "evening": 120, "bedtime": 240},
        "prn": {"morning": 0, "afternoon": 0, "evening": 0, "bedtime": 0},
    }

    # Default lifestyle anchors when a patient has none stored
    DEFAULT_WAKE_TIME: str = "07:00"
    DEFAULT_BED_TIME: str = "22:00"
    DEFAULT_BREAKFAST_TIME: str = "08:00"
    DEFAULT_LUNCH_TIME: str = "12:00"
    DEFAULT_DINNER_TIME: str = "18:00"

    CRITICAL_MEDICATION_KEYWORDS: List[str] = [
        "insulin", "metformin", "lisinopril", "atorvastatin", "metoprolol",
        "warfarin", "digoxin", "levothyroxine", "prednisone", "amlodipine",
        "losartan", "carvedilol", "enalapril", "furosemide", "spironolactone",
        "diltiazem", "verapamil", "propranolol", "atenolol", "bisoprolol",
    ]
    VITAMIN_KEYWORDS: List[str] = [
        "vitamin", "supplement", "calcium", "iron", "magnesium", "zinc",
        "multivitamin", "omega", "fish oil", "coq10", "biotin", "folic acid",
        "b12", "b6", "probiotic", "melatonin",
    ]


# Database table names
class TableNames:
    TIME_PREFERENCES = "patient_time_preferences"
    COMMANDS = "medication_commands"
    SCHEDULE_REVISIONS = "medication_schedule_revisions"
    EVENTS = "medication_events"
    DAILY_SUMMARIES = "medication_daily_summaries"
    RESET_EXECUTIONS = "daily_reset_executions"


settings = get_settings()
engine_config = EngineConfig()
