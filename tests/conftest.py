"""
Pytest Configuration and Shared Fixtures
========================================

This module provides shared fixtures for all MedTrack engine tests.
Fixtures include database sessions, a controllable clock, test clients
and sample data factories.
"""

import os
import sys
from datetime import datetime, date, timedelta
from typing import Generator, Dict, Any, List, Optional

# Keep the app's own engine off the filesystem during tests
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker, Session

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db, make_engine
from models import (
    PatientTimePreferences, MedicationCommand, MedicationScheduleRevision,
    MedicationEvent, DailySummary, CommandStatus, Frequency, MedicationClass,
)
from services.command_service import command_service
from services.event_service import event_service
from services.adherence_analytics_service import adherence_analytics_service
from services.undo_service import undo_service
from services.daily_reset_service import daily_reset_service
from tools.notification_service import notification_dispatcher
from app import app


CHICAGO = "America/Chicago"


class FakeClock:
    """Callable clock returning a settable naive-UTC instant"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite"""
    engine = make_engine("sqlite:///:memory:")

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a test database session"""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine
    )

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with database override"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ==================== CLOCK FIXTURES ====================

@pytest.fixture
def clock(monkeypatch) -> FakeClock:
    """
    Freeze every service singleton on a shared fake clock.

    Starts at 2024-03-05 14:00 UTC, which is 08:00 in Chicago (CST).
    """
    fake = FakeClock(datetime(2024, 3, 5, 14, 0, 0))
    for service in (
        command_service, event_service, adherence_analytics_service,
        undo_service, daily_reset_service,
    ):
        monkeypatch.setattr(service, "clock", fake)
    return fake


@pytest.fixture(autouse=True)
def reset_notifications():
    """Start each test with an empty notification history"""
    notification_dispatcher.history.clear()
    yield
    notification_dispatcher.history.clear()


# ==================== SAMPLE DATA FIXTURES ====================

@pytest.fixture
def make_preferences(db_session: Session):
    """Factory for patient time preferences"""
    def _make(patient_id: int = 1, timezone: Optional[str] = CHICAGO, **anchors) -> PatientTimePreferences:
        values = {
            "wake_time": "07:00",
            "bed_time": "22:00",
            "breakfast_time": "08:00",
            "lunch_time": "12:00",
            "dinner_time": "18:00",
        }
        values.update(anchors)
        prefs = PatientTimePreferences(patient_id=patient_id, timezone=timezone, version=1, **values)
        db_session.add(prefs)
        db_session.commit()
        db_session.refresh(prefs)
        return prefs

    return _make


@pytest.fixture
def make_command(db_session: Session):
    """Factory for active medication commands with a first schedule revision"""
    def _make(
        patient_id: int = 1,
        medication_name: str = "Lisinopril",
        dosage: str = "10mg",
        frequency: Frequency = Frequency.TWICE_DAILY,
        times: Optional[List[str]] = None,
        start_date: date = date(2024, 3, 1),
        end_date: Optional[date] = None,
        medication_class: MedicationClass = MedicationClass.STANDARD,
        status: CommandStatus = CommandStatus.ACTIVE,
        is_prn: bool = False,
        days_of_week: Optional[List[int]] = None,
        **extra
    ) -> MedicationCommand:
        times = ["08:00", "20:00"] if times is None else times
        command = MedicationCommand(
            patient_id=patient_id,
            medication_name=medication_name,
            dosage=dosage,
            frequency=frequency,
            times=times,
            days_of_week=days_of_week,
            start_date=start_date,
            end_date=end_date,
            medication_class=medication_class,
            status=status,
            is_prn=is_prn,
            version=1,
            reminders_enabled=extra.pop("reminders_enabled", True),
            reminder_minutes_before=extra.pop("reminder_minutes_before", [15]),
            created_at=datetime(2024, 3, 1),
            updated_at=datetime(2024, 3, 1),
            **extra
        )
        db_session.add(command)
        db_session.flush()
        db_session.add(MedicationScheduleRevision(
            command_id=command.id,
            revision=1,
            frequency=frequency,
            times=times,
            days_of_week=days_of_week,
            effective_from=start_date,
        ))
        db_session.commit()
        db_session.refresh(command)
        return command

    return _make


@pytest.fixture
def chicago_patient(make_preferences) -> PatientTimePreferences:
    """Patient 1 living in Chicago with default anchors"""
    return make_preferences(patient_id=1, timezone=CHICAGO)


@pytest.fixture
def twice_daily(chicago_patient, make_command) -> MedicationCommand:
    """Twice daily command at 08:00 and 20:00 local"""
    return make_command(patient_id=chicago_patient.patient_id)


@pytest.fixture
def command_payload() -> Dict[str, Any]:
    """Sample payload for creating a command through the API"""
    return {
        "patient_id": 1,
        "medication_name": "Metformin",
        "dosage": "500mg",
        "frequency": "twice_daily",
        "times": ["08:00", "20:00"],
        "start_date": "2024-03-01",
        "reminder_minutes_before": [15],
    }


# ==================== PYTEST CONFIGURATION ====================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "api: mark test as an API test")
    config.addinivalue_line("markers", "database: mark test as requiring database")
