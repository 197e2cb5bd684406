"""
Database Models
SQLAlchemy ORM models for MedTrack Engine
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, Float, DateTime, ForeignKey, Text, Date,
    Enum, Index, UniqueConstraint, JSON, event, inspect,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict

from config import TableNames
from database import Base
from exceptions import ImmutableEventError


# ==================== ENUMS ====================

class CommandStatus(str, PyEnum):
    """Lifecycle state of a medication command"""
    ACTIVE = "active"
    PAUSED = "paused"
    HELD = "held"
    DISCONTINUED = "discontinued"
    COMPLETED = "completed"


TERMINAL_STATUSES = {CommandStatus.DISCONTINUED, CommandStatus.COMPLETED}


class MedicationClass(str, PyEnum):
    """Drives the grace period applied to a dose"""
    CRITICAL = "critical"
    STANDARD = "standard"
    VITAMIN = "vitamin"
    PRN = "prn"


class Frequency(str, PyEnum):
    """Schedule frequency of a command"""
    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    WEEKLY = "weekly"
    AS_NEEDED = "as_needed"
    CUSTOM = "custom"


class EventType(str, PyEnum):
    """Kinds of facts recorded in the event log"""
    DOSE_SCHEDULED = "dose_scheduled"
    DOSE_TAKEN_FULL = "dose_taken_full"
    DOSE_TAKEN_PARTIAL = "dose_taken_partial"
    DOSE_MISSED = "dose_missed"
    DOSE_SKIPPED = "dose_skipped"
    DOSE_SNOOZED = "dose_snoozed"
    DOSE_TAKEN_UNDONE = "dose_taken_undone"
    DOSE_MISSED_CORRECTED = "dose_missed_corrected"
    DOSE_SKIPPED_CORRECTED = "dose_skipped_corrected"


TAKEN_EVENT_TYPES = {EventType.DOSE_TAKEN_FULL, EventType.DOSE_TAKEN_PARTIAL}
CORRECTION_EVENT_TYPES = {EventType.DOSE_MISSED_CORRECTED, EventType.DOSE_SKIPPED_CORRECTED}


class TimeBucket(str, PyEnum):
    """Part of the patient's day a dose falls into"""
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    BEDTIME = "bedtime"


# ==================== MODELS ====================

class PatientTimePreferences(Base):
    """Timezone and lifestyle anchors for a patient"""
    __tablename__ = TableNames.TIME_PREFERENCES

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, unique=True, nullable=False, index=True)
    timezone = Column(String(64), nullable=True)  # IANA name

    # Lifestyle anchors as HH:MM
    wake_time = Column(String(5), default="07:00")
    bed_time = Column(String(5), default="22:00")
    breakfast_time = Column(String(5), nullable=True)
    lunch_time = Column(String(5), nullable=True)
    dinner_time = Column(String(5), nullable=True)

    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MedicationCommand(Base):
    """A prescribed medication with its schedule and lifecycle"""
    __tablename__ = TableNames.COMMANDS

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, nullable=False, index=True)

    # Medication descriptor
    medication_name = Column(String(200), nullable=False)
    dosage = Column(String(100), nullable=False)
    instructions = Column(Text)
    medication_class = Column(Enum(MedicationClass), default=MedicationClass.STANDARD)
    grace_period_minutes = Column(Integer, nullable=True)  # override

    # Schedule descriptor (current revision, mirrored from schedule_revisions)
    frequency = Column(Enum(Frequency), nullable=False)
    times = Column(JSON, default=list)  # ["08:00", "20:00"]
    days_of_week = Column(JSON, nullable=True)  # [0..6], Monday=0
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    is_indefinite = Column(Boolean, default=False)

    # Reminder policy
    reminders_enabled = Column(Boolean, default=True)
    reminder_minutes_before = Column(JSON, default=list)

    # Lifecycle
    status = Column(Enum(CommandStatus), default=CommandStatus.ACTIVE, nullable=False)
    status_reason = Column(Text)
    is_prn = Column(Boolean, default=False)

    version = Column(Integer, default=1, nullable=False)
    created_by = Column(String(100))
    updated_by = Column(String(100))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    revisions = relationship(
        "MedicationScheduleRevision",
        back_populates="command",
        order_by="MedicationScheduleRevision.effective_from",
    )

    __table_args__ = (
        Index("ix_commands_patient_status", "patient_id", "status"),
    )


class MedicationScheduleRevision(Base):
    """Schedule in force for a command over a date range"""
    __tablename__ = TableNames.SCHEDULE_REVISIONS

    id = Column(Integer, primary_key=True, index=True)
    command_id = Column(Integer, ForeignKey(f"{TableNames.COMMANDS}.id"), nullable=False)
    revision = Column(Integer, nullable=False)
    frequency = Column(Enum(Frequency), nullable=False)
    times = Column(JSON, default=list)
    days_of_week = Column(JSON, nullable=True)
    effective_from = Column(Date, nullable=False)
    effective_until = Column(Date, nullable=True)  # inclusive
    created_at = Column(DateTime, default=datetime.utcnow)

    command = relationship("MedicationCommand", back_populates="revisions")

    __table_args__ = (
        UniqueConstraint("command_id", "revision", name="uq_schedule_revision"),
    )


class MedicationEvent(Base):
    """Append-only fact about a dose occurrence"""
    __tablename__ = TableNames.EVENTS

    id = Column(Integer, primary_key=True, index=True)
    command_id = Column(Integer, ForeignKey(f"{TableNames.COMMANDS}.id"), nullable=False)
    patient_id = Column(Integer, nullable=False, index=True)
    event_type = Column(Enum(EventType), nullable=False)

    # Timing
    scheduled_for = Column(DateTime, nullable=True)
    actual_at = Column(DateTime, nullable=True)
    is_on_time = Column(Boolean, nullable=True)
    minutes_late = Column(Float, nullable=True)
    grace_period_minutes = Column(Integer, nullable=True)
    time_bucket = Column(Enum(TimeBucket), nullable=True)
    event_timestamp = Column(DateTime, nullable=False)  # server-assigned

    # Dose accuracy
    prescribed_dose = Column(String(100))
    actual_dose = Column(String(100))
    dose_percentage = Column(Float, nullable=True)

    # Undo / correction
    original_event_id = Column(Integer, ForeignKey(f"{TableNames.EVENTS}.id"), nullable=True)
    undo_reason = Column(Text)
    corrected_action = Column(String(20), nullable=True)

    notes = Column(Text)
    correlation_id = Column(String(36), nullable=False, index=True)
    created_by = Column(String(100))

    # Archive (the only mutable block)
    is_archived = Column(Boolean, default=False, nullable=False)
    archived_at = Column(DateTime, nullable=True)
    archived_reason = Column(String(50), nullable=True)
    belongs_to_date = Column(Date, nullable=True)
    daily_summary_id = Column(Integer, ForeignKey(f"{TableNames.DAILY_SUMMARIES}.id"), nullable=True)

    __table_args__ = (
        Index("ix_events_patient_timestamp", "patient_id", "event_timestamp"),
        Index("ix_events_patient_belongs", "patient_id", "belongs_to_date"),
        Index("ix_events_command_scheduled", "command_id", "scheduled_for"),
    )


ARCHIVE_FIELDS = {
    "is_archived", "archived_at", "archived_reason", "belongs_to_date", "daily_summary_id",
}


@event.listens_for(MedicationEvent, "before_update")
def reject_event_mutation(mapper, connection, target):
    """Only archive fields may change on a stored event"""
    state = inspect(target)
    for attr in state.attrs:
        if attr.key in ARCHIVE_FIELDS:
            continue
        if attr.history.has_changes():
            raise ImmutableEventError(
                f"Event {target.id} field '{attr.key}' is immutable",
                event_id=target.id,
                field=attr.key,
            )


def mark_archived(query, values: Dict[str, Any]) -> int:
    """
    Bulk-set archive fields on the events a query selects

    Bulk updates skip mapper events, so the archive-only rule is checked here.
    """
    for key in values:
        if key not in ARCHIVE_FIELDS:
            raise ImmutableEventError(f"Event field '{key}' is immutable", field=key)
    return query.update(values, synchronize_session=False)


class DailySummary(Base):
    """Immutable per-patient record of one closed local day"""
    __tablename__ = TableNames.DAILY_SUMMARIES

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, nullable=False, index=True)
    summary_date = Column(Date, nullable=False)
    timezone = Column(String(64), nullable=False)

    total_scheduled = Column(Integer, default=0)
    total_taken = Column(Integer, default=0)
    total_taken_full = Column(Integer, default=0)
    total_taken_partial = Column(Integer, default=0)
    total_missed = Column(Integer, default=0)
    total_skipped = Column(Integer, default=0)
    total_snoozed = Column(Integer, default=0)
    total_undone = Column(Integer, default=0)
    total_corrected = Column(Integer, default=0)
    total_unscheduled_taken = Column(Integer, default=0)
    total_on_time = Column(Integer, default=0)

    adherence_rate = Column(Float, default=0.0)
    on_time_rate = Column(Float, default=0.0)
    average_delay_minutes = Column(Float, nullable=True)
    median_delay_minutes = Column(Float, nullable=True)
    max_delay_minutes = Column(Float, nullable=True)
    delay_samples = Column(JSON, default=list)

    missed_by_bucket = Column(JSON, default=dict)
    medication_breakdown = Column(JSON, default=dict)
    archived_event_ids = Column(JSON, default=list)
    total_archived = Column(Integer, default=0)

    created_by = Column(String(100), default="daily_reset")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("patient_id", "summary_date", name="uq_daily_summary_patient_date"),
    )


class DailyResetExecution(Base):
    """Run report of one daily reset batch"""
    __tablename__ = TableNames.RESET_EXECUTIONS

    id = Column(Integer, primary_key=True, index=True)
    started_at = Column(DateTime, nullable=False)
    duration_ms = Column(Integer, default=0)
    patients_checked = Column(Integer, default=0)
    patients_at_midnight = Column(Integer, default=0)
    successful = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    failed = Column(Integer, default=0)
    events_archived = Column(Integer, default=0)
    summaries_created = Column(Integer, default=0)
    failures = Column(JSON, default=list)
    dry_run = Column(Boolean, default=False)
