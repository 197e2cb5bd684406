"""
Event Schemas
Pydantic models for dose event API requests and responses
"""

from typing import Optional, List, Dict, Any
from datetime import datetime, date
from pydantic import BaseModel, Field, ConfigDict

from models import EventType, TimeBucket


# ==================== REQUEST SCHEMAS ====================

class DoseTaken(BaseModel):
    """Schema for recording a taken dose"""
    command_id: int
    scheduled_for: Optional[datetime] = None
    actual_at: Optional[datetime] = None
    dose_percentage: Optional[float] = Field(None, gt=0, le=100)
    actual_dose: Optional[str] = Field(None, max_length=100)
    original_event_id: Optional[int] = None
    notes: Optional[str] = None
    created_by: str = Field(default="patient", max_length=100)


class DoseOutcome(BaseModel):
    """Schema for a missed, skipped or snoozed dose"""
    command_id: int
    scheduled_for: datetime
    notes: Optional[str] = Field(None, max_length=500)
    created_by: str = Field(default="patient", max_length=100)


class UndoRequest(BaseModel):
    """Schema for undoing a taken dose"""
    reason: Optional[str] = Field(None, max_length=500)
    actor: str = Field(default="patient", max_length=100)


class CorrectionRequest(BaseModel):
    """Schema for correcting an earlier event"""
    corrected_action: str = Field(..., pattern="^(missed|skipped)$")
    reason: str = Field(..., min_length=1, max_length=500)
    actor: str = Field(default="patient", max_length=100)


# ==================== RESPONSE SCHEMAS ====================

class EventResponse(BaseModel):
    """Schema for event response"""
    id: int
    command_id: int
    patient_id: int
    event_type: EventType
    scheduled_for: Optional[datetime] = None
    actual_at: Optional[datetime] = None
    is_on_time: Optional[bool] = None
    minutes_late: Optional[float] = None
    grace_period_minutes: Optional[int] = None
    time_bucket: Optional[TimeBucket] = None
    event_timestamp: datetime
    prescribed_dose: Optional[str] = None
    actual_dose: Optional[str] = None
    dose_percentage: Optional[float] = None
    original_event_id: Optional[int] = None
    undo_reason: Optional[str] = None
    corrected_action: Optional[str] = None
    notes: Optional[str] = None
    correlation_id: str
    created_by: Optional[str] = None
    is_archived: bool
    archived_at: Optional[datetime] = None
    belongs_to_date: Optional[date] = None
    daily_summary_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class AdherenceImpactResponse(BaseModel):
    previous_score: Optional[float] = None
    new_score: Optional[float] = None
    previous_streak: int
    new_streak: int
    streak_impact: str


class UndoResponse(BaseModel):
    """Undo event plus its effect on adherence"""
    undo_event: EventResponse
    original_event_id: int
    impact: AdherenceImpactResponse


class TodayItem(BaseModel):
    """Today's occurrence with its live state"""
    command_id: int
    patient_id: int
    medication_name: str
    dosage: str
    scheduled_for: datetime
    local_date: date
    local_time: str
    time_bucket: str
    state: str
    taken_event_id: Optional[int] = None
    correlation_id: Optional[str] = None


class UndoEligibility(BaseModel):
    event_id: int
    can_undo: bool
    requires_correction: bool
    too_old: bool
    elapsed_seconds: float
    correction_deadline: datetime
    reason: Optional[str] = None
