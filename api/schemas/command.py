"""
Command Schemas
Pydantic models for medication command API requests and responses
"""

from typing import Optional, List, Dict, Any
from datetime import datetime, date
from pydantic import BaseModel, Field, ConfigDict

from models import CommandStatus, Frequency, MedicationClass


# ==================== REQUEST SCHEMAS ====================

class CommandCreate(BaseModel):
    """Schema for creating a medication command"""
    patient_id: int
    medication_name: str = Field(..., max_length=200)
    dosage: str = Field(..., max_length=100)
    frequency: Frequency
    times: List[str] = Field(default_factory=list)
    start_date: date
    end_date: Optional[date] = None
    is_indefinite: bool = False
    days_of_week: Optional[List[int]] = None
    instructions: Optional[str] = None
    medication_class: Optional[MedicationClass] = None
    grace_period_minutes: Optional[int] = None
    is_prn: bool = False
    reminders_enabled: bool = True
    reminder_minutes_before: List[int] = Field(default_factory=list)
    created_by: str = Field(default="system", max_length=100)


class CommandUpdate(BaseModel):
    """Partial update guarded by the expected version"""
    expected_version: int = Field(..., ge=1)
    patch: Dict[str, Any]
    updated_by: str = Field(default="system", max_length=100)
    effective_from: Optional[date] = None


class StatusChange(BaseModel):
    """Schema for a lifecycle transition"""
    status: CommandStatus
    actor: str = Field(default="system", max_length=100)
    reason: Optional[str] = None
    expected_version: Optional[int] = None


# ==================== RESPONSE SCHEMAS ====================

class CommandResponse(BaseModel):
    """Schema for command response"""
    id: int
    patient_id: int
    medication_name: str
    dosage: str
    instructions: Optional[str] = None
    medication_class: MedicationClass
    grace_period_minutes: Optional[int] = None
    frequency: Frequency
    times: List[str]
    days_of_week: Optional[List[int]] = None
    start_date: date
    end_date: Optional[date] = None
    is_indefinite: bool
    reminders_enabled: bool
    reminder_minutes_before: List[int]
    status: CommandStatus
    status_reason: Optional[str] = None
    is_prn: bool
    version: int
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OccurrenceResponse(BaseModel):
    """One expected dose"""
    command_id: int
    patient_id: int
    scheduled_for: datetime
    local_date: date
    local_time: str
    time_bucket: str

    model_config = ConfigDict(from_attributes=True)
