"""
Archive Schemas
Pydantic models for daily reset and summary responses
"""

from typing import Optional, List, Dict, Any
from datetime import datetime, date
from pydantic import BaseModel, ConfigDict


class PatientResetRequest(BaseModel):
    closing_date: Optional[date] = None
    dry_run: bool = False


class PatientResetResponse(BaseModel):
    """Outcome of closing one patient's day"""
    patient_id: int
    status: str
    closing_date: Optional[date] = None
    events_archived: int
    summary_id: Optional[int] = None
    stats: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ResetRunResponse(BaseModel):
    """Totals of a batch run"""
    started_at: datetime
    duration_ms: int
    patients_checked: int
    patients_at_midnight: int
    successful: int
    skipped: int
    failed: int
    events_archived: int
    summaries_created: int
    failures: List[Dict[str, Any]]
    outcomes: List[PatientResetResponse]


class DailySummaryResponse(BaseModel):
    """Immutable summary of a closed day"""
    id: int
    patient_id: int
    summary_date: date
    timezone: str
    total_scheduled: int
    total_taken: int
    total_taken_full: int
    total_taken_partial: int
    total_missed: int
    total_skipped: int
    total_snoozed: int
    total_undone: int
    total_corrected: int
    total_unscheduled_taken: int
    total_on_time: int
    adherence_rate: Optional[float] = None
    on_time_rate: Optional[float] = None
    average_delay_minutes: Optional[float] = None
    median_delay_minutes: Optional[float] = None
    max_delay_minutes: Optional[float] = None
    missed_by_bucket: Dict[str, int]
    medication_breakdown: Dict[str, Any]
    total_archived: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
