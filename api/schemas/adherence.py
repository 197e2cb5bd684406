"""
Adherence Schemas
Pydantic models for adherence analytics responses
"""

from typing import Optional, List, Dict, Any
from datetime import date
from pydantic import BaseModel


class AdherenceMetrics(BaseModel):
    """Counts and rates over a period"""
    total_scheduled: int
    total_taken: int
    total_taken_full: int
    total_taken_partial: int
    total_missed: int
    total_skipped: int
    total_undone: int
    total_corrected: int
    total_unscheduled_taken: int
    adherence_rate: Optional[float] = None
    full_dose_rate: Optional[float] = None
    on_time_rate: Optional[float] = None
    average_delay_minutes: Optional[float] = None
    median_delay_minutes: Optional[float] = None
    max_delay_minutes: Optional[float] = None


class AdherenceTrend(BaseModel):
    direction: str
    change: float


class AdherencePatterns(BaseModel):
    """Where and when doses are missed"""
    most_missed_bucket: Optional[str] = None
    missed_by_bucket: Dict[str, int]
    most_missed_weekday: Optional[str] = None
    missed_by_weekday: Dict[str, int]
    weekday_rate: Optional[float] = None
    weekend_rate: Optional[float] = None
    weekday_weekend_gap: Optional[float] = None
    current_streak: int
    longest_streak: int
    consecutive_missed_days: int
    trend: AdherenceTrend


class AdherenceRisk(BaseModel):
    level: str
    factors: List[str]
    protective_factors: List[str]
    interventions: List[str]


class DailyRate(BaseModel):
    date: date
    scheduled: int
    taken: int
    adherence_rate: Optional[float] = None


class AdherenceReport(BaseModel):
    """Full adherence report for a patient"""
    patient_id: int
    command_id: Optional[int] = None
    start_date: date
    end_date: date
    metrics: AdherenceMetrics
    patterns: AdherencePatterns
    risk: AdherenceRisk
    daily: List[DailyRate]


class Milestone(BaseModel):
    milestone: str
    achieved: bool
    progress: Any
    target: Any
