"""
Preferences Schemas
Pydantic models for patient time preferences
"""

from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict


HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class PreferencesUpdate(BaseModel):
    """Schema for creating or updating time preferences"""
    timezone: Optional[str] = Field(None, max_length=64)
    wake_time: Optional[str] = Field(None, pattern=HHMM)
    bed_time: Optional[str] = Field(None, pattern=HHMM)
    breakfast_time: Optional[str] = Field(None, pattern=HHMM)
    lunch_time: Optional[str] = Field(None, pattern=HHMM)
    dinner_time: Optional[str] = Field(None, pattern=HHMM)


class PreferencesResponse(BaseModel):
    """Schema for preferences response"""
    patient_id: int
    timezone: Optional[str] = None
    wake_time: Optional[str] = None
    bed_time: Optional[str] = None
    breakfast_time: Optional[str] = None
    lunch_time: Optional[str] = None
    dinner_time: Optional[str] = None
    version: int
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SuggestedTimes(BaseModel):
    patient_id: int
    frequency: str
    times: List[str]
