"""
Preferences API Router
Endpoints for patient timezone and lifestyle anchors
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from api.deps import get_db, services
from api.schemas.preferences import PreferencesUpdate, PreferencesResponse, SuggestedTimes
from models import Frequency


router = APIRouter(prefix="/preferences", tags=["preferences"])


@router.get("/{patient_id}", response_model=PreferencesResponse)
async def get_preferences(
    patient_id: int,
    db: Session = Depends(get_db)
):
    preferences_service = services.get_preferences_service()
    prefs = await preferences_service.get_preferences(patient_id, db=db)
    if not prefs:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No preferences for patient {patient_id}"
        )
    return prefs


@router.put("/{patient_id}", response_model=PreferencesResponse)
async def upsert_preferences(
    patient_id: int,
    payload: PreferencesUpdate,
    db: Session = Depends(get_db)
):
    """
    Create or update a patient's timezone and daily anchors
    """
    preferences_service = services.get_preferences_service()
    data = payload.model_dump(exclude_unset=True)
    timezone = data.pop("timezone", None)
    return await preferences_service.upsert_preferences(patient_id, timezone=timezone, db=db, **data)


@router.get("/{patient_id}/suggested-times", response_model=SuggestedTimes)
async def suggested_times(
    patient_id: int,
    frequency: Frequency,
    db: Session = Depends(get_db)
):
    """
    Suggested dose times for a frequency, from the patient's meal anchors
    """
    preferences_service = services.get_preferences_service()
    return await preferences_service.suggest_times(patient_id, frequency.value, db=db)
