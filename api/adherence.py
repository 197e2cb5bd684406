"""
Adherence API Router
Endpoints for adherence analytics
"""

from typing import List, Optional
from datetime import date
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, services
from api.schemas.adherence import AdherenceReport, Milestone


router = APIRouter(prefix="/adherence", tags=["adherence"])


@router.get("/{patient_id}", response_model=AdherenceReport)
async def get_adherence(
    patient_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    days: int = Query(30, ge=1, le=365),
    command_id: Optional[int] = None,
    db: Session = Depends(get_db)
):
    """
    Adherence metrics, patterns and risk for a date range

    Defaults to the last `days` days ending today.
    """
    analytics_service = services.get_analytics_service()
    return await analytics_service.get_adherence(
        patient_id, start_date, end_date, days=days, command_id=command_id, db=db
    )


@router.get("/{patient_id}/milestones", response_model=List[Milestone])
async def get_milestones(
    patient_id: int,
    db: Session = Depends(get_db)
):
    analytics_service = services.get_analytics_service()
    return await analytics_service.check_milestones(patient_id, db=db)
