"""
Archive API Router
Endpoints for the daily reset job and closed-day summaries
"""

from typing import List, Optional
from datetime import date
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from api.deps import get_db, services
from api.schemas.archive import (
    PatientResetRequest,
    PatientResetResponse,
    ResetRunResponse,
    DailySummaryResponse,
)


router = APIRouter(prefix="/archive", tags=["archive"])


@router.post("/run", response_model=ResetRunResponse)
async def run_daily_reset(
    db: Session = Depends(get_db)
):
    """
    Run one daily reset pass over all patients now
    """
    reset_service = services.get_daily_reset_service()
    report = await reset_service.run(db=db)
    return report.to_dict()


@router.post("/{patient_id}/reset", response_model=PatientResetResponse)
async def reset_patient(
    patient_id: int,
    payload: PatientResetRequest,
    db: Session = Depends(get_db)
):
    """
    Close a patient's day outside the midnight window (optionally as a dry run)
    """
    reset_service = services.get_daily_reset_service()
    outcome = await reset_service.execute_for_patient(
        patient_id,
        closing_day=payload.closing_date,
        dry_run=payload.dry_run,
        db=db
    )
    return outcome.to_dict()


@router.get("/{patient_id}/summaries", response_model=List[DailySummaryResponse])
async def get_summaries(
    patient_id: int,
    start_date: date,
    end_date: date,
    db: Session = Depends(get_db)
):
    reset_service = services.get_daily_reset_service()
    return await reset_service.get_daily_summaries(patient_id, start_date, end_date, db=db)


@router.get("/{patient_id}/summaries/{summary_date}", response_model=DailySummaryResponse)
async def get_summary(
    patient_id: int,
    summary_date: date,
    db: Session = Depends(get_db)
):
    reset_service = services.get_daily_reset_service()
    summary = await reset_service.get_daily_summary(patient_id, summary_date, db=db)
    if not summary:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No summary for patient {patient_id} on {summary_date}"
        )
    return summary
