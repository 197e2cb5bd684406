"""
Events API Router
Endpoints for recording, undoing and correcting dose events
"""

from typing import List, Optional
from datetime import datetime, date
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from api.deps import get_db, services
from api.schemas.event import (
    DoseTaken,
    DoseOutcome,
    UndoRequest,
    CorrectionRequest,
    EventResponse,
    UndoResponse,
    TodayItem,
    UndoEligibility,
)
from services.event_service import ArchiveFilter


router = APIRouter(prefix="/events", tags=["events"])


@router.post("/take", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def take_medication(
    dose: DoseTaken,
    db: Session = Depends(get_db)
):
    """
    Record a taken dose (partial when dose_percentage < 100)
    """
    event_service = services.get_event_service()
    return await event_service.take_medication(**dose.model_dump(), db=db)


@router.post("/missed", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def record_missed(
    dose: DoseOutcome,
    db: Session = Depends(get_db)
):
    event_service = services.get_event_service()
    return await event_service.record_missed(**dose.model_dump(), db=db)


@router.post("/skipped", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def record_skipped(
    dose: DoseOutcome,
    db: Session = Depends(get_db)
):
    event_service = services.get_event_service()
    return await event_service.record_skipped(**dose.model_dump(), db=db)


@router.post("/snoozed", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def record_snoozed(
    dose: DoseOutcome,
    db: Session = Depends(get_db)
):
    event_service = services.get_event_service()
    return await event_service.record_snoozed(**dose.model_dump(), db=db)


@router.post("/detect-missed", response_model=List[EventResponse])
async def detect_missed(
    patient_id: Optional[int] = Query(None),
    db: Session = Depends(get_db)
):
    """Mark doses still open past their grace period as missed"""
    event_service = services.get_event_service()
    return await event_service.detect_missed(patient_id=patient_id, db=db)


@router.get("/{event_id}/undo", response_model=UndoEligibility)
async def validate_undo(
    event_id: int,
    db: Session = Depends(get_db)
):
    """
    Check whether an event can still be undone
    """
    undo_service = services.get_undo_service()
    return await undo_service.validate_undo(event_id, db=db)


@router.post("/{event_id}/undo", response_model=UndoResponse, status_code=status.HTTP_201_CREATED)
async def undo_event(
    event_id: int,
    payload: UndoRequest,
    db: Session = Depends(get_db)
):
    """
    Undo a taken dose within 30 seconds of recording it
    """
    undo_service = services.get_undo_service()
    result = await undo_service.undo(event_id, reason=payload.reason, actor=payload.actor, db=db)
    return {
        "undo_event": result.undo_event,
        "original_event_id": result.original_event_id,
        "impact": result.impact.to_dict(),
    }


@router.post("/{event_id}/correct", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def correct_event(
    event_id: int,
    payload: CorrectionRequest,
    db: Session = Depends(get_db)
):
    """
    Reclassify an event as missed or skipped within 24 hours
    """
    undo_service = services.get_undo_service()
    return await undo_service.correct(
        event_id,
        corrected_action=payload.corrected_action,
        reason=payload.reason,
        actor=payload.actor,
        db=db
    )


@router.get("/today/{patient_id}", response_model=List[TodayItem])
async def list_today(
    patient_id: int,
    db: Session = Depends(get_db)
):
    event_service = services.get_event_service()
    return await event_service.list_today(patient_id, db=db)


@router.get("/chain/{correlation_id}", response_model=List[EventResponse])
async def get_chain(
    correlation_id: str,
    db: Session = Depends(get_db)
):
    event_service = services.get_event_service()
    return await event_service.get_chain(correlation_id, db=db)


@router.get("/patient/{patient_id}", response_model=List[EventResponse])
async def query_events(
    patient_id: int,
    command_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    event_type: Optional[List[str]] = Query(None),
    archive_filter: ArchiveFilter = ArchiveFilter.EXCLUDE_ARCHIVED,
    belongs_to_date: Optional[date] = None,
    db: Session = Depends(get_db)
):
    """
    Query a patient's events; archived events are excluded by default
    """
    event_service = services.get_event_service()
    return await event_service.query_events(
        patient_id=patient_id,
        command_id=command_id,
        start=start,
        end=end,
        event_types=event_type,
        archive_filter=archive_filter,
        belongs_to_date=belongs_to_date,
        db=db
    )


@router.get("/{event_id}", response_model=EventResponse)
async def get_event(
    event_id: int,
    db: Session = Depends(get_db)
):
    event_service = services.get_event_service()
    return await event_service.get_event(event_id, db=db)
