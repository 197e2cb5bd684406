"""
Commands API Router
Endpoints for creating and managing medication commands
"""

from typing import List, Optional
from datetime import date
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from api.deps import get_db, services
from api.schemas.command import (
    CommandCreate,
    CommandUpdate,
    StatusChange,
    CommandResponse,
    OccurrenceResponse,
)
from api.schemas.event import EventResponse


router = APIRouter(prefix="/commands", tags=["commands"])


@router.post("", response_model=CommandResponse, status_code=status.HTTP_201_CREATED)
async def create_command(
    payload: CommandCreate,
    db: Session = Depends(get_db)
):
    """
    Create a medication command
    """
    command_service = services.get_command_service()
    return await command_service.create_command(**payload.model_dump(), db=db)


@router.get("/patient/{patient_id}", response_model=List[CommandResponse])
async def list_commands(
    patient_id: int,
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db)
):
    """
    List a patient's commands, optionally by status
    """
    command_service = services.get_command_service()
    return await command_service.list_commands(patient_id, status=status_filter, db=db)


@router.get("/{command_id}", response_model=CommandResponse)
async def get_command(
    command_id: int,
    db: Session = Depends(get_db)
):
    command_service = services.get_command_service()
    return await command_service.get_command(command_id, db=db)


@router.patch("/{command_id}", response_model=CommandResponse)
async def update_command(
    command_id: int,
    payload: CommandUpdate,
    db: Session = Depends(get_db)
):
    """
    Update a command; fails with 409 when expected_version is stale
    """
    command_service = services.get_command_service()
    return await command_service.update_command(
        command_id=command_id,
        patch=payload.patch,
        expected_version=payload.expected_version,
        updated_by=payload.updated_by,
        effective_from=payload.effective_from,
        db=db
    )


@router.post("/{command_id}/status", response_model=CommandResponse)
async def change_status(
    command_id: int,
    payload: StatusChange,
    db: Session = Depends(get_db)
):
    """
    Pause, resume, hold, discontinue or complete a command
    """
    command_service = services.get_command_service()
    return await command_service.change_status(
        command_id=command_id,
        new_status=payload.status,
        actor=payload.actor,
        reason=payload.reason,
        expected_version=payload.expected_version,
        db=db
    )


@router.get("/{command_id}/occurrences", response_model=List[OccurrenceResponse])
async def expand_occurrences(
    command_id: int,
    start_date: date,
    end_date: date,
    tz: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    Derived dose occurrences for a date range (read-only)
    """
    command_service = services.get_command_service()
    occurrences = await command_service.expand_occurrences(command_id, start_date, end_date, tz=tz, db=db)
    return [o.to_dict() for o in occurrences]


@router.post("/{command_id}/materialize", response_model=List[EventResponse])
async def materialize_scheduled(
    command_id: int,
    day: date,
    db: Session = Depends(get_db)
):
    """
    Write missing scheduled events for a day (idempotent)
    """
    event_service = services.get_event_service()
    return await event_service.materialize_scheduled(command_id, day, db=db)


@router.get("/{command_id}/undo-history", response_model=List[EventResponse])
async def get_undo_history(
    command_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    undo_service = services.get_undo_service()
    return await undo_service.get_undo_history(command_id, limit=limit, db=db)
