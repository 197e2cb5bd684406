"""
Undo Service
Short-window undo and 24-hour corrections of recorded doses
"""

import logging
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass
from datetime import datetime, timedelta
from sqlalchemy.orm import Session

from config import engine_config
from database import get_db_context
import models
from models import EventType, TAKEN_EVENT_TYPES, CORRECTION_EVENT_TYPES
from exceptions import TooOldError, ValidationError, WindowExpiredError
from services.adherence_analytics_service import (
    AdherenceAnalyticsService, AdherenceImpact, adherence_analytics_service,
)
from services.event_service import EventService, event_service, occurrence_state
from tools.time_buckets import utc_now


logger = logging.getLogger(__name__)

UNDO_WINDOW = timedelta(seconds=engine_config.UNDO_WINDOW_SECONDS)
CORRECTION_WINDOW = timedelta(hours=engine_config.CORRECTION_WINDOW_HOURS)

CORRECTION_TYPES = {
    "missed": EventType.DOSE_MISSED_CORRECTED,
    "skipped": EventType.DOSE_SKIPPED_CORRECTED,
}
CORRECTABLE_TYPES = TAKEN_EVENT_TYPES | CORRECTION_EVENT_TYPES | {
    EventType.DOSE_MISSED, EventType.DOSE_SKIPPED,
}


@dataclass
class UndoResult:
    """Outcome of a successful undo"""
    undo_event: models.MedicationEvent
    original_event_id: int
    impact: AdherenceImpact


class UndoService:
    """
    Service for undoing and correcting medication events

    Window checks use the server-assigned event_timestamp and this
    service's clock only.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        events: Optional[EventService] = None,
        analytics: Optional[AdherenceAnalyticsService] = None
    ):
        self.clock = clock
        self.events = events or event_service
        self.analytics = analytics or adherence_analytics_service

    def _undo_of(self, session: Session, event_id: int) -> Optional[models.MedicationEvent]:
        return session.query(models.MedicationEvent).filter(
            models.MedicationEvent.original_event_id == event_id,
            models.MedicationEvent.event_type == EventType.DOSE_TAKEN_UNDONE,
        ).first()

    def _eligibility(self, session: Session, original: models.MedicationEvent) -> Dict[str, Any]:
        elapsed = self.clock() - original.event_timestamp
        deadline = original.event_timestamp + CORRECTION_WINDOW
        result = {
            "event_id": original.id,
            "can_undo": False,
            "requires_correction": False,
            "elapsed_seconds": round(elapsed.total_seconds(), 3),
            "correction_deadline": deadline,
            "too_old": False,
            "reason": None,
        }
        if original.event_type not in TAKEN_EVENT_TYPES:
            result["reason"] = f"{original.event_type.value} events cannot be undone"
        elif self._undo_of(session, original.id) is not None:
            result["reason"] = "Event has already been undone"
        elif elapsed <= UNDO_WINDOW:
            result["can_undo"] = True
        elif elapsed <= CORRECTION_WINDOW:
            result["requires_correction"] = True
            result["reason"] = f"Undo window of {engine_config.UNDO_WINDOW_SECONDS}s has passed"
        else:
            result["too_old"] = True
            result["reason"] = f"Event is older than {engine_config.CORRECTION_WINDOW_HOURS} hours"
        return result

    async def validate_undo(self, event_id: int, db: Optional[Session] = None) -> Dict[str, Any]:
        """Non-mutating check of whether an event can be undone right now"""
        def _validate(session: Session) -> Dict[str, Any]:
            return self._eligibility(session, self.events.load(session, event_id))

        if db:
            return _validate(db)

        with get_db_context() as session:
            return _validate(session)

    async def undo(
        self,
        original_event_id: int,
        reason: Optional[str] = None,
        actor: str = "patient",
        db: Optional[Session] = None
    ) -> UndoResult:
        """
        Undo a taken dose within the undo window

        Raises:
            ValidationError: not a taken event, or already undone
            WindowExpiredError: past the undo window but still correctable
            TooOldError: past the correction window
        """
        def _undo(session: Session) -> UndoResult:
            original = self.events.load(session, original_event_id)
            check = self._eligibility(session, original)
            if not check["can_undo"]:
                if check["requires_correction"]:
                    raise WindowExpiredError(check["reason"], correction_deadline=check["correction_deadline"])
                if check["too_old"]:
                    raise TooOldError(check["reason"], event_id=original.id)
                raise ValidationError(check["reason"], event_id=original.id)

            before = self.analytics.recent_score(session, original.patient_id)
            undo_event = self.events.record(
                session,
                command_id=original.command_id,
                event_type=EventType.DOSE_TAKEN_UNDONE,
                scheduled_for=original.scheduled_for,
                original_event_id=original.id,
                undo_reason=reason,
                corrected_action=None,
                created_by=actor,
            )
            after = self.analytics.recent_score(session, original.patient_id)
            impact = self.analytics.calculate_undo_impact(before, after)

            logger.info(
                f"Undid event {original.id} (command {original.command_id}) "
                f"after {check['elapsed_seconds']}s by {actor}"
            )
            return UndoResult(undo_event=undo_event, original_event_id=original.id, impact=impact)

        if db:
            return _undo(db)

        with get_db_context() as session:
            result = _undo(session)
            session.expunge(result.undo_event)
            return result

    async def correct(
        self,
        original_event_id: int,
        corrected_action: str,
        reason: str,
        actor: str = "patient",
        db: Optional[Session] = None
    ) -> models.MedicationEvent:
        """
        Reclassify an earlier event as missed or skipped within 24 hours

        Corrections can themselves be corrected; the window is measured
        from the event being corrected.
        """
        action = getattr(corrected_action, "value", corrected_action)
        if action not in CORRECTION_TYPES:
            raise ValidationError(
                "corrected_action must be 'missed' or 'skipped'",
                field="corrected_action",
            )
        if reason is None or not reason.strip():
            raise ValidationError("A reason is required for corrections", field="reason")

        def _correct(session: Session) -> models.MedicationEvent:
            original = self.events.load(session, original_event_id)
            if original.event_type not in CORRECTABLE_TYPES:
                raise ValidationError(
                    f"{original.event_type.value} events cannot be corrected",
                    event_id=original.id,
                )
            elapsed = self.clock() - original.event_timestamp
            if elapsed > CORRECTION_WINDOW:
                raise TooOldError(
                    f"Event {original.id} is older than {engine_config.CORRECTION_WINDOW_HOURS} hours",
                    event_id=original.id,
                )

            prior = self.events.events_for_occurrence(
                session, original.command_id, original.scheduled_for, original.original_event_id or original.id
            )
            current = occurrence_state(prior).state
            if current == action:
                raise ValidationError(f"Occurrence is already {action}", event_id=original.id)

            event = self.events.record(
                session,
                command_id=original.command_id,
                event_type=CORRECTION_TYPES[action],
                scheduled_for=original.scheduled_for,
                original_event_id=original.id,
                undo_reason=reason.strip(),
                corrected_action=action,
                created_by=actor,
            )
            logger.info(f"Corrected event {original.id} to {action} by {actor}: {reason.strip()}")
            return event

        if db:
            return _correct(db)

        with get_db_context() as session:
            event = _correct(session)
            session.expunge(event)
            return event

    async def get_undo_history(
        self,
        command_id: int,
        limit: int = 50,
        db: Optional[Session] = None
    ) -> List[models.MedicationEvent]:
        """Undo and correction events for a command, newest first"""
        def _history(session: Session) -> List[models.MedicationEvent]:
            return session.query(models.MedicationEvent).filter(
                models.MedicationEvent.command_id == command_id,
                models.MedicationEvent.event_type.in_(
                    [EventType.DOSE_TAKEN_UNDONE] + list(CORRECTION_EVENT_TYPES)
                ),
            ).order_by(
                models.MedicationEvent.event_timestamp.desc(),
                models.MedicationEvent.id.desc(),
            ).limit(limit).all()

        if db:
            return _history(db)

        with get_db_context() as session:
            events = _history(session)
            for e in events:
                session.expunge(e)
            return events


# Singleton instance
undo_service = UndoService()
