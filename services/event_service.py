"""
Event Log
Append-only record of what happened to each dose occurrence
"""

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime, date, timedelta
from enum import Enum
from sqlalchemy.orm import Session

from config import engine_config
from database import get_db_context
import models
from models import (
    CommandStatus, EventType, MedicationClass, TAKEN_EVENT_TYPES, CORRECTION_EVENT_TYPES,
)
from exceptions import DuplicateEventError, NotFoundError, ValidationError
from services.command_service import command_service
from services.preferences_service import preferences_service
from tools.notification_service import notification_dispatcher
from tools.time_buckets import (
    classify_time_bucket, day_boundaries, evaluate_timing, grace_period_minutes,
    local_date, local_time_of_day, to_naive_utc, utc_now,
)


logger = logging.getLogger(__name__)

# Tolerated client clock skew for actual_at in the future
FUTURE_SKEW = timedelta(minutes=5)

SYSTEM_ACTOR = "system"

RESOLVED_STATES = {"taken_full", "taken_partial", "missed", "skipped"}
OPEN_STATES = {"pending", "snoozed"}
TAKEN_STATES = {"taken_full", "taken_partial"}
ADJUSTMENT_EVENT_TYPES = {EventType.DOSE_TAKEN_UNDONE} | set(CORRECTION_EVENT_TYPES)


class ArchiveFilter(str, Enum):
    """Which events a query returns with respect to archival"""
    EXCLUDE_ARCHIVED = "exclude_archived"
    ONLY_ARCHIVED = "only_archived"
    INCLUDE_ALL = "include_all"


# ==================== OCCURRENCE PROJECTION ====================

@dataclass
class OccurrenceState:
    """Final state of one occurrence after folding its events in order"""
    key: Tuple
    command_id: int
    scheduled_for: Optional[datetime]
    state: str = "pending"
    has_scheduled: bool = False
    scheduled_event: Optional[models.MedicationEvent] = None
    taken_event: Optional[models.MedicationEvent] = None
    undo_event: Optional[models.MedicationEvent] = None
    undone: bool = False
    corrected: bool = False
    snoozed: int = 0
    events: List[models.MedicationEvent] = field(default_factory=list)

    @property
    def correlation_id(self) -> Optional[str]:
        return self.events[0].correlation_id if self.events else None

    @property
    def adjustments_only(self) -> bool:
        """Only undo/correction events; the dose they change is in another day"""
        return bool(self.events) and all(e.event_type in ADJUSTMENT_EVENT_TYPES for e in self.events)

    @property
    def time_bucket(self) -> Optional[str]:
        for e in self.events:
            if e.time_bucket is not None:
                return e.time_bucket.value
        return None


def occurrence_key(e: models.MedicationEvent) -> Tuple:
    if e.scheduled_for is not None:
        return (e.command_id, e.scheduled_for)
    # Unscheduled doses (PRN) are their own occurrence, undo/corrections follow their target
    return (e.command_id, "event", e.original_event_id or e.id)


def _fold(occ: OccurrenceState, e: models.MedicationEvent) -> None:
    occ.events.append(e)
    kind = e.event_type
    if kind == EventType.DOSE_SCHEDULED:
        occ.has_scheduled = True
        occ.scheduled_event = e
    elif kind == EventType.DOSE_TAKEN_FULL:
        occ.state, occ.taken_event, occ.undone = "taken_full", e, False
    elif kind == EventType.DOSE_TAKEN_PARTIAL:
        occ.state, occ.taken_event, occ.undone = "taken_partial", e, False
    elif kind == EventType.DOSE_MISSED:
        occ.state = "missed"
    elif kind == EventType.DOSE_SKIPPED:
        occ.state = "skipped"
    elif kind == EventType.DOSE_SNOOZED:
        occ.snoozed += 1
        if occ.state == "pending":
            occ.state = "snoozed"
    elif kind == EventType.DOSE_TAKEN_UNDONE:
        if occ.taken_event is not None and e.original_event_id == occ.taken_event.id:
            occ.state, occ.undone, occ.undo_event = "undone", True, e
            occ.taken_event = None
    elif kind == EventType.DOSE_MISSED_CORRECTED:
        occ.state, occ.corrected, occ.taken_event = "missed", True, None
    elif kind == EventType.DOSE_SKIPPED_CORRECTED:
        occ.state, occ.corrected, occ.taken_event = "skipped", True, None


def _ordered(events: Iterable[models.MedicationEvent]) -> List[models.MedicationEvent]:
    return sorted(events, key=lambda e: (e.event_timestamp, e.id or 0))


def occurrence_states(events: Iterable[models.MedicationEvent]) -> Dict[Tuple, OccurrenceState]:
    """Group events by occurrence and fold each group into its final state"""
    states: Dict[Tuple, OccurrenceState] = {}
    for e in _ordered(events):
        key = occurrence_key(e)
        occ = states.get(key)
        if occ is None:
            occ = states[key] = OccurrenceState(key=key, command_id=e.command_id, scheduled_for=e.scheduled_for)
        _fold(occ, e)
    return states


def occurrence_state(events: Iterable[models.MedicationEvent]) -> OccurrenceState:
    """Fold the events of a single occurrence"""
    events = _ordered(events)
    if not events:
        return OccurrenceState(key=(), command_id=0, scheduled_for=None)
    occ = OccurrenceState(key=occurrence_key(events[0]), command_id=events[0].command_id,
                          scheduled_for=events[0].scheduled_for)
    for e in events:
        _fold(occ, e)
    return occ


class EventService:
    """
    Service for appending and reading medication events
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock

    # ==================== SESSION-LEVEL HELPERS ====================

    def load(self, session: Session, event_id: int) -> models.MedicationEvent:
        event = session.query(models.MedicationEvent).filter(
            models.MedicationEvent.id == event_id
        ).first()
        if event is None:
            raise NotFoundError(f"Event {event_id} not found", event_id=event_id)
        return event

    def events_for_occurrence(
        self,
        session: Session,
        command_id: int,
        scheduled_for: Optional[datetime],
        anchor_event_id: Optional[int] = None
    ) -> List[models.MedicationEvent]:
        query = session.query(models.MedicationEvent).filter(
            models.MedicationEvent.command_id == command_id
        )
        if scheduled_for is not None:
            query = query.filter(models.MedicationEvent.scheduled_for == scheduled_for)
        elif anchor_event_id is not None:
            query = query.filter(
                (models.MedicationEvent.id == anchor_event_id)
                | (models.MedicationEvent.original_event_id == anchor_event_id)
            )
        else:
            return []
        return _ordered(query.all())

    def find_duplicate(
        self,
        session: Session,
        command_id: int,
        scheduled_for: datetime
    ) -> Optional[models.MedicationEvent]:
        """A non-undone taken event for the command within the duplicate window"""
        window = timedelta(minutes=engine_config.DUPLICATE_WINDOW_MINUTES)
        taken = session.query(models.MedicationEvent).filter(
            models.MedicationEvent.command_id == command_id,
            models.MedicationEvent.event_type.in_(list(TAKEN_EVENT_TYPES)),
            models.MedicationEvent.scheduled_for >= scheduled_for - window,
            models.MedicationEvent.scheduled_for <= scheduled_for + window,
        ).all()
        if not taken:
            return None

        neutralised = {
            row.original_event_id for row in session.query(models.MedicationEvent.original_event_id).filter(
                models.MedicationEvent.command_id == command_id,
                models.MedicationEvent.original_event_id.in_([e.id for e in taken]),
                models.MedicationEvent.event_type.in_(
                    [EventType.DOSE_TAKEN_UNDONE] + list(CORRECTION_EVENT_TYPES)
                ),
            )
        }
        for e in _ordered(taken):
            if e.id not in neutralised:
                return e
        return None

    def _check_consistency(
        self,
        session: Session,
        command: models.MedicationCommand,
        event_type: EventType,
        scheduled_for: Optional[datetime],
        original_event_id: Optional[int],
        prior: List[models.MedicationEvent]
    ) -> OccurrenceState:
        occ = occurrence_state(prior)

        if event_type == EventType.DOSE_SCHEDULED:
            if scheduled_for is None:
                raise ValidationError("Scheduled events need scheduled_for", field="scheduled_for")
            if command.is_prn or command.status != CommandStatus.ACTIVE:
                raise ValidationError(
                    f"Command {command.id} does not generate scheduled doses",
                    status=command.status.value,
                )
            if occ.has_scheduled:
                raise DuplicateEventError(
                    f"Occurrence at {scheduled_for.isoformat()} is already scheduled",
                    existing_event_id=occ.scheduled_event.id,
                )

        elif event_type in TAKEN_EVENT_TYPES:
            if occ.state == "undone":
                allowed = {occ.undo_event.id, occ.undo_event.original_event_id}
                if original_event_id not in allowed:
                    raise ValidationError(
                        "This dose was undone; re-recording it must reference the undone event",
                        undo_event_id=occ.undo_event.id,
                    )

        elif event_type in (EventType.DOSE_MISSED, EventType.DOSE_SKIPPED):
            if scheduled_for is None:
                raise ValidationError(f"{event_type.value} needs scheduled_for", field="scheduled_for")
            target = "missed" if event_type == EventType.DOSE_MISSED else "skipped"
            if occ.state in TAKEN_STATES:
                raise ValidationError(
                    "Occurrence is already taken; undo or correct it instead",
                    taken_event_id=occ.taken_event.id,
                )
            if occ.state == target:
                raise ValidationError(f"Occurrence is already {target}")

        elif event_type == EventType.DOSE_SNOOZED:
            if scheduled_for is None:
                raise ValidationError("Snoozes need scheduled_for", field="scheduled_for")
            if occ.state in RESOLVED_STATES:
                raise ValidationError(f"Occurrence is already {occ.state}; cannot snooze")

        else:
            # undo / correction types
            if original_event_id is None:
                raise ValidationError(f"{event_type.value} needs original_event_id", field="original_event_id")
            original = self.load(session, original_event_id)
            if original.command_id != command.id:
                raise ValidationError("original_event_id belongs to a different command")

        return occ

    def _grace_for(self, command: models.MedicationCommand, scheduled_for: datetime, zone, anchors) -> int:
        bucket = classify_time_bucket(local_time_of_day(scheduled_for, zone), anchors)
        medication_class = command.medication_class or MedicationClass.STANDARD
        return grace_period_minutes(medication_class.value, bucket, command.grace_period_minutes)

    def record(
        self,
        session: Session,
        command_id: int,
        event_type: Union[EventType, str],
        scheduled_for: Optional[datetime] = None,
        actual_at: Optional[datetime] = None,
        dose_percentage: Optional[float] = None,
        actual_dose: Optional[str] = None,
        original_event_id: Optional[int] = None,
        undo_reason: Optional[str] = None,
        corrected_action: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: str = "patient"
    ) -> models.MedicationEvent:
        """Validate and append one event in the given session, then commit"""
        try:
            event_type = EventType(getattr(event_type, "value", event_type))
        except ValueError:
            raise ValidationError(f"Unknown event type '{event_type}'", field="event_type")

        command = command_service.load(session, command_id)
        now = self.clock()
        if scheduled_for is not None:
            scheduled_for = to_naive_utc(scheduled_for)

        prior = self.events_for_occurrence(session, command_id, scheduled_for, original_event_id)
        occ = self._check_consistency(session, command, event_type, scheduled_for, original_event_id, prior)

        zone = preferences_service.load_zone_or_utc(session, command.patient_id)
        anchors = preferences_service.load_anchors(session, command.patient_id)

        if event_type == EventType.DOSE_MISSED and created_by == SYSTEM_ACTOR:
            grace_ends = scheduled_for + timedelta(minutes=self._grace_for(command, scheduled_for, zone, anchors))
            if now < grace_ends:
                raise ValidationError(
                    "Dose is still within its grace period",
                    grace_ends_at=grace_ends.isoformat(),
                )

        values: Dict[str, Any] = {}
        reference = scheduled_for
        if event_type in TAKEN_EVENT_TYPES:
            actual_at = to_naive_utc(actual_at) if actual_at is not None else now
            if actual_at > now + FUTURE_SKEW:
                raise ValidationError("actual_at cannot be in the future", field="actual_at")
            if scheduled_for is not None:
                duplicate = self.find_duplicate(session, command_id, scheduled_for)
                if duplicate is not None:
                    raise DuplicateEventError(
                        f"Dose already recorded as taken (event {duplicate.id})",
                        existing_event_id=duplicate.id,
                    )

            if event_type == EventType.DOSE_TAKEN_FULL:
                dose_percentage = 100.0
            elif dose_percentage is None or not (0 < dose_percentage < 100):
                raise ValidationError(
                    "Partial doses need dose_percentage between 0 and 100 (exclusive)",
                    field="dose_percentage",
                )

            reference = scheduled_for or actual_at
            bucket = classify_time_bucket(local_time_of_day(reference, zone), anchors)
            grace = self._grace_for(command, reference, zone, anchors)
            minutes_late, is_on_time = evaluate_timing(scheduled_for, actual_at, grace)
            values.update(
                actual_at=actual_at,
                grace_period_minutes=grace,
                minutes_late=minutes_late,
                is_on_time=is_on_time,
                dose_percentage=round(float(dose_percentage), 1),
                actual_dose=actual_dose or (command.dosage if event_type == EventType.DOSE_TAKEN_FULL else None),
                time_bucket=models.TimeBucket(bucket),
            )
        elif reference is not None:
            values["time_bucket"] = models.TimeBucket(
                classify_time_bucket(local_time_of_day(reference, zone), anchors)
            )

        if original_event_id is not None and event_type not in TAKEN_EVENT_TYPES:
            original = self.load(session, original_event_id)
            correlation_id = original.correlation_id
        else:
            correlation_id = occ.correlation_id or str(uuid.uuid4())

        event = models.MedicationEvent(
            command_id=command_id,
            patient_id=command.patient_id,
            event_type=event_type,
            scheduled_for=scheduled_for,
            event_timestamp=now,
            prescribed_dose=command.dosage,
            original_event_id=original_event_id,
            undo_reason=undo_reason,
            corrected_action=corrected_action,
            notes=notes,
            correlation_id=correlation_id,
            created_by=created_by,
            is_archived=False,
            **values,
        )
        session.add(event)
        session.commit()
        session.refresh(event)

        logger.info(
            f"Recorded {event_type.value} event {event.id} for command {command_id} "
            f"(patient {command.patient_id}, scheduled_for={scheduled_for})"
        )

        if event_type == EventType.DOSE_MISSED:
            notification_dispatcher.send_missed_dose(
                patient_id=command.patient_id,
                command_id=command_id,
                medication_name=command.medication_name,
                scheduled_for=scheduled_for,
                critical=command.medication_class == MedicationClass.CRITICAL,
            )
        return event

    # ==================== APPEND ====================

    async def append_event(
        self,
        command_id: int,
        event_type: str,
        scheduled_for: Optional[datetime] = None,
        actual_at: Optional[datetime] = None,
        dose_percentage: Optional[float] = None,
        actual_dose: Optional[str] = None,
        original_event_id: Optional[int] = None,
        notes: Optional[str] = None,
        created_by: str = "patient",
        db: Optional[Session] = None
    ) -> models.MedicationEvent:
        """
        Append an event after checking it against the occurrence's current state

        Undo and correction events go through the undo service, which owns
        their time windows.

        Raises:
            ValidationError: inconsistent with the occurrence state
            DuplicateEventError: a non-undone taken event already exists
            NotFoundError: unknown command
        """
        kind = getattr(event_type, "value", event_type)
        if kind in (EventType.DOSE_TAKEN_UNDONE.value,) or kind in {t.value for t in CORRECTION_EVENT_TYPES}:
            raise ValidationError(
                f"{kind} events are recorded through undo/correct",
                field="event_type",
            )

        def _append(session: Session) -> models.MedicationEvent:
            return self.record(
                session,
                command_id=command_id,
                event_type=event_type,
                scheduled_for=scheduled_for,
                actual_at=actual_at,
                dose_percentage=dose_percentage,
                actual_dose=actual_dose,
                original_event_id=original_event_id,
                notes=notes,
                created_by=created_by,
            )

        if db:
            return _append(db)

        with get_db_context() as session:
            event = _append(session)
            session.expunge(event)
            return event

    async def take_medication(
        self,
        command_id: int,
        scheduled_for: Optional[datetime] = None,
        actual_at: Optional[datetime] = None,
        dose_percentage: Optional[float] = None,
        actual_dose: Optional[str] = None,
        original_event_id: Optional[int] = None,
        notes: Optional[str] = None,
        created_by: str = "patient",
        db: Optional[Session] = None
    ) -> models.MedicationEvent:
        """Record a full dose, or a partial one when dose_percentage < 100"""
        partial = dose_percentage is not None and dose_percentage < 100
        return await self.append_event(
            command_id=command_id,
            event_type=EventType.DOSE_TAKEN_PARTIAL if partial else EventType.DOSE_TAKEN_FULL,
            scheduled_for=scheduled_for,
            actual_at=actual_at,
            dose_percentage=dose_percentage if partial else None,
            actual_dose=actual_dose,
            original_event_id=original_event_id,
            notes=notes,
            created_by=created_by,
            db=db,
        )

    async def record_missed(self, command_id: int, scheduled_for: datetime, notes: Optional[str] = None,
                            created_by: str = "patient", db: Optional[Session] = None) -> models.MedicationEvent:
        return await self.append_event(command_id, EventType.DOSE_MISSED, scheduled_for=scheduled_for,
                                       notes=notes, created_by=created_by, db=db)

    async def record_skipped(self, command_id: int, scheduled_for: datetime, notes: Optional[str] = None,
                             created_by: str = "patient", db: Optional[Session] = None) -> models.MedicationEvent:
        return await self.append_event(command_id, EventType.DOSE_SKIPPED, scheduled_for=scheduled_for,
                                       notes=notes, created_by=created_by, db=db)

    async def record_snoozed(self, command_id: int, scheduled_for: datetime, notes: Optional[str] = None,
                             created_by: str = "patient", db: Optional[Session] = None) -> models.MedicationEvent:
        return await self.append_event(command_id, EventType.DOSE_SNOOZED, scheduled_for=scheduled_for,
                                       notes=notes, created_by=created_by, db=db)

    async def record_scheduled(self, command_id: int, scheduled_for: datetime,
                               db: Optional[Session] = None) -> models.MedicationEvent:
        return await self.append_event(command_id, EventType.DOSE_SCHEDULED, scheduled_for=scheduled_for,
                                       created_by="scheduler", db=db)

    async def materialize_scheduled(
        self,
        command_id: int,
        day: date,
        db: Optional[Session] = None
    ) -> List[models.MedicationEvent]:
        """Write scheduled events for a day's occurrences that lack one"""
        def _materialize(session: Session) -> List[models.MedicationEvent]:
            command = command_service.load(session, command_id)
            created = []
            for occurrence in command_service.expand(session, command, day, day):
                prior = self.events_for_occurrence(session, command_id, occurrence.scheduled_for)
                if any(e.event_type == EventType.DOSE_SCHEDULED for e in prior):
                    continue
                created.append(self.record(
                    session,
                    command_id=command_id,
                    event_type=EventType.DOSE_SCHEDULED,
                    scheduled_for=occurrence.scheduled_for,
                    created_by="scheduler",
                ))
            logger.info(f"Materialized {len(created)} scheduled doses for command {command_id} on {day}")
            return created

        if db:
            return _materialize(db)

        with get_db_context() as session:
            return _materialize(session)

    # ==================== MISSED DOSE DETECTION ====================

    def detect_missed_for_patient(self, session: Session, patient_id: int) -> List[models.MedicationEvent]:
        """
        Record dose_missed for the patient's open occurrences past their grace period

        Looks at today and yesterday, skipping days that are already closed.
        """
        now = self.clock()
        zone = preferences_service.load_zone_or_utc(session, patient_id)
        anchors = preferences_service.load_anchors(session, patient_id)
        today = local_date(now, zone)
        days = [today - timedelta(days=1), today]
        closed = {
            row.summary_date for row in session.query(models.DailySummary.summary_date).filter(
                models.DailySummary.patient_id == patient_id,
                models.DailySummary.summary_date >= days[0],
            )
        }
        commands = session.query(models.MedicationCommand).filter(
            models.MedicationCommand.patient_id == patient_id,
            models.MedicationCommand.status == CommandStatus.ACTIVE,
            models.MedicationCommand.is_prn.is_(False),
        ).order_by(models.MedicationCommand.id).all()

        recorded = []
        for command in commands:
            for day in days:
                if day in closed:
                    continue
                for occurrence in command_service.expand(session, command, day, day, zone):
                    grace = self._grace_for(command, occurrence.scheduled_for, zone, anchors)
                    if now < occurrence.scheduled_for + timedelta(minutes=grace):
                        continue
                    prior = self.events_for_occurrence(session, command.id, occurrence.scheduled_for)
                    if occurrence_state(prior).state not in OPEN_STATES:
                        continue
                    recorded.append(self.record(
                        session,
                        command_id=command.id,
                        event_type=EventType.DOSE_MISSED,
                        scheduled_for=occurrence.scheduled_for,
                        notes=f"Not taken within the {grace} minute grace period",
                        created_by=SYSTEM_ACTOR,
                    ))
        return recorded

    async def detect_missed(
        self,
        patient_id: Optional[int] = None,
        db: Optional[Session] = None
    ) -> List[models.MedicationEvent]:
        """
        Periodic pass that marks overdue doses as missed

        Failures for one patient are logged and do not stop the others.
        """
        def _detect(session: Session) -> List[models.MedicationEvent]:
            if patient_id is not None:
                patient_ids = [patient_id]
            else:
                patient_ids = [row.patient_id for row in session.query(models.MedicationCommand.patient_id).filter(
                    models.MedicationCommand.status == CommandStatus.ACTIVE,
                ).distinct().order_by(models.MedicationCommand.patient_id)]

            recorded = []
            for pid in patient_ids:
                try:
                    recorded.extend(self.detect_missed_for_patient(session, pid))
                except Exception:
                    session.rollback()
                    logger.exception(f"Missed dose detection failed for patient {pid}")
            if recorded:
                logger.info(f"Missed dose detection recorded {len(recorded)} missed doses")
            return recorded

        if db:
            return _detect(db)

        with get_db_context() as session:
            events = _detect(session)
            for e in events:
                session.expunge(e)
            return events

    # ==================== QUERIES ====================

    def query(
        self,
        session: Session,
        patient_id: Optional[int] = None,
        command_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_types: Optional[Iterable[str]] = None,
        correlation_id: Optional[str] = None,
        archive_filter: ArchiveFilter = ArchiveFilter.EXCLUDE_ARCHIVED,
        belongs_to_date: Optional[date] = None
    ) -> List[models.MedicationEvent]:
        query = session.query(models.MedicationEvent)
        if patient_id is not None:
            query = query.filter(models.MedicationEvent.patient_id == patient_id)
        if command_id is not None:
            query = query.filter(models.MedicationEvent.command_id == command_id)
        if start is not None:
            query = query.filter(models.MedicationEvent.event_timestamp >= to_naive_utc(start))
        if end is not None:
            query = query.filter(models.MedicationEvent.event_timestamp < to_naive_utc(end))
        if event_types:
            try:
                kinds = [EventType(getattr(t, "value", t)) for t in event_types]
            except ValueError as e:
                raise ValidationError(str(e), field="event_types")
            query = query.filter(models.MedicationEvent.event_type.in_(kinds))
        if correlation_id is not None:
            query = query.filter(models.MedicationEvent.correlation_id == correlation_id)

        archive_filter = ArchiveFilter(archive_filter)
        if archive_filter == ArchiveFilter.EXCLUDE_ARCHIVED:
            query = query.filter(models.MedicationEvent.is_archived.is_(False))
        elif archive_filter == ArchiveFilter.ONLY_ARCHIVED:
            query = query.filter(models.MedicationEvent.is_archived.is_(True))
        if belongs_to_date is not None:
            query = query.filter(models.MedicationEvent.belongs_to_date == belongs_to_date)

        return query.order_by(models.MedicationEvent.event_timestamp, models.MedicationEvent.id).all()

    async def query_events(
        self,
        patient_id: Optional[int] = None,
        command_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_types: Optional[Iterable[str]] = None,
        correlation_id: Optional[str] = None,
        archive_filter: ArchiveFilter = ArchiveFilter.EXCLUDE_ARCHIVED,
        belongs_to_date: Optional[date] = None,
        db: Optional[Session] = None
    ) -> List[models.MedicationEvent]:
        """Filtered event read; archived events are excluded unless asked for"""
        def _query(session: Session) -> List[models.MedicationEvent]:
            return self.query(session, patient_id, command_id, start, end, event_types,
                              correlation_id, archive_filter, belongs_to_date)

        if db:
            return _query(db)

        with get_db_context() as session:
            events = _query(session)
            for e in events:
                session.expunge(e)
            return events

    async def get_event(self, event_id: int, db: Optional[Session] = None) -> models.MedicationEvent:
        if db:
            return self.load(db, event_id)

        with get_db_context() as session:
            event = self.load(session, event_id)
            session.expunge(event)
            return event

    async def get_chain(self, correlation_id: str, db: Optional[Session] = None) -> List[models.MedicationEvent]:
        """All events sharing a correlation id, archived or not, in order"""
        events = await self.query_events(
            correlation_id=correlation_id,
            archive_filter=ArchiveFilter.INCLUDE_ALL,
            db=db,
        )
        if not events:
            raise NotFoundError(f"No events for correlation id {correlation_id}", correlation_id=correlation_id)
        return events

    async def list_today(
        self,
        patient_id: int,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> List[Dict[str, Any]]:
        """Today's expected doses with their live state"""
        now = now or self.clock()

        def _today(session: Session) -> List[Dict[str, Any]]:
            zone = preferences_service.load_zone_or_utc(session, patient_id)
            today = local_date(now, zone)
            start, end = day_boundaries(today, zone)

            commands = session.query(models.MedicationCommand).filter(
                models.MedicationCommand.patient_id == patient_id,
                models.MedicationCommand.status == CommandStatus.ACTIVE,
            ).order_by(models.MedicationCommand.id).all()

            events = session.query(models.MedicationEvent).filter(
                models.MedicationEvent.patient_id == patient_id,
                models.MedicationEvent.scheduled_for >= start,
                models.MedicationEvent.scheduled_for < end,
            ).all()
            states = occurrence_states(events)

            items = []
            for command in commands:
                for occurrence in command_service.expand(session, command, today, today, zone):
                    occ = states.get((command.id, occurrence.scheduled_for))
                    taken = occ.taken_event if occ else None
                    items.append({
                        **occurrence.to_dict(),
                        "medication_name": command.medication_name,
                        "dosage": command.dosage,
                        "state": occ.state if occ else "pending",
                        "taken_event_id": taken.id if taken else None,
                        "correlation_id": occ.correlation_id if occ else None,
                    })
            items.sort(key=lambda item: (item["scheduled_for"], item["command_id"]))
            return items

        if db:
            return _today(db)

        with get_db_context() as session:
            return _today(session)


# Singleton instance
event_service = EventService()
