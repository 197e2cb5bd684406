"""
Command Store
Prescribed medications, their schedule revisions and lifecycle transitions
"""

import logging
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass
from datetime import datetime, date, timedelta
from zoneinfo import ZoneInfo
from sqlalchemy.orm import Session

from database import get_db_context
import models
from models import CommandStatus, Frequency, MedicationClass, TERMINAL_STATUSES
from exceptions import ConflictError, NotFoundError, ValidationError
from services.preferences_service import preferences_service
from tools.notification_service import notification_dispatcher
from tools.time_buckets import (
    classify_medication, classify_time_bucket, day_boundaries, get_zone, local_date,
    local_to_utc, parse_hhmm, utc_now,
)


logger = logging.getLogger(__name__)

MAX_EXPANSION_DAYS = 366

SCHEDULE_FIELDS = {"frequency", "times", "days_of_week"}
UPDATABLE_FIELDS = {
    "medication_name", "dosage", "instructions", "medication_class",
    "grace_period_minutes", "end_date", "is_indefinite", "reminders_enabled",
    "reminder_minutes_before",
} | SCHEDULE_FIELDS

ALLOWED_TRANSITIONS = {
    CommandStatus.ACTIVE: {
        CommandStatus.PAUSED, CommandStatus.HELD,
        CommandStatus.DISCONTINUED, CommandStatus.COMPLETED,
    },
    CommandStatus.PAUSED: {CommandStatus.ACTIVE, CommandStatus.DISCONTINUED},
    CommandStatus.HELD: {CommandStatus.DISCONTINUED},
    CommandStatus.DISCONTINUED: set(),
    CommandStatus.COMPLETED: set(),
}


@dataclass
class Occurrence:
    """A single expected dose derived from a command's schedule"""
    command_id: int
    patient_id: int
    scheduled_for: datetime  # naive UTC
    local_date: date
    local_time: str
    time_bucket: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "patient_id": self.patient_id,
            "scheduled_for": self.scheduled_for,
            "local_date": self.local_date,
            "local_time": self.local_time,
            "time_bucket": self.time_bucket,
        }


def _coerce_enum(enum_cls, value, field: str):
    try:
        return enum_cls(getattr(value, "value", value))
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}'; expected one of: {allowed}", field=field)


def _validate_times(times: Optional[List[str]], is_prn: bool) -> List[str]:
    times = list(times or [])
    if not times and not is_prn:
        raise ValidationError("At least one dose time is required for scheduled medications", field="times")
    for value in times:
        try:
            parse_hhmm(value)
        except ValueError as e:
            raise ValidationError(str(e), field="times")
    return sorted(set(times))


def _validate_days(frequency: Frequency, days_of_week: Optional[List[int]]) -> Optional[List[int]]:
    if days_of_week is not None:
        if any(not isinstance(d, int) or d < 0 or d > 6 for d in days_of_week):
            raise ValidationError("days_of_week must contain integers 0 (Monday) to 6 (Sunday)", field="days_of_week")
        days_of_week = sorted(set(days_of_week))
    if frequency == Frequency.WEEKLY and not days_of_week:
        raise ValidationError("Weekly schedules need at least one day of week", field="days_of_week")
    return days_of_week


def _validate_dates(start_date: Optional[date], end_date: Optional[date], is_indefinite: bool) -> None:
    if start_date is None:
        raise ValidationError("start_date is required", field="start_date")
    if end_date is not None and end_date <= start_date:
        raise ValidationError("end_date must be after start_date", field="end_date")
    if is_indefinite and end_date is not None:
        raise ValidationError("An indefinite command cannot have an end_date", field="end_date")


def _validate_reminders(offsets: Optional[List[int]]) -> List[int]:
    offsets = list(offsets or [])
    if any(not isinstance(m, int) or m < 0 for m in offsets):
        raise ValidationError("reminder_minutes_before must be non-negative integers", field="reminder_minutes_before")
    return sorted(set(offsets), reverse=True)


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", field=field)
    return str(value).strip()


class CommandService:
    """
    Service for medication command management
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock

    # ==================== SESSION-LEVEL HELPERS ====================

    def load(self, session: Session, command_id: int) -> models.MedicationCommand:
        command = session.query(models.MedicationCommand).filter(
            models.MedicationCommand.id == command_id
        ).first()
        if command is None:
            raise NotFoundError(f"Command {command_id} not found", command_id=command_id)
        return command

    def revision_for(
        self,
        command: models.MedicationCommand,
        day: date
    ) -> Optional[models.MedicationScheduleRevision]:
        """The schedule revision in force on a given date"""
        for revision in reversed(command.revisions):
            if revision.effective_from <= day and (
                revision.effective_until is None or day <= revision.effective_until
            ):
                return revision
        return None

    def expand(
        self,
        session: Session,
        command: models.MedicationCommand,
        start_date: date,
        end_date: date,
        zone: Optional[ZoneInfo] = None
    ) -> List[Occurrence]:
        """Derive occurrences without writing anything"""
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date", field="end_date")
        if (end_date - start_date).days >= MAX_EXPANSION_DAYS:
            raise ValidationError(f"Cannot expand more than {MAX_EXPANSION_DAYS} days at once")
        if command.status != CommandStatus.ACTIVE or command.is_prn:
            return []

        zone = zone or preferences_service.load_zone_or_utc(session, command.patient_id)
        anchors = preferences_service.load_anchors(session, command.patient_id)

        first = max(start_date, command.start_date)
        last = end_date if command.end_date is None else min(end_date, command.end_date)

        occurrences = []
        day = first
        while day <= last:
            revision = self.revision_for(command, day)
            if revision is not None and self._runs_on(revision, day):
                for hhmm in revision.times or []:
                    scheduled_for = local_to_utc(day, parse_hhmm(hhmm), zone)
                    occurrences.append(Occurrence(
                        command_id=command.id,
                        patient_id=command.patient_id,
                        scheduled_for=scheduled_for,
                        local_date=day,
                        local_time=hhmm,
                        time_bucket=classify_time_bucket(parse_hhmm(hhmm), anchors),
                    ))
            day += timedelta(days=1)
        return occurrences

    def _runs_on(self, revision: models.MedicationScheduleRevision, day: date) -> bool:
        if revision.frequency == Frequency.AS_NEEDED:
            return False
        if revision.days_of_week:
            return day.weekday() in revision.days_of_week
        return True

    def _day_under_way(self, session: Session, command: models.MedicationCommand, day: date) -> bool:
        """Whether any of the day's doses under the current schedule is due or has events"""
        now = self.clock()
        if any(o.scheduled_for <= now for o in self.expand(session, command, day, day)):
            return True
        zone = preferences_service.load_zone_or_utc(session, command.patient_id)
        start, end = day_boundaries(day, zone)
        return session.query(models.MedicationEvent.id).filter(
            models.MedicationEvent.command_id == command.id,
            models.MedicationEvent.scheduled_for >= start,
            models.MedicationEvent.scheduled_for < end,
        ).first() is not None

    def _patient_today(self, session: Session, patient_id: int) -> date:
        zone = preferences_service.load_zone_or_utc(session, patient_id)
        return local_date(self.clock(), zone)

    # ==================== CRUD ====================

    async def create_command(
        self,
        patient_id: int,
        medication_name: str,
        dosage: str,
        frequency: str,
        start_date: date,
        times: Optional[List[str]] = None,
        end_date: Optional[date] = None,
        is_indefinite: bool = False,
        days_of_week: Optional[List[int]] = None,
        instructions: Optional[str] = None,
        medication_class: Optional[str] = None,
        grace_period_minutes: Optional[int] = None,
        is_prn: bool = False,
        reminders_enabled: bool = True,
        reminder_minutes_before: Optional[List[int]] = None,
        created_by: str = "system",
        db: Optional[Session] = None
    ) -> models.MedicationCommand:
        """
        Create a medication command with its first schedule revision

        Raises:
            ValidationError: when any field is malformed or inconsistent
        """
        medication_name = _require_text(medication_name, "medication_name")
        dosage = _require_text(dosage, "dosage")
        frequency = _coerce_enum(Frequency, frequency, "frequency")
        is_prn = bool(is_prn or frequency == Frequency.AS_NEEDED)
        times = _validate_times(times, is_prn)
        days_of_week = _validate_days(frequency, days_of_week)
        _validate_dates(start_date, end_date, is_indefinite)
        reminder_minutes_before = _validate_reminders(reminder_minutes_before)
        if grace_period_minutes is not None and grace_period_minutes < 0:
            raise ValidationError("grace_period_minutes must not be negative", field="grace_period_minutes")

        if medication_class is None:
            med_class = MedicationClass.PRN if is_prn else MedicationClass(classify_medication(medication_name))
        else:
            med_class = _coerce_enum(MedicationClass, medication_class, "medication_class")

        def _create(session: Session) -> models.MedicationCommand:
            now = self.clock()
            command = models.MedicationCommand(
                patient_id=patient_id,
                medication_name=medication_name,
                dosage=dosage,
                instructions=instructions,
                medication_class=med_class,
                grace_period_minutes=grace_period_minutes,
                frequency=frequency,
                times=times,
                days_of_week=days_of_week,
                start_date=start_date,
                end_date=end_date,
                is_indefinite=is_indefinite,
                reminders_enabled=reminders_enabled,
                reminder_minutes_before=reminder_minutes_before,
                status=CommandStatus.ACTIVE,
                is_prn=is_prn,
                version=1,
                created_by=created_by,
                updated_by=created_by,
                created_at=now,
                updated_at=now,
            )
            session.add(command)
            session.flush()
            session.add(models.MedicationScheduleRevision(
                command_id=command.id,
                revision=1,
                frequency=frequency,
                times=times,
                days_of_week=days_of_week,
                effective_from=start_date,
            ))
            session.commit()
            session.refresh(command)

            logger.info(
                f"Created command {command.id} for patient {patient_id}: "
                f"{medication_name} {dosage} ({frequency.value})"
            )
            return command

        if db:
            return _create(db)

        with get_db_context() as session:
            command = _create(session)
            session.expunge(command)
            return command

    async def get_command(
        self,
        command_id: int,
        db: Optional[Session] = None
    ) -> models.MedicationCommand:
        if db:
            return self.load(db, command_id)

        with get_db_context() as session:
            command = self.load(session, command_id)
            session.expunge(command)
            return command

    async def list_commands(
        self,
        patient_id: int,
        status: Optional[str] = None,
        db: Optional[Session] = None
    ) -> List[models.MedicationCommand]:
        def _list(session: Session) -> List[models.MedicationCommand]:
            query = session.query(models.MedicationCommand).filter(
                models.MedicationCommand.patient_id == patient_id
            )
            if status:
                query = query.filter(
                    models.MedicationCommand.status == _coerce_enum(CommandStatus, status, "status")
                )
            return query.order_by(models.MedicationCommand.id).all()

        if db:
            return _list(db)

        with get_db_context() as session:
            commands = _list(session)
            for command in commands:
                session.expunge(command)
            return commands

    # ==================== UPDATES ====================

    def _compare_and_swap(
        self,
        session: Session,
        command_id: int,
        expected_version: int,
        values: Dict[str, Any]
    ) -> None:
        values = dict(values)
        values["version"] = expected_version + 1
        updated = session.query(models.MedicationCommand).filter(
            models.MedicationCommand.id == command_id,
            models.MedicationCommand.version == expected_version,
        ).update(values, synchronize_session=False)

        if updated == 0:
            session.rollback()
            current = session.query(models.MedicationCommand.version).filter(
                models.MedicationCommand.id == command_id
            ).scalar()
            if current is None:
                raise NotFoundError(f"Command {command_id} not found", command_id=command_id)
            raise ConflictError(
                f"Command {command_id} was modified concurrently "
                f"(expected version {expected_version}, found {current})",
                expected_version=expected_version,
                actual_version=current,
            )

    async def update_command(
        self,
        command_id: int,
        patch: Dict[str, Any],
        expected_version: int,
        updated_by: str = "system",
        effective_from: Optional[date] = None,
        db: Optional[Session] = None
    ) -> models.MedicationCommand:
        """
        Apply a partial update guarded by an optimistic version check

        Schedule changes (frequency, times, days_of_week) take effect from
        `effective_from` and never rewrite dates before it. The default is
        the patient's today, or tomorrow once a dose of today is due or
        has events under the current schedule.

        Raises:
            ValidationError: unknown field, bad value or terminal command
            ConflictError: expected_version does not match the stored version
            NotFoundError: no such command
        """
        if not patch:
            raise ValidationError("Update contains no fields")
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}", fields=sorted(unknown))

        def _update(session: Session) -> models.MedicationCommand:
            command = self.load(session, command_id)
            if command.status in TERMINAL_STATUSES:
                raise ValidationError(
                    f"Command {command_id} is {command.status.value} and can no longer change",
                    status=command.status.value,
                )
            if command.version != expected_version:
                raise ConflictError(
                    f"Command {command_id} was modified concurrently "
                    f"(expected version {expected_version}, found {command.version})",
                    expected_version=expected_version,
                    actual_version=command.version,
                )

            values = self._validated_patch(command, patch)
            schedule_changed = any(
                field in values and values[field] != getattr(command, field)
                for field in SCHEDULE_FIELDS
            )

            today = self._patient_today(session, command.patient_id)
            starts = effective_from or max(today, command.start_date)
            if schedule_changed and starts < today:
                raise ValidationError(
                    "Schedule changes cannot take effect in the past",
                    effective_from=starts.isoformat(),
                )
            if schedule_changed and starts == today and self._day_under_way(session, command, today):
                if effective_from is not None:
                    raise ValidationError(
                        "Today's doses are already under way; the new schedule can start tomorrow",
                        effective_from=starts.isoformat(),
                    )
                starts = today + timedelta(days=1)

            values["updated_by"] = updated_by
            values["updated_at"] = self.clock()
            self._compare_and_swap(session, command_id, expected_version, values)

            if schedule_changed:
                self._open_revision(session, command, values, starts)

            session.commit()
            session.refresh(command)
            logger.info(
                f"Updated command {command_id} to version {command.version} "
                f"(fields: {sorted(patch)}, schedule_changed={schedule_changed})"
            )
            return command

        if db:
            return _update(db)

        with get_db_context() as session:
            command = _update(session)
            session.expunge(command)
            return command

    def _validated_patch(self, command: models.MedicationCommand, patch: Dict[str, Any]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        if "medication_name" in patch:
            values["medication_name"] = _require_text(patch["medication_name"], "medication_name")
        if "dosage" in patch:
            values["dosage"] = _require_text(patch["dosage"], "dosage")
        if "instructions" in patch:
            values["instructions"] = patch["instructions"]
        if "medication_class" in patch:
            values["medication_class"] = _coerce_enum(MedicationClass, patch["medication_class"], "medication_class")
        if "grace_period_minutes" in patch:
            grace = patch["grace_period_minutes"]
            if grace is not None and grace < 0:
                raise ValidationError("grace_period_minutes must not be negative", field="grace_period_minutes")
            values["grace_period_minutes"] = grace
        if "reminders_enabled" in patch:
            values["reminders_enabled"] = bool(patch["reminders_enabled"])
        if "reminder_minutes_before" in patch:
            values["reminder_minutes_before"] = _validate_reminders(patch["reminder_minutes_before"])

        frequency = _coerce_enum(Frequency, patch.get("frequency", command.frequency), "frequency")
        if frequency == Frequency.AS_NEEDED and not command.is_prn:
            raise ValidationError("A scheduled command cannot become as-needed", field="frequency")
        if "frequency" in patch:
            values["frequency"] = frequency
        if "times" in patch:
            values["times"] = _validate_times(patch["times"], command.is_prn)
        if "days_of_week" in patch or "frequency" in patch:
            values["days_of_week"] = _validate_days(frequency, patch.get("days_of_week", command.days_of_week))

        end_date = patch.get("end_date", command.end_date)
        is_indefinite = patch.get("is_indefinite", command.is_indefinite)
        if "end_date" in patch or "is_indefinite" in patch:
            _validate_dates(command.start_date, end_date, bool(is_indefinite))
            values["end_date"] = end_date
            values["is_indefinite"] = bool(is_indefinite)
        return values

    def _open_revision(
        self,
        session: Session,
        command: models.MedicationCommand,
        values: Dict[str, Any],
        starts: date
    ) -> None:
        revisions = session.query(models.MedicationScheduleRevision).filter(
            models.MedicationScheduleRevision.command_id == command.id
        ).order_by(models.MedicationScheduleRevision.revision).all()

        for revision in revisions:
            if revision.effective_until is None or revision.effective_until >= starts:
                revision.effective_until = starts - timedelta(days=1)

        current = revisions[-1] if revisions else None
        session.add(models.MedicationScheduleRevision(
            command_id=command.id,
            revision=(current.revision + 1) if current else 1,
            frequency=values.get("frequency", current.frequency if current else command.frequency),
            times=values.get("times", current.times if current else command.times),
            days_of_week=values.get("days_of_week", current.days_of_week if current else command.days_of_week),
            effective_from=starts,
        ))

    async def change_status(
        self,
        command_id: int,
        new_status: str,
        actor: str = "system",
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
        today: Optional[date] = None,
        db: Optional[Session] = None
    ) -> models.MedicationCommand:
        """
        Move a command through its lifecycle

        Allowed: active <-> paused, active -> held, any non-terminal ->
        discontinued, active -> completed once the end date has passed.
        """
        target = _coerce_enum(CommandStatus, new_status, "status")

        def _change(session: Session) -> models.MedicationCommand:
            command = self.load(session, command_id)
            current = command.status
            if target not in ALLOWED_TRANSITIONS[current]:
                raise ValidationError(
                    f"Cannot change command {command_id} from {current.value} to {target.value}",
                    from_status=current.value,
                    to_status=target.value,
                )
            if target == CommandStatus.COMPLETED:
                local_today = today or self._patient_today(session, command.patient_id)
                if command.end_date is None or command.end_date >= local_today:
                    raise ValidationError(
                        f"Command {command_id} cannot complete before its end date has passed",
                        end_date=command.end_date.isoformat() if command.end_date else None,
                    )

            version = command.version if expected_version is None else expected_version
            self._compare_and_swap(session, command_id, version, {
                "status": target,
                "status_reason": reason,
                "updated_by": actor,
                "updated_at": self.clock(),
            })
            session.commit()
            session.refresh(command)
            logger.info(
                f"Command {command_id} status {current.value} -> {target.value} by {actor}"
            )
            return command

        if db:
            return _change(db)

        with get_db_context() as session:
            command = _change(session)
            session.expunge(command)
            return command

    # ==================== DERIVED READS ====================

    async def expand_occurrences(
        self,
        command_id: int,
        start_date: date,
        end_date: date,
        tz: Optional[str] = None,
        db: Optional[Session] = None
    ) -> List[Occurrence]:
        """
        Expand a command into dose occurrences over an inclusive date range

        Read-only and idempotent: the same inputs always yield the same list.
        """
        zone = None
        if tz is not None:
            try:
                zone = get_zone(tz)
            except ValueError as e:
                raise ValidationError(str(e), field="tz")

        def _expand(session: Session) -> List[Occurrence]:
            command = self.load(session, command_id)
            return self.expand(session, command, start_date, end_date, zone)

        if db:
            return _expand(db)

        with get_db_context() as session:
            return _expand(session)

    async def due_reminders(
        self,
        patient_id: int,
        now: Optional[datetime] = None,
        interval_minutes: int = 15,
        db: Optional[Session] = None
    ) -> List[Dict[str, Any]]:
        """
        Emit reminder intents whose reminder time falls in [now, now + interval)
        """
        now = now or self.clock()
        window_end = now + timedelta(minutes=interval_minutes)

        def _due(session: Session) -> List[Dict[str, Any]]:
            zone = preferences_service.load_zone_or_utc(session, patient_id)
            today = local_date(now, zone)
            commands = session.query(models.MedicationCommand).filter(
                models.MedicationCommand.patient_id == patient_id,
                models.MedicationCommand.status == CommandStatus.ACTIVE,
                models.MedicationCommand.reminders_enabled.is_(True),
            ).all()

            due = []
            for command in commands:
                offsets = command.reminder_minutes_before or [0]
                for occurrence in self.expand(session, command, today, today + timedelta(days=1), zone):
                    for minutes_before in offsets:
                        remind_at = occurrence.scheduled_for - timedelta(minutes=minutes_before)
                        if now <= remind_at < window_end:
                            notification_dispatcher.send_reminder_due(
                                patient_id=patient_id,
                                command_id=command.id,
                                medication_name=command.medication_name,
                                dosage=command.dosage,
                                scheduled_for=occurrence.scheduled_for,
                                minutes_before=minutes_before,
                            )
                            due.append({
                                **occurrence.to_dict(),
                                "remind_at": remind_at,
                                "minutes_before": minutes_before,
                            })
            if due:
                logger.info(f"Dispatched {len(due)} reminders for patient {patient_id}")
            return due

        if db:
            return _due(db)

        with get_db_context() as session:
            return _due(session)


# Singleton instance
command_service = CommandService()
