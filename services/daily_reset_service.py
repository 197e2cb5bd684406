"""
Daily Reset Service
Closes each patient's local day into an immutable summary and archives its events
"""

import asyncio
import logging
import time as time_module
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, date
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import engine_config, settings
from database import engine, get_db_context
import models
from exceptions import PreferencesMissingError, ValidationError
from services.adherence_analytics_service import (
    DayStats, adherence_analytics_service, compute_day_stats,
)
from services.event_service import ArchiveFilter, event_service
from services.preferences_service import preferences_service
from tools.notification_service import notification_dispatcher
from tools.time_buckets import (
    closing_date, day_boundaries, get_zone, is_within_midnight_window, local_date, utc_now,
)


logger = logging.getLogger(__name__)


@dataclass
class PatientResetOutcome:
    """What happened for one patient in a reset run"""
    patient_id: int
    status: str  # archived, dry_run, skipped_*, failed
    closing_date: Optional[date] = None
    events_archived: int = 0
    summary_id: Optional[int] = None
    stats: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "status": self.status,
            "closing_date": self.closing_date,
            "events_archived": self.events_archived,
            "summary_id": self.summary_id,
            "stats": self.stats,
            "error": self.error,
        }


@dataclass
class DailyResetReport:
    """Totals for one batch run"""
    started_at: datetime
    duration_ms: int = 0
    patients_checked: int = 0
    patients_at_midnight: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    events_archived: int = 0
    summaries_created: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    outcomes: List[PatientResetOutcome] = field(default_factory=list)

    def add(self, outcome: PatientResetOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status != "skipped_not_midnight" and outcome.status != "skipped_preferences":
            self.patients_at_midnight += 1
        if outcome.status in ("archived", "dry_run"):
            self.successful += 1
            self.events_archived += outcome.events_archived
            if outcome.summary_id is not None:
                self.summaries_created += 1
        elif outcome.status == "failed":
            self.failed += 1
            self.failures.append({"patient_id": outcome.patient_id, "error": outcome.error})
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
            "patients_checked": self.patients_checked,
            "patients_at_midnight": self.patients_at_midnight,
            "successful": self.successful,
            "skipped": self.skipped,
            "failed": self.failed,
            "events_archived": self.events_archived,
            "summaries_created": self.summaries_created,
            "failures": self.failures,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def _chunks(items: List[int], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class DailyResetService:
    """
    Service for end-of-day archival

    Each patient's day is closed in a single transaction: the summary and
    every archive flag commit together or not at all.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock

    # ==================== SINGLE PATIENT ====================

    def _summary_for(self, session: Session, patient_id: int, day: date) -> Optional[models.DailySummary]:
        return session.query(models.DailySummary).filter(
            models.DailySummary.patient_id == patient_id,
            models.DailySummary.summary_date == day,
        ).first()

    def _build_summary(
        self,
        patient_id: int,
        day: date,
        tz_name: str,
        stats: DayStats,
        event_ids: List[int]
    ) -> models.DailySummary:
        delays = stats.delay_stats()
        return models.DailySummary(
            patient_id=patient_id,
            summary_date=day,
            timezone=tz_name,
            total_scheduled=stats.scheduled,
            total_taken=stats.taken,
            total_taken_full=stats.taken_full,
            total_taken_partial=stats.taken_partial,
            total_missed=stats.missed,
            total_skipped=stats.skipped,
            total_snoozed=stats.snoozed,
            total_undone=stats.undone,
            total_corrected=stats.corrected,
            total_unscheduled_taken=stats.unscheduled_taken,
            total_on_time=stats.on_time,
            adherence_rate=stats.adherence_rate,
            on_time_rate=stats.on_time_rate,
            average_delay_minutes=delays["average"],
            median_delay_minutes=delays["median"],
            max_delay_minutes=delays["max"],
            delay_samples=list(stats.delay_samples),
            missed_by_bucket=dict(stats.missed_by_bucket),
            medication_breakdown={k: v.counts() for k, v in stats.breakdown.items()},
            archived_event_ids=list(event_ids),
            total_archived=len(event_ids),
            created_by=engine_config.ARCHIVE_REASON,
            created_at=self.clock(),
        )

    def close_day(
        self,
        session: Session,
        patient_id: int,
        tz_name: Optional[str],
        now: datetime,
        day: Optional[date] = None,
        check_window: bool = True,
        dry_run: bool = False
    ) -> PatientResetOutcome:
        """Close one patient's day; raises PreferencesMissingError on a bad timezone"""
        try:
            zone = get_zone(tz_name)
        except ValueError:
            raise PreferencesMissingError(
                f"Patient {patient_id} has no usable timezone ({tz_name!r})",
                patient_id=patient_id,
            )

        if check_window and not is_within_midnight_window(now, zone):
            return PatientResetOutcome(patient_id=patient_id, status="skipped_not_midnight")

        day = day or closing_date(now, zone)
        if self._summary_for(session, patient_id, day) is not None:
            logger.info(f"Patient {patient_id}: {day} already summarized, skipping")
            return PatientResetOutcome(patient_id=patient_id, status="skipped_existing", closing_date=day)

        start, end = day_boundaries(day, zone)
        events = event_service.query(
            session,
            patient_id=patient_id,
            start=start,
            end=end,
            archive_filter=ArchiveFilter.EXCLUDE_ARCHIVED,
        )
        if not events:
            logger.info(f"Patient {patient_id}: no events on {day}, skipping")
            return PatientResetOutcome(patient_id=patient_id, status="skipped_no_events", closing_date=day)

        stats = compute_day_stats(events, day=day)
        event_ids = [e.id for e in events]
        if dry_run:
            return PatientResetOutcome(
                patient_id=patient_id,
                status="dry_run",
                closing_date=day,
                events_archived=0,
                stats=stats.counts(),
            )

        try:
            summary = self._build_summary(patient_id, day, zone.key, stats, event_ids)
            session.add(summary)
            session.flush()

            archived_at = self.clock()
            archived = 0
            for batch in _chunks(event_ids, engine_config.ARCHIVE_BATCH_SIZE):
                batch_query = session.query(models.MedicationEvent).filter(
                    models.MedicationEvent.id.in_(batch),
                    models.MedicationEvent.is_archived.is_(False),
                )
                archived += models.mark_archived(batch_query, {
                    "is_archived": True,
                    "archived_at": archived_at,
                    "archived_reason": engine_config.ARCHIVE_REASON,
                    "belongs_to_date": day,
                    "daily_summary_id": summary.id,
                })
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(f"Patient {patient_id}: {day} summarized concurrently, skipping")
            return PatientResetOutcome(patient_id=patient_id, status="skipped_existing", closing_date=day)
        except Exception:
            session.rollback()
            raise

        logger.info(
            f"Patient {patient_id}: closed {day} with {archived} events archived "
            f"(adherence {stats.adherence_rate}%)"
        )
        try:
            adherence_analytics_service.alert_on_risk(session, patient_id, day)
        except Exception:
            logger.exception(f"Patient {patient_id}: risk check after closing {day} failed")
        return PatientResetOutcome(
            patient_id=patient_id,
            status="archived",
            closing_date=day,
            events_archived=archived,
            summary_id=summary.id,
            stats=stats.counts(),
        )

    async def execute_for_patient(
        self,
        patient_id: int,
        closing_day: Optional[date] = None,
        now: Optional[datetime] = None,
        dry_run: bool = False,
        db: Optional[Session] = None
    ) -> PatientResetOutcome:
        """
        Close a specific patient's day regardless of the midnight window

        Raises:
            PreferencesMissingError: patient has no usable timezone
            ValidationError: closing_day is today or in the future
        """
        now = now or self.clock()

        def _execute(session: Session) -> PatientResetOutcome:
            zone = preferences_service.load_zone(session, patient_id)
            if closing_day is not None and closing_day >= local_date(now, zone):
                raise ValidationError(
                    f"{closing_day} has not ended yet for patient {patient_id}",
                    closing_date=closing_day.isoformat(),
                )
            return self.close_day(
                session, patient_id, zone.key, now,
                day=closing_day, check_window=False, dry_run=dry_run,
            )

        if db:
            return _execute(db)

        with get_db_context() as session:
            return _execute(session)

    # ==================== BATCH RUN ====================

    def _isolated_close(self, patient_id: int, tz_name: Optional[str], now: datetime) -> PatientResetOutcome:
        with get_db_context() as session:
            return self.close_day(session, patient_id, tz_name, now)

    async def run(
        self,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> DailyResetReport:
        """
        Check every patient and close the day for those at local midnight

        Per-patient failures are recorded in the report and never stop the
        run. The report is persisted as a DailyResetExecution row.
        """
        now = now or self.clock()
        started = time_module.monotonic()
        report = DailyResetReport(started_at=now)

        def _patients(session: Session) -> List[tuple]:
            return [(p.patient_id, p.timezone) for p in preferences_service.list_patients(session)]

        if db:
            patients = _patients(db)
        else:
            with get_db_context() as session:
                patients = _patients(session)
        report.patients_checked = len(patients)

        notification_dispatcher.bind_loop(asyncio.get_running_loop())
        workers = 1 if engine.dialect.name == "sqlite" else max(1, settings.DAILY_RESET_MAX_WORKERS)
        semaphore = asyncio.Semaphore(workers)

        async def _one(patient_id: int, tz_name: Optional[str]) -> PatientResetOutcome:
            async with semaphore:
                try:
                    if db:
                        return self.close_day(db, patient_id, tz_name, now)
                    return await asyncio.to_thread(self._isolated_close, patient_id, tz_name, now)
                except PreferencesMissingError as e:
                    logger.warning(f"Skipping patient {patient_id}: {e.message}")
                    return PatientResetOutcome(patient_id=patient_id, status="skipped_preferences", error=e.message)
                except Exception as e:
                    logger.exception(f"Daily reset failed for patient {patient_id}")
                    return PatientResetOutcome(patient_id=patient_id, status="failed", error=str(e))

        outcomes = await asyncio.gather(*[_one(pid, tz) for pid, tz in patients])
        for outcome in outcomes:
            report.add(outcome)
        report.duration_ms = int((time_module.monotonic() - started) * 1000)

        self._log_execution(report, db)
        logger.info(
            f"Daily reset: {report.patients_checked} checked, {report.patients_at_midnight} at midnight, "
            f"{report.successful} closed, {report.skipped} skipped, {report.failed} failed, "
            f"{report.events_archived} events archived in {report.duration_ms}ms"
        )
        return report

    def _log_execution(self, report: DailyResetReport, db: Optional[Session]) -> None:
        def _log(session: Session) -> None:
            session.add(models.DailyResetExecution(
                started_at=report.started_at,
                duration_ms=report.duration_ms,
                patients_checked=report.patients_checked,
                patients_at_midnight=report.patients_at_midnight,
                successful=report.successful,
                skipped=report.skipped,
                failed=report.failed,
                events_archived=report.events_archived,
                summaries_created=report.summaries_created,
                failures=report.failures,
            ))
            session.commit()

        try:
            if db:
                _log(db)
            else:
                with get_db_context() as session:
                    _log(session)
        except Exception:
            logger.exception("Failed to record daily reset execution")

    async def run_forever(self, interval_minutes: Optional[int] = None) -> None:
        """Detect missed doses, then run the batch, on a fixed interval until cancelled"""
        interval = interval_minutes or settings.DAILY_RESET_INTERVAL_MINUTES
        logger.info(f"Daily reset loop started (every {interval} minutes)")
        while True:
            try:
                await event_service.detect_missed()
            except Exception:
                logger.exception("Missed dose detection run failed")
            try:
                await self.run()
            except Exception:
                logger.exception("Daily reset run failed")
            await asyncio.sleep(interval * 60)

    # ==================== SUMMARIES ====================

    async def get_daily_summary(
        self,
        patient_id: int,
        day: date,
        db: Optional[Session] = None
    ) -> Optional[models.DailySummary]:
        if db:
            return self._summary_for(db, patient_id, day)

        with get_db_context() as session:
            summary = self._summary_for(session, patient_id, day)
            if summary:
                session.expunge(summary)
            return summary

    async def get_daily_summaries(
        self,
        patient_id: int,
        start_date: date,
        end_date: date,
        db: Optional[Session] = None
    ) -> List[models.DailySummary]:
        def _list(session: Session) -> List[models.DailySummary]:
            return session.query(models.DailySummary).filter(
                models.DailySummary.patient_id == patient_id,
                models.DailySummary.summary_date >= start_date,
                models.DailySummary.summary_date <= end_date,
            ).order_by(models.DailySummary.summary_date).all()

        if db:
            return _list(db)

        with get_db_context() as session:
            summaries = _list(session)
            for s in summaries:
                session.expunge(s)
            return summaries


# Singleton instance
daily_reset_service = DailyResetService()
