"""
Adherence Analytics Service
Adherence metrics, patterns and risk derived from daily summaries and live events
"""

import logging
import statistics
from typing import Any, Callable, Dict, Iterable, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, date, timedelta
from collections import defaultdict
from zoneinfo import ZoneInfo
from sqlalchemy.orm import Session
from sqlalchemy import func

from config import engine_config
from database import get_db_context
import models
from exceptions import ValidationError
from services.event_service import (
    ADJUSTMENT_EVENT_TYPES, OccurrenceState, TAKEN_STATES, occurrence_states,
)
from services.preferences_service import preferences_service
from tools.notification_service import notification_dispatcher
from tools.time_buckets import day_boundaries, local_date, utc_now


logger = logging.getLogger(__name__)

COUNT_FIELDS = (
    "scheduled", "taken", "taken_full", "taken_partial", "missed", "skipped",
    "snoozed", "undone", "corrected", "unscheduled_taken", "on_time",
)
RISK_LEVELS = ["low", "medium", "high", "critical"]
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

INTERVENTIONS = {
    "low": ["continue_current_approach"],
    "medium": ["gentle_reminders", "schedule_optimization"],
    "high": ["family_notification", "schedule_review", "barrier_assessment"],
    "critical": ["immediate_family_alert", "provider_notification", "urgent_review"],
}


def _pct(numerator: int, denominator: int) -> Optional[float]:
    if not denominator:
        return None
    return round(numerator / denominator * 100, 1)


# ==================== DAY STATISTICS ====================

@dataclass
class DayStats:
    """Per-occurrence counts for a day (or a merged range of days)"""
    day: Optional[date] = None
    scheduled: int = 0
    taken: int = 0
    taken_full: int = 0
    taken_partial: int = 0
    missed: int = 0
    skipped: int = 0
    snoozed: int = 0
    undone: int = 0
    corrected: int = 0
    unscheduled_taken: int = 0
    on_time: int = 0
    delay_samples: List[float] = field(default_factory=list)
    missed_by_bucket: Dict[str, int] = field(default_factory=dict)
    breakdown: Dict[str, "DayStats"] = field(default_factory=dict)

    @property
    def adherence_rate(self) -> Optional[float]:
        return _pct(self.taken, self.scheduled)

    @property
    def full_dose_rate(self) -> Optional[float]:
        return _pct(self.taken_full, self.scheduled)

    @property
    def on_time_rate(self) -> Optional[float]:
        return _pct(self.on_time, self.taken)

    @property
    def is_perfect(self) -> bool:
        return self.scheduled > 0 and self.taken == self.scheduled

    def delay_stats(self) -> Dict[str, Optional[float]]:
        if not self.delay_samples:
            return {"average": None, "median": None, "max": None}
        return {
            "average": round(statistics.mean(self.delay_samples), 1),
            "median": round(statistics.median(self.delay_samples), 1),
            "max": round(max(self.delay_samples), 1),
        }

    def add_occurrence(self, occ: OccurrenceState) -> None:
        self.snoozed += occ.snoozed
        if occ.corrected:
            self.corrected += 1
        if not occ.has_scheduled:
            if occ.state in TAKEN_STATES:
                self.unscheduled_taken += 1
            return

        self.scheduled += 1
        if occ.state in TAKEN_STATES:
            self.taken += 1
            if occ.state == "taken_full":
                self.taken_full += 1
            else:
                self.taken_partial += 1
            taken = occ.taken_event
            if taken.is_on_time:
                self.on_time += 1
            if taken.minutes_late is not None:
                self.delay_samples.append(max(0.0, float(taken.minutes_late)))
        elif occ.state == "skipped":
            self.skipped += 1
        elif occ.state == "undone":
            self.undone += 1
        else:
            # missed, or never resolved by the end of the day
            self.missed += 1
            bucket = occ.time_bucket or "unknown"
            self.missed_by_bucket[bucket] = self.missed_by_bucket.get(bucket, 0) + 1

    def merge(self, other: "DayStats") -> "DayStats":
        for name in COUNT_FIELDS:
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.delay_samples.extend(other.delay_samples)
        for bucket, count in other.missed_by_bucket.items():
            self.missed_by_bucket[bucket] = self.missed_by_bucket.get(bucket, 0) + count
        return self

    def counts(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in COUNT_FIELDS}
        data.update(
            adherence_rate=self.adherence_rate,
            on_time_rate=self.on_time_rate,
            delay_samples=list(self.delay_samples),
            missed_by_bucket=dict(self.missed_by_bucket),
        )
        return data

    @classmethod
    def from_counts(cls, data: Dict[str, Any], day: Optional[date] = None) -> "DayStats":
        stats = cls(day=day)
        for name in COUNT_FIELDS:
            setattr(stats, name, int(data.get(name) or 0))
        stats.delay_samples = list(data.get("delay_samples") or [])
        stats.missed_by_bucket = dict(data.get("missed_by_bucket") or {})
        return stats

    @classmethod
    def from_summary(cls, summary: models.DailySummary, command_id: Optional[int] = None) -> "DayStats":
        if command_id is not None:
            entry = (summary.medication_breakdown or {}).get(str(command_id))
            return cls.from_counts(entry or {}, day=summary.summary_date)
        return cls(
            day=summary.summary_date,
            scheduled=summary.total_scheduled or 0,
            taken=summary.total_taken or 0,
            taken_full=summary.total_taken_full or 0,
            taken_partial=summary.total_taken_partial or 0,
            missed=summary.total_missed or 0,
            skipped=summary.total_skipped or 0,
            snoozed=summary.total_snoozed or 0,
            undone=summary.total_undone or 0,
            corrected=summary.total_corrected or 0,
            unscheduled_taken=summary.total_unscheduled_taken or 0,
            on_time=summary.total_on_time or 0,
            delay_samples=list(summary.delay_samples or []),
            missed_by_bucket=dict(summary.missed_by_bucket or {}),
        )


def compute_day_stats(events: Iterable[models.MedicationEvent], day: Optional[date] = None) -> DayStats:
    """
    Fold a day's events into per-occurrence statistics

    Each occurrence is counted once, by its final state, so an undone or
    corrected dose never counts twice. Undo and correction events whose
    dose belongs to an earlier day are left to that day.
    """
    stats = DayStats(day=day)
    for occ in occurrence_states(events).values():
        if occ.adjustments_only:
            continue
        per_command = stats.breakdown.setdefault(str(occ.command_id), DayStats(day=day))
        stats.add_occurrence(occ)
        per_command.add_occurrence(occ)
    return stats


@dataclass
class AdherenceImpact:
    """Effect of an undo on the patient's recent adherence"""
    previous_score: Optional[float]
    new_score: Optional[float]
    previous_streak: int
    new_streak: int
    streak_impact: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_score": self.previous_score,
            "new_score": self.new_score,
            "previous_streak": self.previous_streak,
            "new_streak": self.new_streak,
            "streak_impact": self.streak_impact,
        }


class AdherenceAnalyticsService:
    """
    Service for adherence analysis over summaries and live events
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock

    # ==================== DAY COLLECTION ====================

    def collect_days(
        self,
        session: Session,
        patient_id: int,
        start_date: date,
        end_date: date,
        zone: ZoneInfo,
        command_id: Optional[int] = None
    ) -> List[DayStats]:
        """
        One DayStats per date in range: summaries for closed days, live
        non-archived events for days that have no summary yet
        """
        summaries = {
            s.summary_date: s for s in session.query(models.DailySummary).filter(
                models.DailySummary.patient_id == patient_id,
                models.DailySummary.summary_date >= start_date,
                models.DailySummary.summary_date <= end_date,
            ).all()
        }

        range_start, _ = day_boundaries(start_date, zone)
        _, range_end = day_boundaries(end_date, zone)
        query = session.query(models.MedicationEvent).filter(
            models.MedicationEvent.patient_id == patient_id,
            models.MedicationEvent.is_archived.is_(False),
            models.MedicationEvent.event_timestamp >= range_start,
            models.MedicationEvent.event_timestamp < range_end,
        )
        if command_id is not None:
            query = query.filter(models.MedicationEvent.command_id == command_id)

        live: Dict[date, List[models.MedicationEvent]] = defaultdict(list)
        for e in query.all():
            live[local_date(e.event_timestamp, zone)].append(e)
        late = self._late_adjustments(session, patient_id, range_start, zone, command_id)

        days = []
        day = start_date
        while day <= end_date:
            if day in late:
                if day in summaries:
                    base = self._archived_events(session, patient_id, day, command_id)
                else:
                    base = live.get(day, [])
                days.append(compute_day_stats(base + late[day], day=day))
            elif day in summaries:
                days.append(DayStats.from_summary(summaries[day], command_id))
            else:
                days.append(compute_day_stats(live.get(day, []), day=day))
            day += timedelta(days=1)
        return days

    def _archived_events(
        self,
        session: Session,
        patient_id: int,
        day: date,
        command_id: Optional[int] = None
    ) -> List[models.MedicationEvent]:
        query = session.query(models.MedicationEvent).filter(
            models.MedicationEvent.patient_id == patient_id,
            models.MedicationEvent.is_archived.is_(True),
            models.MedicationEvent.belongs_to_date == day,
        )
        if command_id is not None:
            query = query.filter(models.MedicationEvent.command_id == command_id)
        return query.all()

    def _late_adjustments(
        self,
        session: Session,
        patient_id: int,
        since: datetime,
        zone: ZoneInfo,
        command_id: Optional[int] = None
    ) -> Dict[date, List[models.MedicationEvent]]:
        """
        Undo/correction events recorded on a later day than the dose they
        change, keyed by the dose's day

        A correction is allowed for 24 hours, so last night's dose can be
        reclassified after its day was closed.
        """
        query = session.query(models.MedicationEvent).filter(
            models.MedicationEvent.patient_id == patient_id,
            models.MedicationEvent.event_type.in_(list(ADJUSTMENT_EVENT_TYPES)),
            models.MedicationEvent.event_timestamp >= since,
        )
        if command_id is not None:
            query = query.filter(models.MedicationEvent.command_id == command_id)

        def day_of(e: models.MedicationEvent) -> date:
            return e.belongs_to_date or local_date(e.event_timestamp, zone)

        late: Dict[date, List[models.MedicationEvent]] = defaultdict(list)
        for e in query.all():
            root = e
            while root is not None and root.event_type in ADJUSTMENT_EVENT_TYPES and root.original_event_id:
                root = session.query(models.MedicationEvent).filter(
                    models.MedicationEvent.id == root.original_event_id
                ).first()
            if root is None:
                continue
            if day_of(root) != day_of(e):
                late[day_of(root)].append(e)
        return late

    # ==================== PATTERNS ====================

    def _streaks(self, days: List[DayStats], today: date) -> Dict[str, int]:
        def counted(d: DayStats) -> bool:
            # an unfinished today only counts once it is perfect
            return d.scheduled > 0 and not (d.day == today and not d.is_perfect)

        current = 0
        for d in reversed(days):
            if not counted(d):
                continue
            if not d.is_perfect:
                break
            current += 1

        longest = run = 0
        for d in days:
            if d.scheduled == 0:
                continue
            if d.is_perfect:
                run += 1
                longest = max(longest, run)
            elif d.day != today:
                run = 0

        missed_days = 0
        for d in reversed(days):
            if not counted(d):
                continue
            if d.taken > 0:
                break
            missed_days += 1

        return {"current_streak": current, "longest_streak": longest, "consecutive_missed_days": missed_days}

    def _trend(self, days: List[DayStats]) -> Dict[str, Any]:
        rates = [d.adherence_rate for d in days if d.scheduled > 0]
        if len(rates) < 2:
            return {"direction": "stable", "change": 0.0}
        mid = len(rates) // 2
        change = round(statistics.mean(rates[mid:]) - statistics.mean(rates[:mid]), 1)
        if change > engine_config.TREND_THRESHOLD:
            direction = "improving"
        elif change < -engine_config.TREND_THRESHOLD:
            direction = "declining"
        else:
            direction = "stable"
        return {"direction": direction, "change": change}

    def _patterns(self, days: List[DayStats], totals: DayStats, today: date) -> Dict[str, Any]:
        by_weekday: Dict[str, int] = defaultdict(int)
        weekday, weekend = DayStats(), DayStats()
        for d in days:
            if d.day is None:
                continue
            if d.missed:
                by_weekday[WEEKDAYS[d.day.weekday()]] += d.missed
            (weekend if d.day.weekday() >= 5 else weekday).merge(d)

        buckets = {k: v for k, v in totals.missed_by_bucket.items() if v}
        weekday_rate, weekend_rate = weekday.adherence_rate, weekend.adherence_rate
        gap = None
        if weekday_rate is not None and weekend_rate is not None:
            gap = round(weekday_rate - weekend_rate, 1)

        return {
            "most_missed_bucket": max(buckets, key=buckets.get) if buckets else None,
            "missed_by_bucket": buckets,
            "most_missed_weekday": max(by_weekday, key=by_weekday.get) if by_weekday else None,
            "missed_by_weekday": dict(by_weekday),
            "weekday_rate": weekday_rate,
            "weekend_rate": weekend_rate,
            "weekday_weekend_gap": gap,
            **self._streaks(days, today),
            "trend": self._trend(days),
        }

    def classify_risk(
        self,
        adherence_rate: Optional[float],
        on_time_rate: Optional[float],
        patterns: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Risk level with the factors that raised it and the ones that protect"""
        factors: List[str] = []
        protective: List[str] = []

        if adherence_rate is None:
            level = 0
            factors.append("No scheduled doses in the period")
        elif adherence_rate >= engine_config.RISK_LOW_THRESHOLD:
            level = 0
        elif adherence_rate >= engine_config.RISK_MEDIUM_THRESHOLD:
            level = 1
        elif adherence_rate >= engine_config.RISK_HIGH_THRESHOLD:
            level = 2
        else:
            level = 3
        if adherence_rate is not None and adherence_rate < engine_config.RISK_LOW_THRESHOLD:
            factors.append(f"Adherence at {adherence_rate}% is below the 90% target")

        missed_days = patterns["consecutive_missed_days"]
        if missed_days >= engine_config.CONSECUTIVE_MISSED_ESCALATION:
            level += 1
            factors.append(f"{missed_days} consecutive days with no doses taken")

        direction = patterns["trend"]["direction"]
        if direction == "declining":
            factors.append("Adherence is declining")
            if patterns["current_streak"] == 0:
                level += 1
        elif direction == "improving":
            protective.append("Adherence is improving")

        if on_time_rate is not None and on_time_rate < 70:
            factors.append(f"Only {on_time_rate}% of doses taken on time")
        elif on_time_rate is not None and on_time_rate >= 90:
            protective.append("Doses are consistently taken on time")

        if patterns["current_streak"] >= 7:
            protective.append(f"{patterns['current_streak']}-day adherence streak")

        risk_level = RISK_LEVELS[min(level, len(RISK_LEVELS) - 1)]
        return {
            "level": risk_level,
            "factors": factors,
            "protective_factors": protective,
            "interventions": INTERVENTIONS[risk_level],
        }

    # ==================== PUBLIC API ====================

    def build_report(
        self,
        session: Session,
        patient_id: int,
        start_date: date,
        end_date: date,
        command_id: Optional[int] = None
    ) -> Dict[str, Any]:
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date", field="end_date")
        zone = preferences_service.load_zone_or_utc(session, patient_id)
        today = local_date(self.clock(), zone)
        days = self.collect_days(session, patient_id, start_date, end_date, zone, command_id)

        totals = DayStats()
        for d in days:
            totals.merge(d)
        delays = totals.delay_stats()
        patterns = self._patterns(days, totals, today)
        risk = self.classify_risk(totals.adherence_rate, totals.on_time_rate, patterns)

        return {
            "patient_id": patient_id,
            "command_id": command_id,
            "start_date": start_date,
            "end_date": end_date,
            "metrics": {
                "total_scheduled": totals.scheduled,
                "total_taken": totals.taken,
                "total_taken_full": totals.taken_full,
                "total_taken_partial": totals.taken_partial,
                "total_missed": totals.missed,
                "total_skipped": totals.skipped,
                "total_undone": totals.undone,
                "total_corrected": totals.corrected,
                "total_unscheduled_taken": totals.unscheduled_taken,
                "adherence_rate": totals.adherence_rate,
                "full_dose_rate": totals.full_dose_rate,
                "on_time_rate": totals.on_time_rate,
                "average_delay_minutes": delays["average"],
                "median_delay_minutes": delays["median"],
                "max_delay_minutes": delays["max"],
            },
            "patterns": patterns,
            "risk": risk,
            "daily": [
                {"date": d.day, "scheduled": d.scheduled, "taken": d.taken, "adherence_rate": d.adherence_rate}
                for d in days
            ],
        }

    async def get_adherence(
        self,
        patient_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        days: int = 30,
        command_id: Optional[int] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Adherence report for a patient over an inclusive local date range

        Args:
            patient_id: Patient ID
            start_date: First local date (default: `days` days before end_date)
            end_date: Last local date (default: the patient's today)
            days: Window length when start_date is omitted
            command_id: Restrict to a single command
            db: Database session

        Returns:
            Dictionary with metrics, patterns, risk and per-day rates
        """
        def _report(session: Session) -> Dict[str, Any]:
            last = end_date
            if last is None:
                zone = preferences_service.load_zone_or_utc(session, patient_id)
                last = local_date(self.clock(), zone)
            first = start_date or last - timedelta(days=days - 1)
            return self.build_report(session, patient_id, first, last, command_id)

        if db:
            return _report(db)

        with get_db_context() as session:
            return _report(session)

    def alert_on_risk(self, session: Session, patient_id: int, closed_day: date) -> Optional[str]:
        """
        Alert the family when the window ending on a just-closed day is high risk

        Called once per closed day, so a patient gets at most one alert a day.
        """
        first = closed_day - timedelta(days=engine_config.ALERT_WINDOW_DAYS - 1)
        report = self.build_report(session, patient_id, first, closed_day)
        risk = report["risk"]
        if risk["level"] not in ("high", "critical"):
            return None

        notification_dispatcher.send_family_alert(
            patient_id=patient_id,
            risk_level=risk["level"],
            adherence_rate=report["metrics"]["adherence_rate"],
            risk_factors=risk["factors"],
        )
        logger.warning(
            f"Patient {patient_id} adherence risk is {risk['level']} "
            f"({report['metrics']['adherence_rate']}%) after closing {closed_day}"
        )
        return risk["level"]

    def recent_score(self, session: Session, patient_id: int, days: int = 7) -> Dict[str, Any]:
        """Adherence rate and current streak over the last `days` local days"""
        zone = preferences_service.load_zone_or_utc(session, patient_id)
        today = local_date(self.clock(), zone)
        window = self.collect_days(session, patient_id, today - timedelta(days=days - 1), today, zone)
        totals = DayStats()
        for d in window:
            totals.merge(d)
        return {
            "score": totals.adherence_rate,
            "streak": self._streaks(window, today)["current_streak"],
        }

    def calculate_undo_impact(self, before: Dict[str, Any], after: Dict[str, Any]) -> AdherenceImpact:
        if after["streak"] < before["streak"]:
            message = f"Streak goes from {before['streak']} to {after['streak']} days"
        elif before["score"] != after["score"]:
            message = "Streak unchanged; today's adherence was recalculated"
        else:
            message = "No change to adherence"
        return AdherenceImpact(
            previous_score=before["score"],
            new_score=after["score"],
            previous_streak=before["streak"],
            new_streak=after["streak"],
            streak_impact=message,
        )

    async def check_milestones(
        self,
        patient_id: int,
        db: Optional[Session] = None
    ) -> List[Dict[str, Any]]:
        """Evaluate adherence milestones over the patient's full history"""
        def _check(session: Session) -> List[Dict[str, Any]]:
            zone = preferences_service.load_zone_or_utc(session, patient_id)
            today = local_date(self.clock(), zone)

            first_summary = session.query(func.min(models.DailySummary.summary_date)).filter(
                models.DailySummary.patient_id == patient_id
            ).scalar()
            first_event = session.query(func.min(models.MedicationEvent.event_timestamp)).filter(
                models.MedicationEvent.patient_id == patient_id
            ).scalar()
            candidates = [d for d in (first_summary, local_date(first_event, zone) if first_event else None) if d]
            start = min(candidates) if candidates else today

            days = self.collect_days(session, patient_id, start, today, zone)
            totals = DayStats()
            for d in days:
                totals.merge(d)
            streaks = self._streaks(days, today)

            last_week = DayStats()
            for d in days[-8:-1]:
                last_week.merge(d)
            last_month = DayStats()
            for d in days[-30:]:
                last_month.merge(d)

            timing = last_month.on_time_rate or 0.0
            return [
                {"milestone": "first_dose", "achieved": (totals.taken + totals.unscheduled_taken) > 0,
                 "progress": totals.taken + totals.unscheduled_taken, "target": 1},
                {"milestone": "week_streak", "achieved": streaks["longest_streak"] >= 7,
                 "progress": streaks["longest_streak"], "target": 7},
                {"milestone": "month_champion", "achieved": streaks["longest_streak"] >= 30,
                 "progress": streaks["longest_streak"], "target": 30},
                {"milestone": "perfect_week", "achieved": last_week.scheduled > 0 and last_week.adherence_rate == 100.0,
                 "progress": last_week.adherence_rate or 0.0, "target": 100.0},
                {"milestone": "timing_master", "achieved": last_month.taken > 0 and timing >= 95.0,
                 "progress": timing, "target": 95.0},
            ]

        if db:
            return _check(db)

        with get_db_context() as session:
            return _check(session)


# Singleton instance
adherence_analytics_service = AdherenceAnalyticsService()
