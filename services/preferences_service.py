"""
Preferences Service
Patient timezone and lifestyle anchors used by scheduling and archival
"""

import logging
from typing import Dict, List, Optional, Any
from datetime import datetime
from zoneinfo import ZoneInfo
from sqlalchemy.orm import Session

from database import get_db_context
import models
from exceptions import PreferencesMissingError, ValidationError
from tools.time_buckets import (
    DayAnchors, default_times_for_frequency, get_zone, parse_hhmm,
)


logger = logging.getLogger(__name__)

ANCHOR_FIELDS = ("wake_time", "bed_time", "breakfast_time", "lunch_time", "dinner_time")


class PreferencesService:
    """
    Service for patient time preferences
    """

    # ==================== SESSION-LEVEL HELPERS ====================

    def load(self, session: Session, patient_id: int) -> Optional[models.PatientTimePreferences]:
        return session.query(models.PatientTimePreferences).filter(
            models.PatientTimePreferences.patient_id == patient_id
        ).first()

    def load_zone(self, session: Session, patient_id: int) -> ZoneInfo:
        """Resolve the patient's timezone or raise PreferencesMissingError"""
        prefs = self.load(session, patient_id)
        if prefs is None or not prefs.timezone:
            raise PreferencesMissingError(
                f"Patient {patient_id} has no timezone preference",
                patient_id=patient_id,
            )
        try:
            return get_zone(prefs.timezone)
        except ValueError:
            raise PreferencesMissingError(
                f"Patient {patient_id} has invalid timezone '{prefs.timezone}'",
                patient_id=patient_id,
                timezone=prefs.timezone,
            )

    def load_zone_or_utc(self, session: Session, patient_id: int) -> ZoneInfo:
        try:
            return self.load_zone(session, patient_id)
        except PreferencesMissingError:
            logger.debug(f"Patient {patient_id} has no usable timezone; using UTC")
            return ZoneInfo("UTC")

    def load_anchors(self, session: Session, patient_id: int) -> DayAnchors:
        return DayAnchors.from_preferences(self.load(session, patient_id))

    # ==================== PUBLIC API ====================

    async def get_preferences(
        self,
        patient_id: int,
        db: Optional[Session] = None
    ) -> Optional[models.PatientTimePreferences]:
        def _get(session: Session):
            return self.load(session, patient_id)

        if db:
            return _get(db)

        with get_db_context() as session:
            prefs = _get(session)
            if prefs:
                session.expunge(prefs)
            return prefs

    async def get_patient_timezone(
        self,
        patient_id: int,
        db: Optional[Session] = None
    ) -> Optional[str]:
        """IANA timezone name for a patient, or None when not set"""
        prefs = await self.get_preferences(patient_id, db=db)
        return prefs.timezone if prefs else None

    async def upsert_preferences(
        self,
        patient_id: int,
        timezone: Optional[str] = None,
        db: Optional[Session] = None,
        **anchors: Optional[str]
    ) -> models.PatientTimePreferences:
        """
        Create or update a patient's time preferences

        Args:
            patient_id: Patient ID
            timezone: IANA timezone name
            db: Database session
            **anchors: wake_time, bed_time, breakfast_time, lunch_time, dinner_time as HH:MM

        Returns:
            The stored PatientTimePreferences row
        """
        unknown = set(anchors) - set(ANCHOR_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown preference fields: {sorted(unknown)}")
        if timezone is not None:
            try:
                get_zone(timezone)
            except ValueError as e:
                raise ValidationError(str(e), field="timezone")
        for name, value in anchors.items():
            if value is None:
                continue
            try:
                parse_hhmm(value)
            except ValueError as e:
                raise ValidationError(str(e), field=name)

        def _upsert(session: Session) -> models.PatientTimePreferences:
            prefs = self.load(session, patient_id)
            if prefs is None:
                prefs = models.PatientTimePreferences(patient_id=patient_id, version=1)
                session.add(prefs)
            else:
                prefs.version = (prefs.version or 0) + 1
                prefs.updated_at = datetime.utcnow()
            if timezone is not None:
                prefs.timezone = timezone
            for name, value in anchors.items():
                if value is not None:
                    setattr(prefs, name, value)
            session.commit()
            session.refresh(prefs)
            logger.info(f"Stored time preferences for patient {patient_id} (tz={prefs.timezone})")
            return prefs

        if db:
            return _upsert(db)

        with get_db_context() as session:
            prefs = _upsert(session)
            session.expunge(prefs)
            return prefs

    async def suggest_times(
        self,
        patient_id: int,
        frequency: str,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """Suggested dose times for a frequency based on the patient's anchors"""
        def _suggest(session: Session) -> Dict[str, Any]:
            anchors = self.load_anchors(session, patient_id)
            return {
                "patient_id": patient_id,
                "frequency": frequency,
                "times": default_times_for_frequency(frequency, anchors),
            }

        if db:
            return _suggest(db)

        with get_db_context() as session:
            return _suggest(session)

    def list_patients(self, session: Session) -> List[models.PatientTimePreferences]:
        return session.query(models.PatientTimePreferences).order_by(
            models.PatientTimePreferences.patient_id
        ).all()


# Singleton instance
preferences_service = PreferencesService()
