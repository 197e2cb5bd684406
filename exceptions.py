"""
Engine Errors
Typed error kinds raised by the command/event services
"""

from datetime import datetime
from typing import Any, Dict, Optional


class MedicationEngineError(Exception):
    """Base class for all engine errors"""

    code = "engine_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        details = {
            k: (v.isoformat() if isinstance(v, datetime) else v)
            for k, v in self.details.items()
        }
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": details,
        }


class ValidationError(MedicationEngineError):
    """Malformed input, illegal transition or inconsistent event"""
    code = "validation_error"


class NotFoundError(MedicationEngineError):
    """Referenced command, event or summary does not exist"""
    code = "not_found"


class ConflictError(MedicationEngineError):
    """Optimistic version mismatch on a command update"""
    code = "conflict"

    def __init__(self, message: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            message,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class DuplicateEventError(MedicationEngineError):
    """A non-undone taken event already exists for this occurrence"""
    code = "duplicate_event"

    def __init__(self, message: str, existing_event_id: int):
        super().__init__(message, existing_event_id=existing_event_id)
        self.existing_event_id = existing_event_id


class WindowExpiredError(MedicationEngineError):
    """Undo window elapsed; a correction is still possible"""
    code = "undo_window_expired"

    def __init__(self, message: str, correction_deadline: datetime):
        super().__init__(
            message,
            correction_available=True,
            correction_deadline=correction_deadline,
        )
        self.correction_available = True
        self.correction_deadline = correction_deadline


class TooOldError(MedicationEngineError):
    """Target event is older than the correction window"""
    code = "too_old"


class PreferencesMissingError(MedicationEngineError):
    """Patient has no usable timezone"""
    code = "preferences_missing"


class ImmutableEventError(MedicationEngineError):
    """Attempted change to a non-archive field of a stored event"""
    code = "immutable_event"
