"""
Notification Dispatch Tool
Fire-and-forget hand-off of notification intents to an outbound transport
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from config import settings


logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Intents the engine emits"""
    REMINDER_DUE = "reminder_due"
    DOSE_MISSED = "dose_missed"
    FAMILY_ADHERENCE_ALERT = "family_adherence_alert"


class NotificationUrgency(str, Enum):
    """Urgency levels passed to the transport"""
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass
class NotificationIntent:
    """A request to notify someone; delivery is the transport's job"""
    notification_type: NotificationType
    patient_id: int
    command_id: Optional[int] = None
    urgency: NotificationUrgency = NotificationUrgency.NORMAL
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


Transport = Callable[[NotificationIntent], Awaitable[None]]


async def log_transport(intent: NotificationIntent) -> None:
    """Default transport: record the intent in the log"""
    logger.info(
        f"Notification {intent.notification_type.value} for patient {intent.patient_id} "
        f"(urgency={intent.urgency.value}, command={intent.command_id})"
    )


class NotificationDispatcher:
    """
    Hands intents to a pluggable async transport without blocking callers.

    Transport failures are logged and never reach the caller.
    """

    def __init__(self, transport: Optional[Transport] = None, history_size: int = 200):
        self.transport: Transport = transport or log_transport
        self.history: Deque[NotificationIntent] = deque(maxlen=history_size)
        self._pending: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def set_transport(self, transport: Transport) -> None:
        self.transport = transport

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop used for intents dispatched from threads without one"""
        self._loop = loop

    def dispatch(self, intent: NotificationIntent) -> None:
        """Queue delivery on the running loop and return immediately"""
        self.history.append(intent)
        if not settings.NOTIFICATIONS_ENABLED:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # worker threads hand delivery back to the bound loop
            if self._loop is not None and self._loop.is_running():
                asyncio.run_coroutine_threadsafe(self._deliver(intent), self._loop)
                return
            logger.warning(
                f"No running event loop; dropping {intent.notification_type.value} "
                f"for patient {intent.patient_id}"
            )
            return
        task = loop.create_task(self._deliver(intent))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, intent: NotificationIntent) -> None:
        try:
            await self.transport(intent)
        except Exception:
            logger.exception(
                f"Notification transport failed for {intent.notification_type.value} "
                f"(patient {intent.patient_id})"
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used on shutdown and in tests"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ==================== CONVENIENCE ====================

    def send_reminder_due(
        self,
        patient_id: int,
        command_id: int,
        medication_name: str,
        dosage: str,
        scheduled_for: datetime,
        minutes_before: int
    ) -> None:
        self.dispatch(NotificationIntent(
            notification_type=NotificationType.REMINDER_DUE,
            patient_id=patient_id,
            command_id=command_id,
            urgency=NotificationUrgency.NORMAL,
            data={
                "medication": medication_name,
                "dosage": dosage,
                "scheduled_for": scheduled_for.isoformat(),
                "minutes_before": minutes_before,
            }
        ))

    def send_missed_dose(
        self,
        patient_id: int,
        command_id: int,
        medication_name: str,
        scheduled_for: Optional[datetime],
        critical: bool = False
    ) -> None:
        self.dispatch(NotificationIntent(
            notification_type=NotificationType.DOSE_MISSED,
            patient_id=patient_id,
            command_id=command_id,
            urgency=NotificationUrgency.HIGH if critical else NotificationUrgency.NORMAL,
            data={
                "medication": medication_name,
                "scheduled_for": scheduled_for.isoformat() if scheduled_for else None,
            }
        ))

    def send_family_alert(
        self,
        patient_id: int,
        risk_level: str,
        adherence_rate: float,
        risk_factors: list
    ) -> None:
        urgency = NotificationUrgency.CRITICAL if risk_level == "critical" else NotificationUrgency.HIGH
        self.dispatch(NotificationIntent(
            notification_type=NotificationType.FAMILY_ADHERENCE_ALERT,
            patient_id=patient_id,
            urgency=urgency,
            data={
                "risk_level": risk_level,
                "adherence_rate": adherence_rate,
                "risk_factors": list(risk_factors),
            }
        ))


# Singleton instance
notification_dispatcher = NotificationDispatcher()
