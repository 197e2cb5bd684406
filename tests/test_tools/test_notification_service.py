"""
Tests for Notification Dispatch
Fire-and-forget delivery, transport failures and history
"""

import asyncio
import pytest
from datetime import datetime

from tools.notification_service import (
    NotificationDispatcher,
    NotificationIntent,
    NotificationType,
    NotificationUrgency,
)


@pytest.fixture
def delivered():
    return []


@pytest.fixture
def dispatcher(delivered):
    async def transport(intent: NotificationIntent) -> None:
        delivered.append(intent)

    return NotificationDispatcher(transport=transport)


# ==================== DISPATCH ====================

class TestDispatch:
    """Tests for queuing and delivering intents"""

    @pytest.mark.asyncio
    async def test_reminder_is_delivered(self, dispatcher, delivered):
        dispatcher.send_reminder_due(
            patient_id=1,
            command_id=7,
            medication_name="Lisinopril",
            dosage="10mg",
            scheduled_for=datetime(2024, 3, 5, 14, 0),
            minutes_before=15,
        )
        await dispatcher.drain()

        assert len(delivered) == 1
        intent = delivered[0]
        assert intent.notification_type == NotificationType.REMINDER_DUE
        assert intent.data["scheduled_for"] == "2024-03-05T14:00:00"
        assert intent.data["minutes_before"] == 15

    @pytest.mark.asyncio
    async def test_missed_critical_dose_is_high_urgency(self, dispatcher, delivered):
        dispatcher.send_missed_dose(1, 7, "Insulin", datetime(2024, 3, 5, 14, 0), critical=True)
        await dispatcher.drain()
        assert delivered[0].urgency == NotificationUrgency.HIGH

    @pytest.mark.asyncio
    async def test_family_alert_urgency(self, dispatcher, delivered):
        dispatcher.send_family_alert(1, "critical", 40.0, ["Adherence at 40.0% is below the 90% target"])
        dispatcher.send_family_alert(1, "high", 60.0, [])
        await dispatcher.drain()
        assert [i.urgency for i in delivered] == [NotificationUrgency.CRITICAL, NotificationUrgency.HIGH]

    @pytest.mark.asyncio
    async def test_transport_failure_is_contained(self):
        async def broken(intent):
            raise RuntimeError("gateway down")

        dispatcher = NotificationDispatcher(transport=broken)
        dispatcher.send_missed_dose(1, 7, "Lisinopril", None)
        await dispatcher.drain()
        assert len(dispatcher.history) == 1

    @pytest.mark.unit
    def test_dispatch_without_loop_keeps_history(self, dispatcher, delivered):
        dispatcher.send_missed_dose(1, 7, "Lisinopril", None)
        assert len(dispatcher.history) == 1
        assert delivered == []

    @pytest.mark.unit
    def test_history_is_bounded(self):
        dispatcher = NotificationDispatcher(history_size=3)
        for i in range(5):
            dispatcher.send_missed_dose(i, 1, "Lisinopril", None)
        assert [intent.patient_id for intent in dispatcher.history] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_dispatch_from_worker_thread_uses_bound_loop(self, dispatcher, delivered):
        dispatcher.bind_loop(asyncio.get_running_loop())
        await asyncio.to_thread(dispatcher.send_family_alert, 1, "high", 60.0, [])
        await asyncio.sleep(0.05)

        assert [i.notification_type for i in delivered] == [NotificationType.FAMILY_ADHERENCE_ALERT]
