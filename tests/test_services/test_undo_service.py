"""
Tests for Undo Service
Thirty-second undo, 24-hour corrections and their boundaries
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta

from exceptions import TooOldError, ValidationError, WindowExpiredError
from models import EventType
from services.event_service import event_service
from services.undo_service import undo_service


pytestmark = pytest.mark.usefixtures("clock")

MORNING = datetime(2024, 3, 5, 14, 0)


@pytest_asyncio.fixture
async def taken(db_session, twice_daily, clock):
    """Morning dose taken on time at 2024-03-05 14:00 UTC"""
    return await event_service.take_medication(twice_daily.id, scheduled_for=MORNING, db=db_session)


# ==================== UNDO WINDOW ====================

class TestUndoWindow:
    """Tests for the 30 second undo window"""

    @pytest.mark.asyncio
    async def test_undo_just_inside_window(self, db_session, taken, clock):
        clock.advance(seconds=29.9)
        result = await undo_service.undo(taken.id, reason="tapped by mistake", db=db_session)

        undo = result.undo_event
        assert undo.event_type == EventType.DOSE_TAKEN_UNDONE
        assert undo.original_event_id == taken.id
        assert undo.scheduled_for == MORNING
        assert undo.correlation_id == taken.correlation_id
        assert undo.undo_reason == "tapped by mistake"
        assert result.original_event_id == taken.id

    @pytest.mark.asyncio
    async def test_undo_just_outside_window(self, db_session, taken, clock):
        clock.advance(seconds=30.1)
        with pytest.raises(WindowExpiredError) as exc:
            await undo_service.undo(taken.id, db=db_session)

        assert exc.value.correction_available is True
        assert exc.value.correction_deadline == MORNING + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_undo_after_correction_window(self, db_session, taken, clock):
        clock.advance(hours=25)
        with pytest.raises(TooOldError):
            await undo_service.undo(taken.id, db=db_session)

    @pytest.mark.asyncio
    async def test_undo_twice(self, db_session, taken, clock):
        clock.advance(seconds=5)
        await undo_service.undo(taken.id, db=db_session)
        with pytest.raises(ValidationError):
            await undo_service.undo(taken.id, db=db_session)

    @pytest.mark.asyncio
    async def test_only_taken_events_can_be_undone(self, db_session, twice_daily):
        missed = await event_service.record_missed(twice_daily.id, MORNING, db=db_session)
        with pytest.raises(ValidationError):
            await undo_service.undo(missed.id, db=db_session)

    @pytest.mark.asyncio
    async def test_undo_reports_adherence_impact(self, db_session, twice_daily, clock):
        await event_service.materialize_scheduled(twice_daily.id, MORNING.date(), db=db_session)
        taken = await event_service.take_medication(twice_daily.id, scheduled_for=MORNING, db=db_session)
        clock.advance(seconds=10)

        result = await undo_service.undo(taken.id, db=db_session)

        assert result.impact.previous_score == 50.0
        assert result.impact.new_score == 0.0
        assert result.impact.new_streak == 0


# ==================== ELIGIBILITY ====================

class TestValidateUndo:
    """Tests for the non-mutating eligibility check"""

    @pytest.mark.asyncio
    async def test_eligible(self, db_session, taken, clock):
        clock.advance(seconds=10)
        check = await undo_service.validate_undo(taken.id, db=db_session)
        assert check["can_undo"] is True
        assert check["elapsed_seconds"] == 10.0

    @pytest.mark.asyncio
    async def test_requires_correction(self, db_session, taken, clock):
        clock.advance(minutes=5)
        check = await undo_service.validate_undo(taken.id, db=db_session)
        assert check["can_undo"] is False
        assert check["requires_correction"] is True
        assert check["correction_deadline"] == MORNING + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_too_old(self, db_session, taken, clock):
        clock.advance(hours=30)
        check = await undo_service.validate_undo(taken.id, db=db_session)
        assert check["too_old"] is True
        assert check["requires_correction"] is False


# ==================== CORRECTIONS ====================

class TestCorrections:
    """Tests for 24 hour corrections"""

    @pytest.mark.asyncio
    async def test_correct_just_inside_window(self, db_session, taken, clock):
        clock.advance(hours=23, minutes=59)
        event = await undo_service.correct(taken.id, "missed", reason="Was asleep, logged by accident", db=db_session)

        assert event.event_type == EventType.DOSE_MISSED_CORRECTED
        assert event.corrected_action == "missed"
        assert event.undo_reason == "Was asleep, logged by accident"
        assert event.original_event_id == taken.id
        assert event.correlation_id == taken.correlation_id

    @pytest.mark.asyncio
    async def test_correct_just_outside_window(self, db_session, taken, clock):
        clock.advance(hours=24, minutes=1)
        with pytest.raises(TooOldError):
            await undo_service.correct(taken.id, "missed", reason="late fix", db=db_session)

    @pytest.mark.asyncio
    async def test_reason_is_required(self, db_session, taken):
        for reason in (None, "", "   "):
            with pytest.raises(ValidationError):
                await undo_service.correct(taken.id, "missed", reason=reason, db=db_session)

    @pytest.mark.asyncio
    async def test_only_missed_or_skipped(self, db_session, taken):
        with pytest.raises(ValidationError):
            await undo_service.correct(taken.id, "taken", reason="oops", db=db_session)

    @pytest.mark.asyncio
    async def test_no_op_correction_rejected(self, db_session, twice_daily, clock):
        missed = await event_service.record_missed(twice_daily.id, MORNING, db=db_session)
        clock.advance(hours=1)
        with pytest.raises(ValidationError):
            await undo_service.correct(missed.id, "missed", reason="still missed", db=db_session)

        skipped = await undo_service.correct(missed.id, "skipped", reason="Doctor said to skip", db=db_session)
        assert skipped.event_type == EventType.DOSE_SKIPPED_CORRECTED

    @pytest.mark.asyncio
    async def test_correcting_a_correction(self, db_session, taken, clock):
        clock.advance(hours=2)
        first = await undo_service.correct(taken.id, "missed", reason="did not take it", db=db_session)
        clock.advance(hours=1)
        second = await undo_service.correct(first.id, "skipped", reason="skipped on purpose", db=db_session)

        assert second.original_event_id == first.id
        assert second.correlation_id == taken.correlation_id

    @pytest.mark.asyncio
    async def test_undo_history(self, db_session, taken, twice_daily, clock):
        clock.advance(seconds=5)
        await undo_service.undo(taken.id, db=db_session)
        clock.advance(hours=1)
        await undo_service.correct(taken.id, "skipped", reason="skipped after all", db=db_session)

        history = await undo_service.get_undo_history(twice_daily.id, db=db_session)
        assert [e.event_type for e in history] == [EventType.DOSE_SKIPPED_CORRECTED, EventType.DOSE_TAKEN_UNDONE]
