"""
Tests for rehabflow.services.dispatch_service (orchestrator).

Covers:
  - The send loop: counts, per-message failures, idempotent skips, campaign advance
  - run_dispatch under the advisory lock, including the skipped case
  - Engine health: database down, missing Twilio credentials, pending counts
  - preview_dispatch never writing
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_result
from rehabflow.config import Settings
from rehabflow.models.enums import CampaignType
from rehabflow.services.dispatch_service import (
    EngineUnavailableError,
    dispatch_reminders,
    ensure_engine_ready,
    get_engine_status,
    preview_dispatch,
    run_dispatch,
)
from rehabflow.services.no_show_service import SweepResult
from rehabflow.services.rate_limiter import TokenBucketRateLimiter
from rehabflow.services.reminder_service import DueReminder, ReminderBand, ReminderKind
from rehabflow.services.sms_service import SmsResult

NOW = datetime(2026, 1, 15, 14, 0, tzinfo=timezone.utc)
SERVICE = "rehabflow.services.dispatch_service"


def _settings(**overrides):
    values = {"CRON_SECRET": "s3cret", "ENABLE_REAL_SMS": False}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _limiter():
    return TokenBucketRateLimiter(rate=1000, capacity=100)


def _reminder(kind=ReminderKind.APPOINTMENT, step=None):
    appointment_id = uuid4()
    if kind is ReminderKind.CAMPAIGN:
        return DueReminder(
            kind=kind,
            idempotency_key=f"campaign:no_show_recovery:{appointment_id}:step:{step}",
            clinic_id=uuid4(),
            patient_id=uuid4(),
            appointment_id=appointment_id,
            recipient="+15551234567",
            body="Hi Ana, we missed you.",
            enrollment_id=uuid4(),
            campaign=CampaignType.NO_SHOW_RECOVERY,
            step=step,
        )
    return DueReminder(
        kind=kind,
        idempotency_key=f"appointment:{appointment_id}:1h",
        clinic_id=uuid4(),
        patient_id=uuid4(),
        appointment_id=appointment_id,
        recipient="+15551234567",
        body="Hi Ana! Your appointment is in 1 hour.",
        band=ReminderBand.ONE_HOUR,
    )


def _lock(acquired):
    @asynccontextmanager
    async def fake_lock():
        yield acquired
    return fake_lock


# ---------------------------------------------------------------------------
# Send loop
# ---------------------------------------------------------------------------

class TestDispatchReminders:

    async def test_all_sent(self, mock_db):
        reminders = [_reminder(), _reminder()]
        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock,
                   return_value=SmsResult(success=True, message_sid="mock_1")) as send:
            result = await dispatch_reminders(mock_db, reminders, NOW, _limiter(), _settings())

        assert result.success is True
        assert result.processed == 2
        assert result.errors == []
        assert send.await_count == 2
        assert mock_db.commit.await_count == 2

    async def test_failure_is_recorded_and_loop_continues(self, mock_db):
        failing, passing = _reminder(), _reminder()
        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock, side_effect=[
                 SmsResult(success=False, error="Invalid phone number format: ***1234"),
                 SmsResult(success=True, message_sid="mock_2"),
             ]):
            result = await dispatch_reminders(
                mock_db, [failing, passing], NOW, _limiter(), _settings(),
            )

        assert result.success is False
        assert result.processed == 1
        assert result.errors == [
            {"reminder_id": failing.idempotency_key, "error": "Invalid phone number format: ***1234"},
        ]

    async def test_unexpected_error_rolls_back_that_message_only(self, mock_db):
        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock, side_effect=[
                 RuntimeError("boom"),
                 SmsResult(success=True, message_sid="mock_2"),
             ]):
            result = await dispatch_reminders(
                mock_db, [_reminder(), _reminder()], NOW, _limiter(), _settings(),
            )

        assert result.processed == 1
        assert result.errors[0]["error"] == "boom"
        mock_db.rollback.assert_awaited_once()

    async def test_already_sent_is_skipped(self, mock_db):
        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=True), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock) as send:
            result = await dispatch_reminders(mock_db, [_reminder()], NOW, _limiter(), _settings())

        assert result.processed == 0
        assert result.skipped == 1
        assert result.success is True
        send.assert_not_awaited()

    async def test_campaign_step_advances_after_send(self, mock_db):
        reminder = _reminder(ReminderKind.CAMPAIGN, step=2)
        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock,
                   return_value=SmsResult(success=True, message_sid="mock_1")), \
             patch(f"{SERVICE}.advance_enrollment", new_callable=AsyncMock, return_value=True) as advance:
            result = await dispatch_reminders(mock_db, [reminder], NOW, _limiter(), _settings())

        assert result.processed == 1
        advance.assert_awaited_once_with(
            mock_db,
            campaign=CampaignType.NO_SHOW_RECOVERY,
            patient_id=reminder.patient_id,
            appointment_id=reminder.appointment_id,
            sent_step=2,
            now=NOW,
        )

    async def test_failed_campaign_send_does_not_advance(self, mock_db):
        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock,
                   return_value=SmsResult(success=False, error="Twilio error: down")), \
             patch(f"{SERVICE}.advance_enrollment", new_callable=AsyncMock) as advance:
            await dispatch_reminders(
                mock_db, [_reminder(ReminderKind.CAMPAIGN, step=1)], NOW, _limiter(), _settings(),
            )

        advance.assert_not_awaited()

    async def test_paced_by_rate_limiter(self, mock_db):
        limiter = AsyncMock()
        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock,
                   return_value=SmsResult(success=True)):
            await dispatch_reminders(
                mock_db, [_reminder(), _reminder(), _reminder()], NOW, limiter, _settings(),
            )

        assert limiter.acquire.await_count == 3

    async def test_commit_failure_after_send_still_counts_as_sent(self, mock_db):
        mock_db.commit.side_effect = OperationalError("COMMIT", {}, Exception("connection reset"))
        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock,
                   return_value=SmsResult(success=True, message_sid="SM1")):
            result = await dispatch_reminders(mock_db, [_reminder()], NOW, _limiter(), _settings())

        assert result.processed == 1
        assert result.errors == []
        assert result.success is True
        mock_db.rollback.assert_awaited_once()

    async def test_log_row_committed_before_enrollment_advances(self, mock_db):
        calls = []
        mock_db.commit.side_effect = lambda: calls.append("commit")

        async def advance(*args, **kwargs):
            calls.append("advance")
            return True

        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock,
                   return_value=SmsResult(success=True, message_sid="SM1")), \
             patch(f"{SERVICE}.advance_enrollment", side_effect=advance):
            await dispatch_reminders(
                mock_db, [_reminder(ReminderKind.CAMPAIGN, step=1)], NOW, _limiter(), _settings(),
            )

        assert calls == ["commit", "advance", "commit"]

    async def test_advance_failure_keeps_the_send(self, mock_db):
        with patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock,
                   return_value=SmsResult(success=True, message_sid="SM1")), \
             patch(f"{SERVICE}.advance_enrollment", new_callable=AsyncMock,
                   side_effect=OperationalError("UPDATE", {}, Exception("deadlock detected"))):
            result = await dispatch_reminders(
                mock_db, [_reminder(ReminderKind.CAMPAIGN, step=3)], NOW, _limiter(), _settings(),
            )

        assert result.processed == 1
        assert result.errors == []
        # The sent log row was committed before the failed update was rolled back
        mock_db.commit.assert_awaited_once()
        mock_db.rollback.assert_awaited_once()


# ---------------------------------------------------------------------------
# run_dispatch
# ---------------------------------------------------------------------------

class TestRunDispatch:

    async def test_skipped_when_lock_held_elsewhere(self, mock_db):
        with patch(f"{SERVICE}.dispatch_lock", _lock(False)), \
             patch(f"{SERVICE}.detect_and_mark_no_shows", new_callable=AsyncMock) as sweep:
            run = await run_dispatch(mock_db, now=NOW, settings=_settings())

        assert run.status == "skipped"
        assert run.success is True
        assert run.dispatch_result.processed == 0
        sweep.assert_not_awaited()

    async def test_sweeps_then_sends(self, mock_db):
        reminders = [_reminder()]
        with patch(f"{SERVICE}.dispatch_lock", _lock(True)), \
             patch(f"{SERVICE}.detect_and_mark_no_shows", new_callable=AsyncMock,
                   return_value=SweepResult(detected=2, marked=2, enrolled=1)) as sweep, \
             patch(f"{SERVICE}.resolve_due_reminders", new_callable=AsyncMock,
                   return_value=reminders) as resolve, \
             patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock,
                   return_value=SmsResult(success=True, message_sid="mock_1")):
            run = await run_dispatch(mock_db, now=NOW, rate_limiter=_limiter(), settings=_settings())

        assert run.status == "completed"
        assert run.success is True
        assert run.no_show_result.marked == 2
        assert run.dispatch_result.processed == 1
        sweep.assert_awaited_once_with(mock_db, NOW)
        resolve.assert_awaited_once_with(mock_db, NOW)

    async def test_errors_make_run_unsuccessful(self, mock_db):
        with patch(f"{SERVICE}.dispatch_lock", _lock(True)), \
             patch(f"{SERVICE}.detect_and_mark_no_shows", new_callable=AsyncMock,
                   return_value=SweepResult()), \
             patch(f"{SERVICE}.resolve_due_reminders", new_callable=AsyncMock,
                   return_value=[_reminder()]), \
             patch(f"{SERVICE}.has_been_sent", new_callable=AsyncMock, return_value=False), \
             patch(f"{SERVICE}.send_sms", new_callable=AsyncMock,
                   return_value=SmsResult(success=False, error="Twilio error: down")):
            run = await run_dispatch(mock_db, now=NOW, rate_limiter=_limiter(), settings=_settings())

        assert run.status == "completed"
        assert run.success is False


# ---------------------------------------------------------------------------
# Engine health
# ---------------------------------------------------------------------------

class TestEngineStatus:

    async def test_healthy_with_pending_counts(self, mock_db):
        mock_db.execute.return_value = make_result(scalar=1)
        with patch(f"{SERVICE}.get_due_appointment_reminders", new_callable=AsyncMock,
                   return_value=[_reminder(), _reminder()]), \
             patch(f"{SERVICE}.get_due_campaign_messages", new_callable=AsyncMock,
                   return_value=[_reminder(ReminderKind.CAMPAIGN, step=1)]):
            status = await get_engine_status(mock_db, _settings(), NOW)

        assert status.healthy
        assert status.database_connected is True
        assert status.pending_appointment_reminders == 2
        assert status.pending_campaign_messages == 1
        assert status.total_pending == 3
        assert status.last_check == NOW.isoformat()

    async def test_connection_refused(self, mock_db):
        mock_db.execute.side_effect = ConnectionRefusedError(111, "Connection refused")

        status = await get_engine_status(mock_db, _settings(), NOW)

        assert status.status == "error"
        assert status.database_connected is False
        with pytest.raises(EngineUnavailableError):
            await ensure_engine_ready(mock_db, _settings())

    async def test_database_unreachable(self, mock_db):
        mock_db.execute.side_effect = OperationalError("SELECT", {}, Exception("refused"))

        status = await get_engine_status(mock_db, _settings(), NOW)

        assert status.status == "error"
        assert status.database_connected is False
        assert "refused" in status.error

    async def test_real_sms_without_credentials(self, mock_db):
        mock_db.execute.return_value = make_result(scalar=1)

        status = await get_engine_status(mock_db, _settings(ENABLE_REAL_SMS=True), NOW)

        assert status.status == "error"
        assert status.database_connected is True
        assert "TWILIO_ACCOUNT_SID" in status.error

    async def test_ensure_ready_raises(self, mock_db):
        mock_db.execute.side_effect = OperationalError("SELECT", {}, Exception("refused"))

        with pytest.raises(EngineUnavailableError) as exc_info:
            await ensure_engine_ready(mock_db, _settings())
        assert exc_info.value.status.database_connected is False


class TestPreview:

    async def test_preview_writes_nothing(self, mock_db):
        reminders = [_reminder()]
        with patch(f"{SERVICE}.count_pending_no_shows", new_callable=AsyncMock, return_value=4), \
             patch(f"{SERVICE}.resolve_due_reminders", new_callable=AsyncMock, return_value=reminders):
            preview = await preview_dispatch(mock_db, NOW)

        assert preview.would_mark_no_shows == 4
        assert preview.reminders == reminders
        mock_db.commit.assert_not_awaited()
        mock_db.add.assert_not_called()
