"""
Dispatch orchestrator: the single entry point the cron trigger calls.

One run sweeps no-shows, resolves everything due, then sends sequentially
through the gateway with token-bucket pacing. Per-message failures are
collected and never stop the loop; only an unreachable database or missing
provider credentials are fatal, and those surface through the health check.

Runs are serialized across workers and hosts with a PostgreSQL advisory
lock; a run that cannot take it does nothing and reports ``skipped``.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rehabflow.config import Settings, get_settings
from rehabflow.database import get_engine
from rehabflow.models.clinic import Clinic
from rehabflow.services.campaign_service import advance_enrollment
from rehabflow.services.no_show_service import (
    SweepResult,
    count_pending_no_shows,
    detect_and_mark_no_shows,
)
from rehabflow.services.rate_limiter import TokenBucketRateLimiter
from rehabflow.services.reminder_service import (
    DueReminder,
    ReminderKind,
    get_due_appointment_reminders,
    get_due_campaign_messages,
    has_been_sent,
    resolve_due_reminders,
)
from rehabflow.services.sms_service import send_sms

logger = logging.getLogger(__name__)

# Arbitrary unique ID for the dispatch lock
DISPATCH_ADVISORY_LOCK_ID = 482_761_093


class EngineUnavailableError(Exception):
    """The database is unreachable or provider credentials are missing."""

    def __init__(self, status: "EngineStatus"):
        super().__init__(status.error or "Message engine unavailable")
        self.status = status


@dataclass
class EngineStatus:
    status: str
    database_connected: bool
    pending_appointment_reminders: int = 0
    pending_campaign_messages: int = 0
    total_pending: int = 0
    last_check: str = ""
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


@dataclass
class DispatchResult:
    success: bool = True
    processed: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class DispatchRun:
    status: str
    no_show_result: SweepResult = field(default_factory=SweepResult)
    dispatch_result: DispatchResult = field(default_factory=DispatchResult)

    @property
    def success(self) -> bool:
        return not self.dispatch_result.errors


@dataclass
class DispatchPreview:
    would_mark_no_shows: int
    reminders: list[DueReminder]


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------

@asynccontextmanager
async def dispatch_lock() -> AsyncIterator[bool]:
    """Hold the session-level advisory lock on a dedicated connection.

    Yields whether the lock was acquired. The connection stays checked out
    for the whole run so the unlock happens on the connection that locked.
    """
    async with get_engine().connect() as conn:
        acquired = (
            await conn.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"),
                {"lock_id": DISPATCH_ADVISORY_LOCK_ID},
            )
        ).scalar_one()
        try:
            yield bool(acquired)
        finally:
            if acquired:
                await conn.execute(
                    text("SELECT pg_advisory_unlock(:lock_id)"),
                    {"lock_id": DISPATCH_ADVISORY_LOCK_ID},
                )


# ---------------------------------------------------------------------------
# 1. Health check
# ---------------------------------------------------------------------------

async def get_engine_status(
    db: AsyncSession,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> EngineStatus:
    """Connectivity, credentials and what is pending right now."""
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    last_check = now.isoformat()

    try:
        await db.execute(select(func.count(Clinic.id)))
    except (SQLAlchemyError, OSError) as e:
        logger.error("get_engine_status: database unreachable: %s", e)
        await db.rollback()
        return EngineStatus(
            status="error",
            database_connected=False,
            last_check=last_check,
            error=f"Database unreachable: {e}",
        )

    if settings.ENABLE_REAL_SMS and not settings.twilio_configured:
        logger.error("get_engine_status: real SMS enabled but Twilio is not configured")
        return EngineStatus(
            status="error",
            database_connected=True,
            last_check=last_check,
            error=(
                "Twilio credentials are not configured: set TWILIO_ACCOUNT_SID, "
                "TWILIO_AUTH_TOKEN and TWILIO_MESSAGING_SERVICE_SID"
            ),
        )

    try:
        appointment_reminders = await get_due_appointment_reminders(db, now)
        campaign_messages = await get_due_campaign_messages(db, now)
    except (SQLAlchemyError, OSError) as e:
        logger.error("get_engine_status: pending message lookup failed: %s", e)
        await db.rollback()
        return EngineStatus(
            status="error",
            database_connected=False,
            last_check=last_check,
            error=f"Database unreachable: {e}",
        )

    return EngineStatus(
        status="healthy",
        database_connected=True,
        pending_appointment_reminders=len(appointment_reminders),
        pending_campaign_messages=len(campaign_messages),
        total_pending=len(appointment_reminders) + len(campaign_messages),
        last_check=last_check,
    )


async def ensure_engine_ready(
    db: AsyncSession,
    settings: Settings | None = None,
) -> EngineStatus:
    """Health check that raises EngineUnavailableError when not healthy."""
    status = await get_engine_status(db, settings)
    if not status.healthy:
        raise EngineUnavailableError(status)
    return status


# ---------------------------------------------------------------------------
# 2. Send loop
# ---------------------------------------------------------------------------

async def _record_sent(db: AsyncSession, reminder: DueReminder, now: datetime) -> None:
    """Persist the sent log row, then advance the campaign step.

    The log row is committed first and on its own: it is the idempotency
    record, so a failed enrollment update must not take it down too.
    """
    try:
        await db.commit()
    except (SQLAlchemyError, OSError):
        logger.exception(
            "dispatch_reminders: %s was sent but its log row could not be committed",
            reminder.idempotency_key,
        )
        await db.rollback()
        return

    if reminder.kind is not ReminderKind.CAMPAIGN:
        return

    try:
        await advance_enrollment(
            db,
            campaign=reminder.campaign,
            patient_id=reminder.patient_id,
            appointment_id=reminder.appointment_id,
            sent_step=reminder.step,
            now=now,
        )
        await db.commit()
    except (SQLAlchemyError, OSError):
        # The step is logged as sent and will not go out again; the
        # enrollment stays at this step.
        logger.exception(
            "dispatch_reminders: %s was sent but the enrollment did not advance",
            reminder.idempotency_key,
        )
        await db.rollback()


async def dispatch_reminders(
    db: AsyncSession,
    reminders: list[DueReminder],
    now: datetime,
    rate_limiter: TokenBucketRateLimiter,
    settings: Settings | None = None,
) -> DispatchResult:
    """
    Send each reminder in order and advance campaign steps that went out.

    Every message is committed on its own, so a later failure never undoes
    an earlier send. The idempotency key is checked again right before
    sending because the list may be stale by the time an item's turn comes.

    ``processed`` counts gateway successes and ``errors`` gateway failures.
    Bookkeeping that fails after a successful send is logged but does not
    turn the send into an error.
    """
    result = DispatchResult()

    for reminder in reminders:
        reminder_id = reminder.idempotency_key
        try:
            await rate_limiter.acquire()

            if await has_been_sent(db, reminder_id):
                logger.info("dispatch_reminders: %s already sent, skipping", reminder_id)
                result.skipped += 1
                continue

            sms = await send_sms(db, reminder.to_outbound(), settings)
            if not sms.success:
                # Keep the failed log row
                await db.commit()
                result.errors.append({"reminder_id": reminder_id, "error": sms.error})
                continue
        except Exception as e:
            logger.exception("dispatch_reminders: failed to process %s", reminder_id)
            await db.rollback()
            result.errors.append({"reminder_id": reminder_id, "error": str(e)})
            continue

        result.processed += 1
        await _record_sent(db, reminder, now)

    result.success = not result.errors
    logger.info(
        "dispatch_reminders: %d sent, %d skipped, %d error(s)",
        result.processed, result.skipped, len(result.errors),
    )
    return result


# ---------------------------------------------------------------------------
# 3. run_dispatch
# ---------------------------------------------------------------------------

async def run_dispatch(
    db: AsyncSession,
    *,
    now: datetime | None = None,
    rate_limiter: TokenBucketRateLimiter | None = None,
    settings: Settings | None = None,
) -> DispatchRun:
    """Sweep, resolve and send, holding the dispatch lock for the whole run."""
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    rate_limiter = rate_limiter or TokenBucketRateLimiter(
        settings.SMS_SEND_RATE_PER_SECOND, settings.SMS_SEND_BURST,
    )

    async with dispatch_lock() as acquired:
        if not acquired:
            logger.warning("run_dispatch: another dispatch run holds the lock, skipping")
            return DispatchRun(status="skipped")

        sweep = await detect_and_mark_no_shows(db, now)
        reminders = await resolve_due_reminders(db, now)
        dispatch = await dispatch_reminders(db, reminders, now, rate_limiter, settings)

    return DispatchRun(status="completed", no_show_result=sweep, dispatch_result=dispatch)


# ---------------------------------------------------------------------------
# 4. preview_dispatch
# ---------------------------------------------------------------------------

async def preview_dispatch(
    db: AsyncSession,
    now: datetime | None = None,
) -> DispatchPreview:
    """What a run at ``now`` would do, without writing anything."""
    now = now or datetime.now(timezone.utc)
    would_mark = await count_pending_no_shows(db, now)
    reminders = await resolve_due_reminders(db, now)
    return DispatchPreview(would_mark_no_shows=would_mark, reminders=reminders)
