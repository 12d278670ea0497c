"""
SMS gateway for the message engine.

Sends a single SMS through Twilio (or a deterministic mock when real sending
is disabled), re-checks the patient's opt-in flag before every real send, and
writes a MessageLog row for every attempt, successful or not. Also paced
batch sends for one clinic and per-clinic delivery statistics. All
operations are clinic-scoped.

The caller owns the transaction: this module flushes but never commits.
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from rehabflow.config import Settings, get_settings
from rehabflow.models.enums import CampaignType, MessageDirection, MessageStatus, MessageType
from rehabflow.models.message_log import MessageLog
from rehabflow.models.patient import Patient
from rehabflow.services.rate_limiter import TokenBucketRateLimiter
from rehabflow.utils.log_sanitizer import mask_phone

logger = logging.getLogger(__name__)

# Strict E.164 format: + followed by 1-15 digits, starting with non-zero
_E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")

OPTED_OUT_ERROR = "Patient has opted out of SMS communications"

# Provider statuses that mean a sent message never reached the handset
FAILED_DELIVERY_STATUSES = ("failed", "undelivered")


@dataclass
class OutboundSms:
    to: str
    body: str
    clinic_id: UUID
    message_type: MessageType = MessageType.REMINDER
    patient_id: UUID | None = None
    appointment_id: UUID | None = None
    enrollment_id: UUID | None = None
    campaign: CampaignType | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class LogWriteResult:
    """Outcome of writing a MessageLog row. Callers may inspect or ignore it."""
    ok: bool
    log_id: UUID | None = None
    error: str | None = None


@dataclass
class SmsResult:
    success: bool
    message_sid: str | None = None
    delivery_status: str | None = None
    error: str | None = None
    log: LogWriteResult | None = None


class SmsSendError(Exception):
    """A send was refused before reaching the provider."""


# Cache Twilio Client instances keyed by (account_sid, auth_token).
@lru_cache(maxsize=16)
def get_twilio_client(account_sid: str, auth_token: str) -> Client:
    return Client(account_sid, auth_token)


def is_valid_e164(phone: str | None) -> bool:
    return bool(phone) and bool(_E164_PATTERN.match(phone))


def mock_message_sid(message: OutboundSms) -> str:
    """Deterministic stand-in SID for mocked sends."""
    digest = hashlib.sha256(
        f"{message.clinic_id}:{message.to}:{message.body}".encode()
    ).hexdigest()
    return f"mock_{digest[:32]}"


# ---------------------------------------------------------------------------
# 1. send_sms
# ---------------------------------------------------------------------------

async def send_sms(
    db: AsyncSession,
    message: OutboundSms,
    settings: Settings | None = None,
) -> SmsResult:
    """
    Send one SMS and log the attempt.

    Never raises for send failures: invalid numbers, opted-out recipients,
    Twilio errors and network errors all come back as
    ``SmsResult(success=False, error=...)`` with a ``failed`` log row.
    """
    settings = settings or get_settings()

    if not is_valid_e164(message.to):
        error = f"Invalid phone number format: {mask_phone(message.to)}"
        logger.error("send_sms: %s (clinic %s)", error, message.clinic_id)
        log = await log_message(db, message, MessageStatus.FAILED, error_message=error)
        return SmsResult(success=False, error=error, log=log)

    if not settings.ENABLE_REAL_SMS:
        sid = mock_message_sid(message)
        logger.info(
            "send_sms: mock %s SMS to %s (SID: %s)",
            message.message_type.value, message.to, sid,
        )
        log = await log_message(
            db, message, MessageStatus.SENT, message_sid=sid, delivery_status="delivered",
        )
        return SmsResult(success=True, message_sid=sid, delivery_status="delivered", log=log)

    try:
        # Opt-in may have changed between resolution and send
        if not await is_patient_opted_in(db, message.to, message.clinic_id):
            raise SmsSendError(OPTED_OUT_ERROR)

        client = get_twilio_client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        # Twilio's SDK is synchronous; run it in a thread to keep the loop free
        twilio_message = await asyncio.to_thread(
            client.messages.create,
            to=message.to,
            body=message.body,
            messaging_service_sid=settings.TWILIO_MESSAGING_SERVICE_SID,
        )
    except SmsSendError as e:
        error = str(e)
        logger.warning("send_sms: refused send to %s: %s", message.to, error)
    except TwilioRestException as e:
        error = f"Twilio error: {e.msg}" if getattr(e, "msg", None) else str(e)
        logger.error(
            "send_sms: Twilio rejected SMS to %s (status %s): %s",
            message.to, getattr(e, "status", None), error,
        )
    except Exception as e:
        error = f"Network/runtime error: {e}"
        logger.error("send_sms: error sending SMS to %s: %s", message.to, e)
    else:
        logger.info(
            "send_sms: sent %s SMS to %s (SID: %s, status: %s)",
            message.message_type.value, message.to, twilio_message.sid, twilio_message.status,
        )
        log = await log_message(
            db,
            message,
            MessageStatus.SENT,
            message_sid=twilio_message.sid,
            delivery_status=twilio_message.status,
        )
        return SmsResult(
            success=True,
            message_sid=twilio_message.sid,
            delivery_status=twilio_message.status,
            log=log,
        )

    log = await log_message(db, message, MessageStatus.FAILED, error_message=error)
    return SmsResult(success=False, error=error, log=log)


# ---------------------------------------------------------------------------
# 2. log_message
# ---------------------------------------------------------------------------

async def log_message(
    db: AsyncSession,
    message: OutboundSms,
    status: MessageStatus,
    message_sid: str | None = None,
    delivery_status: str | None = None,
    error_message: str | None = None,
) -> LogWriteResult:
    """
    Append an outbound MessageLog row.

    A failed write is reported through the returned LogWriteResult and the
    session is rolled back to a usable state; it never raises.
    """
    now = datetime.now(timezone.utc)
    entry = MessageLog(
        clinic_id=message.clinic_id,
        patient_id=message.patient_id,
        appointment_id=message.appointment_id,
        enrollment_id=message.enrollment_id,
        campaign=message.campaign,
        direction=MessageDirection.OUTBOUND,
        message_type=message.message_type,
        content=message.body,
        recipient=message.to,
        status=status,
        twilio_sid=message_sid,
        delivery_status=delivery_status,
        idempotency_key=message.idempotency_key,
        sent_at=now,
        delivered_at=now if delivery_status == "delivered" else None,
        error_message=error_message,
        metadata_=dict(message.metadata),
    )
    try:
        db.add(entry)
        await db.flush()
    except SQLAlchemyError as e:
        logger.warning(
            "log_message: could not log %s message for clinic %s: %s",
            status.value, message.clinic_id, e,
        )
        await db.rollback()
        return LogWriteResult(ok=False, error=str(e))

    return LogWriteResult(ok=True, log_id=entry.id)


# ---------------------------------------------------------------------------
# 3. Opt-in guard
# ---------------------------------------------------------------------------

async def is_patient_opted_in(
    db: AsyncSession,
    phone: str,
    clinic_id: UUID,
) -> bool:
    """True only if a patient with this phone in this clinic has opted in.

    Lookup failures count as not opted in.
    """
    try:
        result = await db.execute(
            select(Patient.opt_in_sms).where(
                Patient.phone == phone,
                Patient.clinic_id == clinic_id,
            )
        )
        return bool(result.scalar_one_or_none())
    except SQLAlchemyError as e:
        logger.error("is_patient_opted_in: lookup failed for %s: %s", phone, e)
        return False


async def update_patient_opt_in(
    db: AsyncSession,
    phone: str,
    clinic_id: UUID,
    opted_in: bool,
) -> int:
    """Set the opt-in flag for a patient phone in a clinic. Returns rows updated."""
    result = await db.execute(
        update(Patient)
        .where(Patient.phone == phone, Patient.clinic_id == clinic_id)
        .values(opt_in_sms=opted_in)
    )
    logger.info(
        "update_patient_opt_in: %s -> %s (%d row(s), clinic %s)",
        phone, "opted in" if opted_in else "opted out", result.rowcount, clinic_id,
    )
    return result.rowcount


# ---------------------------------------------------------------------------
# 4. handle_delivery_status
# ---------------------------------------------------------------------------

async def handle_delivery_status(
    db: AsyncSession,
    message_sid: str,
    delivery_status: str,
    error_code: str | None = None,
) -> int:
    """Sync a Twilio status callback onto the matching log rows.

    Only the delivery columns change; ``status`` stays ``sent`` so the row
    keeps blocking a duplicate send of the same reminder.
    """
    normalized = (delivery_status or "").strip().lower()
    values: dict[str, Any] = {"delivery_status": normalized}

    if normalized == "delivered":
        values["delivered_at"] = datetime.now(timezone.utc)
    if error_code:
        values["error_message"] = error_code

    result = await db.execute(
        update(MessageLog).where(MessageLog.twilio_sid == message_sid).values(**values)
    )
    if result.rowcount:
        logger.info("handle_delivery_status: %s -> %s", message_sid, normalized)
    else:
        logger.warning(
            "handle_delivery_status: no message log for SID %s (status %s)",
            message_sid, normalized,
        )
    return result.rowcount


# ---------------------------------------------------------------------------
# 5. send_bulk_sms
# ---------------------------------------------------------------------------

async def send_bulk_sms(
    db: AsyncSession,
    messages: list[OutboundSms],
    clinic_id: UUID,
    rate_limiter: TokenBucketRateLimiter | None = None,
    settings: Settings | None = None,
) -> list[SmsResult]:
    """
    Send a batch of messages for one clinic, paced by the token bucket.

    Every message goes out under ``clinic_id``. Results come back in input
    order, one per message; a failed send does not stop the batch. Like
    send_sms this flushes log rows but leaves the commit to the caller.
    """
    settings = settings or get_settings()
    rate_limiter = rate_limiter or TokenBucketRateLimiter(
        settings.SMS_SEND_RATE_PER_SECOND, settings.SMS_SEND_BURST,
    )

    results: list[SmsResult] = []
    for message in messages:
        await rate_limiter.acquire()
        results.append(await send_sms(db, replace(message, clinic_id=clinic_id), settings))

    sent = sum(1 for r in results if r.success)
    logger.info(
        "send_bulk_sms: clinic %s, %d sent, %d failed",
        clinic_id, sent, len(results) - sent,
    )
    return results


# ---------------------------------------------------------------------------
# 6. get_message_stats
# ---------------------------------------------------------------------------

@dataclass
class MessageStats:
    total: int = 0
    delivered: int = 0
    failed: int = 0
    pending: int = 0
    # Percentage of total, two decimals
    delivery_rate: float = 0.0


async def get_message_stats(
    db: AsyncSession,
    clinic_id: UUID,
    days: int = 30,
    now: datetime | None = None,
) -> MessageStats:
    """Outbound delivery counts for one clinic over the last ``days`` days.

    A message is delivered once the provider reported ``delivered``, failed
    when the send failed or the provider reported a failure, and pending
    otherwise. Lookup failures return zeroed stats.
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=days)

    delivered = MessageLog.delivery_status == "delivered"
    failed = or_(
        MessageLog.status == MessageStatus.FAILED,
        MessageLog.delivery_status.in_(FAILED_DELIVERY_STATUSES),
    )
    try:
        result = await db.execute(
            select(
                func.count(MessageLog.id),
                func.count(MessageLog.id).filter(delivered),
                func.count(MessageLog.id).filter(failed),
            ).where(
                MessageLog.clinic_id == clinic_id,
                MessageLog.direction == MessageDirection.OUTBOUND,
                MessageLog.status.in_((MessageStatus.SENT, MessageStatus.FAILED)),
                MessageLog.sent_at >= since,
            )
        )
        total, delivered_count, failed_count = result.one()
    except SQLAlchemyError as e:
        logger.error("get_message_stats: lookup failed for clinic %s: %s", clinic_id, e)
        return MessageStats()

    total = total or 0
    delivered_count = delivered_count or 0
    failed_count = failed_count or 0
    return MessageStats(
        total=total,
        delivered=delivered_count,
        failed=failed_count,
        pending=total - delivered_count - failed_count,
        delivery_rate=round(delivered_count / total * 100, 2) if total else 0.0,
    )
