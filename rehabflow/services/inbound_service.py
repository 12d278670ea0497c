"""
Inbound SMS handling: patient replies to the clinic's Twilio number.

The clinic is resolved from the number the patient texted, the patient from
(sender, clinic). The normalized body is matched exactly against keyword
sets; every inbound message is logged whether or not it matched anything.
Replies go back to the patient as TwiML built by the route.
"""

import enum
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rehabflow.models.appointment import Appointment
from rehabflow.models.clinic import Clinic
from rehabflow.models.enums import (
    AppointmentStatus,
    MessageDirection,
    MessageStatus,
    MessageType,
)
from rehabflow.models.exercise_completion import ExerciseCompletion
from rehabflow.models.message_log import MessageLog
from rehabflow.models.patient import Patient
from rehabflow.models.patient_progress import PatientProgress
from rehabflow.services.reminder_service import clinic_zone, format_appointment_time
from rehabflow.services.sms_service import update_patient_opt_in

logger = logging.getLogger(__name__)


class ReplyIntent(str, enum.Enum):
    OPT_OUT = "opt_out"
    OPT_IN = "opt_in"
    CONFIRM = "confirm"
    EXERCISE_DONE = "exercise_done"
    PAIN_LEVEL = "pain_level"
    UNKNOWN = "unknown"


OPT_OUT_KEYWORDS = frozenset({
    "STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT", "OPT OUT", "OPTOUT",
})
OPT_IN_KEYWORDS = frozenset({"START", "UNSTOP", "SUBSCRIBE", "OPT IN", "OPTIN", "JOIN"})
CONFIRM_KEYWORDS = frozenset({"CONFIRM", "CONFIRMED", "YES", "Y"})
EXERCISE_KEYWORDS = frozenset({"DONE", "COMPLETED", "FINISHED"})

# "7", "PAIN 7", "PAIN: 7", "PAIN LEVEL 7"
_PAIN_PATTERN = re.compile(r"^(?:PAIN(?:\s+LEVEL)?\s*[:\-]?\s*)?(\d{1,2})$")

NEEDS_REVIEW = "needs_review"

OPT_OUT_CONFIRMATION = "You have been unsubscribed from SMS messages. Reply START to opt back in."
OPT_IN_CONFIRMATION = "You have been subscribed to SMS messages. Reply STOP to opt out at any time."
NO_UPCOMING_APPOINTMENT = "No upcoming appointments found. Please contact us to schedule."
PATIENT_NOT_FOUND = "Patient not found. Please contact us."
PAIN_LEVEL_HINT = "Please respond with a pain level from 0-10 (0 = no pain, 10 = worst pain)."
GENERAL_ACKNOWLEDGEMENT = "Thank you for your message. A team member will respond shortly."


@dataclass
class ClassifiedReply:
    intent: ReplyIntent
    pain_level: int | None = None


@dataclass
class InboundMessage:
    message_sid: str
    from_number: str
    to_number: str
    body: str
    account_sid: str | None = None


@dataclass
class InboundResult:
    intent: ReplyIntent
    reply_message: str | None = None
    clinic_id: UUID | None = None
    patient_id: UUID | None = None


def normalize_reply(body: str | None) -> str:
    """Upper-case, collapse whitespace and drop trailing punctuation."""
    text = " ".join((body or "").upper().split())
    return text.rstrip(".!?").strip()


def classify_reply(body: str | None) -> ClassifiedReply:
    text = normalize_reply(body)

    if text in OPT_OUT_KEYWORDS:
        return ClassifiedReply(ReplyIntent.OPT_OUT)
    if text in OPT_IN_KEYWORDS:
        return ClassifiedReply(ReplyIntent.OPT_IN)
    if text in CONFIRM_KEYWORDS:
        return ClassifiedReply(ReplyIntent.CONFIRM)
    if text in EXERCISE_KEYWORDS:
        return ClassifiedReply(ReplyIntent.EXERCISE_DONE)

    match = _PAIN_PATTERN.match(text)
    if match:
        level = int(match.group(1))
        # Out of range still reads as a pain report; the reply asks again
        return ClassifiedReply(ReplyIntent.PAIN_LEVEL, level if level <= 10 else None)

    return ClassifiedReply(ReplyIntent.UNKNOWN)


def describe_pain(level: int) -> str:
    if level <= 3:
        return "low"
    if level <= 6:
        return "moderate"
    return "high"


def _clinic_today(clinic: Clinic, now: datetime) -> date:
    return now.astimezone(clinic_zone(clinic.timezone)).date()


async def find_clinic_by_phone(db: AsyncSession, phone: str) -> Clinic | None:
    result = await db.execute(select(Clinic).where(Clinic.phone == phone))
    return result.scalar_one_or_none()


async def find_patient(db: AsyncSession, phone: str, clinic_id: UUID) -> Patient | None:
    result = await db.execute(
        select(Patient).where(Patient.phone == phone, Patient.clinic_id == clinic_id)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Reply handlers
# ---------------------------------------------------------------------------

async def confirm_next_appointment(
    db: AsyncSession,
    patient: Patient,
    clinic: Clinic,
    now: datetime,
) -> str:
    result = await db.execute(
        select(Appointment)
        .where(
            Appointment.patient_id == patient.id,
            Appointment.clinic_id == clinic.id,
            Appointment.status == AppointmentStatus.SCHEDULED,
            Appointment.scheduled_at >= now,
        )
        .order_by(Appointment.scheduled_at)
        .limit(1)
    )
    appointment = result.scalar_one_or_none()
    if appointment is None:
        return NO_UPCOMING_APPOINTMENT

    appointment.status = AppointmentStatus.CONFIRMED
    await db.flush()
    logger.info(
        "confirm_next_appointment: patient %s confirmed appointment %s via SMS",
        patient.id, appointment.id,
    )

    local = appointment.scheduled_at.astimezone(clinic_zone(clinic.timezone))
    return (
        f"Appointment confirmed for {local.strftime('%m/%d/%Y')} at "
        f"{format_appointment_time(appointment.scheduled_at, clinic.timezone)}. See you soon!"
    )


async def record_exercise_completion(
    db: AsyncSession,
    patient: Patient,
    clinic: Clinic,
    now: datetime,
) -> str:
    db.add(
        ExerciseCompletion(
            clinic_id=clinic.id,
            patient_id=patient.id,
            completed_at=now,
            compliance_score=1.0,
            notes="Completed via SMS response",
        )
    )
    await db.flush()
    return f"Great job, {patient.first_name}! Exercise session logged. Keep up the good work!"


async def record_pain_level(
    db: AsyncSession,
    patient: Patient,
    clinic: Clinic,
    level: int,
    now: datetime,
) -> str:
    db.add(
        PatientProgress(
            clinic_id=clinic.id,
            patient_id=patient.id,
            assessment_date=_clinic_today(clinic, now),
            pain_level=level,
            notes="Pain level reported via SMS",
        )
    )
    await db.flush()
    return (
        f"Thank you, {patient.first_name}. Pain level {level} ({describe_pain(level)}) "
        "recorded. A therapist will review this information."
    )


# ---------------------------------------------------------------------------
# handle_inbound_message
# ---------------------------------------------------------------------------

async def handle_inbound_message(
    db: AsyncSession,
    message: InboundMessage,
    now: datetime | None = None,
) -> InboundResult:
    """
    Apply a patient reply and log it.

    Returns the intent and the text to reply with (None for no reply).
    Commits on success; database errors propagate to the caller, which
    still acknowledges the webhook.
    """
    now = now or datetime.now(timezone.utc)
    classified = classify_reply(message.body)

    clinic = await find_clinic_by_phone(db, message.to_number)
    if clinic is None:
        logger.warning(
            "handle_inbound_message: no clinic owns %s (sid %s), ignoring",
            message.to_number, message.message_sid,
        )
        return InboundResult(intent=classified.intent)

    patient = await find_patient(db, message.from_number, clinic.id)
    result = InboundResult(
        intent=classified.intent,
        clinic_id=clinic.id,
        patient_id=patient.id if patient else None,
    )

    if classified.intent is ReplyIntent.OPT_OUT:
        await update_patient_opt_in(db, message.from_number, clinic.id, False)
        result.reply_message = OPT_OUT_CONFIRMATION
    elif classified.intent is ReplyIntent.OPT_IN:
        await update_patient_opt_in(db, message.from_number, clinic.id, True)
        result.reply_message = OPT_IN_CONFIRMATION
    elif classified.intent is ReplyIntent.UNKNOWN:
        result.reply_message = GENERAL_ACKNOWLEDGEMENT
    elif patient is None:
        result.reply_message = PATIENT_NOT_FOUND
    elif classified.intent is ReplyIntent.CONFIRM:
        result.reply_message = await confirm_next_appointment(db, patient, clinic, now)
    elif classified.intent is ReplyIntent.EXERCISE_DONE:
        result.reply_message = await record_exercise_completion(db, patient, clinic, now)
    elif classified.pain_level is None:
        result.reply_message = PAIN_LEVEL_HINT
    else:
        result.reply_message = await record_pain_level(
            db, patient, clinic, classified.pain_level, now,
        )

    if classified.intent is ReplyIntent.UNKNOWN:
        notes = NEEDS_REVIEW
    else:
        notes = f"Reply: {classified.intent.value}"

    db.add(
        MessageLog(
            clinic_id=clinic.id,
            patient_id=result.patient_id,
            direction=MessageDirection.INBOUND,
            message_type=MessageType.REPLY,
            content=message.body or "",
            recipient=message.to_number,
            status=MessageStatus.RECEIVED,
            twilio_sid=message.message_sid or None,
            sent_at=now,
            notes=notes,
            metadata_={
                "from": message.from_number,
                "intent": classified.intent.value,
                "account_sid": message.account_sid,
            },
        )
    )
    await db.commit()

    logger.info(
        "handle_inbound_message: %s from %s for clinic %s",
        classified.intent.value, message.from_number, clinic.id,
    )
    return result
