"""
Due-reminder resolver for the message engine.

Works out which messages must go out at a given instant: appointment
reminders whose time-to-start falls in one of the fixed bands, and campaign
steps whose next_message_at has passed. Every candidate is checked against
the message log by idempotency key, so the resolver can run many times per
window without producing the same reminder twice.

Reads only; nothing here writes to the database.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rehabflow.models.appointment import Appointment
from rehabflow.models.campaign_enrollment import CampaignEnrollment
from rehabflow.models.clinic import Clinic
from rehabflow.models.enums import (
    AppointmentStatus,
    CampaignType,
    EnrollmentStatus,
    MessageStatus,
    MessageType,
)
from rehabflow.models.message_log import MessageLog
from rehabflow.models.patient import Patient
from rehabflow.services.campaign_service import render_campaign_message
from rehabflow.services.sms_service import OutboundSms

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"


class ReminderBand(str, enum.Enum):
    DAY_BEFORE = "24h"
    FOUR_HOURS = "4h"
    ONE_HOUR = "1h"


class ReminderKind(str, enum.Enum):
    APPOINTMENT = "appointment"
    CAMPAIGN = "campaign"


# (band, lower bound exclusive, upper bound inclusive) in hours before start
REMINDER_BANDS = (
    (ReminderBand.DAY_BEFORE, 23.0, 25.0),
    (ReminderBand.FOUR_HOURS, 3.5, 4.5),
    (ReminderBand.ONE_HOUR, 0.5, 1.5),
)

# Widest band edge; appointments further out are not loaded
REMINDER_HORIZON = timedelta(hours=25)

REMINDABLE_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)

# ---------------------------------------------------------------------------
# Reminder message templates
# ---------------------------------------------------------------------------

REMINDER_TEMPLATES = {
    ReminderBand.DAY_BEFORE: (
        "Hi {first_name}! This is a reminder that you have an appointment at "
        "{clinic_name} tomorrow at {time}. Please bring your insurance card and "
        "wear comfortable clothing. Reply STOP to opt out."
    ),
    ReminderBand.FOUR_HOURS: (
        "Hi {first_name}! Your appointment at {clinic_name} is in 4 hours at "
        "{time}. See you soon! Reply STOP to opt out."
    ),
    ReminderBand.ONE_HOUR: (
        "Hi {first_name}! Your appointment at {clinic_name} is in 1 hour. "
        "We're looking forward to seeing you! Reply STOP to opt out."
    ),
}


@dataclass
class DueReminder:
    """A message that must be sent at the evaluation instant."""
    kind: ReminderKind
    idempotency_key: str
    clinic_id: UUID
    patient_id: UUID
    appointment_id: UUID
    recipient: str
    body: str
    band: ReminderBand | None = None
    enrollment_id: UUID | None = None
    campaign: CampaignType | None = None
    step: int | None = None

    @property
    def message_type(self) -> MessageType:
        if self.kind is ReminderKind.CAMPAIGN:
            return MessageType.RECOVERY
        return MessageType.REMINDER

    def to_outbound(self) -> OutboundSms:
        metadata = {"kind": self.kind.value}
        if self.band is not None:
            metadata["band"] = self.band.value
        if self.step is not None:
            metadata["step"] = self.step
        return OutboundSms(
            to=self.recipient,
            body=self.body,
            clinic_id=self.clinic_id,
            message_type=self.message_type,
            patient_id=self.patient_id,
            appointment_id=self.appointment_id,
            enrollment_id=self.enrollment_id,
            campaign=self.campaign,
            idempotency_key=self.idempotency_key,
            metadata=metadata,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def classify_band(scheduled_at: datetime, now: datetime) -> ReminderBand | None:
    hours = (scheduled_at - now).total_seconds() / 3600
    for band, lower, upper in REMINDER_BANDS:
        if lower < hours <= upper:
            return band
    return None


def appointment_idempotency_key(appointment_id: UUID, band: ReminderBand) -> str:
    return f"appointment:{appointment_id}:{band.value}"


def campaign_idempotency_key(campaign: CampaignType, appointment_id: UUID, step: int) -> str:
    return f"campaign:{campaign.value}:{appointment_id}:step:{step}"


def clinic_zone(timezone_str: str | None) -> ZoneInfo:
    """The clinic's IANA zone, falling back to the default for bad names."""
    try:
        return ZoneInfo(timezone_str or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("clinic_zone: unknown timezone %r", timezone_str)
        return ZoneInfo(DEFAULT_TIMEZONE)


def format_appointment_time(scheduled_at: datetime, timezone_str: str | None) -> str:
    """Render a timestamp as clinic-local wall time, e.g. ``2:30 PM``."""
    return scheduled_at.astimezone(clinic_zone(timezone_str)).strftime("%I:%M %p").lstrip("0")


def compose_reminder_message(
    band: ReminderBand,
    first_name: str,
    clinic_name: str,
    time_str: str,
) -> str:
    return REMINDER_TEMPLATES[band].format(
        first_name=first_name,
        clinic_name=clinic_name,
        time=time_str,
    )


async def has_been_sent(db: AsyncSession, idempotency_key: str) -> bool:
    """True when a successful send with this key is already logged."""
    result = await db.execute(
        select(MessageLog.id)
        .where(
            MessageLog.idempotency_key == idempotency_key,
            MessageLog.status == MessageStatus.SENT,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


# ---------------------------------------------------------------------------
# 1. Appointment reminders
# ---------------------------------------------------------------------------

async def get_due_appointment_reminders(
    db: AsyncSession,
    now: datetime,
) -> list[DueReminder]:
    """
    Appointment reminders due at ``now``.

    Candidates are scheduled or confirmed appointments of opted-in patients
    starting within the next 25 hours. Each one either falls into a band or
    produces nothing; a band already logged as sent is skipped.
    """
    result = await db.execute(
        select(Appointment, Patient, Clinic)
        .join(Patient, Appointment.patient_id == Patient.id)
        .join(Clinic, Appointment.clinic_id == Clinic.id)
        .where(
            Appointment.status.in_(REMINDABLE_STATUSES),
            Patient.opt_in_sms.is_(True),
            Appointment.scheduled_at >= now,
            Appointment.scheduled_at <= now + REMINDER_HORIZON,
        )
        .order_by(Appointment.scheduled_at)
    )

    due: list[DueReminder] = []
    for appointment, patient, clinic in result.all():
        band = classify_band(appointment.scheduled_at, now)
        if band is None:
            continue

        key = appointment_idempotency_key(appointment.id, band)
        if await has_been_sent(db, key):
            logger.debug("get_due_appointment_reminders: %s already sent", key)
            continue

        due.append(
            DueReminder(
                kind=ReminderKind.APPOINTMENT,
                idempotency_key=key,
                clinic_id=clinic.id,
                patient_id=patient.id,
                appointment_id=appointment.id,
                recipient=patient.phone or "",
                body=compose_reminder_message(
                    band,
                    patient.first_name,
                    clinic.name,
                    format_appointment_time(appointment.scheduled_at, clinic.timezone),
                ),
                band=band,
            )
        )

    return due


# ---------------------------------------------------------------------------
# 2. Campaign steps
# ---------------------------------------------------------------------------

async def get_due_campaign_messages(
    db: AsyncSession,
    now: datetime,
) -> list[DueReminder]:
    """Campaign steps whose next_message_at has passed, for opted-in patients."""
    result = await db.execute(
        select(CampaignEnrollment, Patient, Clinic)
        .join(Patient, CampaignEnrollment.patient_id == Patient.id)
        .join(Clinic, CampaignEnrollment.clinic_id == Clinic.id)
        .where(
            CampaignEnrollment.status == EnrollmentStatus.ACTIVE,
            CampaignEnrollment.next_message_at <= now,
            Patient.opt_in_sms.is_(True),
        )
        .order_by(CampaignEnrollment.next_message_at)
    )

    due: list[DueReminder] = []
    for enrollment, patient, clinic in result.all():
        body = render_campaign_message(
            enrollment.campaign,
            enrollment.current_step,
            patient.first_name,
            clinic.name,
        )
        if body is None:
            logger.warning(
                "get_due_campaign_messages: enrollment %s is at step %d, "
                "which %s does not define; skipping",
                enrollment.id, enrollment.current_step, enrollment.campaign.value,
            )
            continue

        key = campaign_idempotency_key(
            enrollment.campaign, enrollment.appointment_id, enrollment.current_step,
        )
        if await has_been_sent(db, key):
            logger.debug("get_due_campaign_messages: %s already sent", key)
            continue

        due.append(
            DueReminder(
                kind=ReminderKind.CAMPAIGN,
                idempotency_key=key,
                clinic_id=clinic.id,
                patient_id=patient.id,
                appointment_id=enrollment.appointment_id,
                recipient=patient.phone or "",
                body=body,
                enrollment_id=enrollment.id,
                campaign=enrollment.campaign,
                step=enrollment.current_step,
            )
        )

    return due


# ---------------------------------------------------------------------------
# 3. resolve_due_reminders
# ---------------------------------------------------------------------------

async def resolve_due_reminders(
    db: AsyncSession,
    now: datetime,
) -> list[DueReminder]:
    """Appointment reminders followed by campaign steps, all due at ``now``."""
    appointment_reminders = await get_due_appointment_reminders(db, now)
    campaign_messages = await get_due_campaign_messages(db, now)

    logger.info(
        "resolve_due_reminders: %d appointment reminder(s), %d campaign message(s) due",
        len(appointment_reminders), len(campaign_messages),
    )
    return appointment_reminders + campaign_messages
