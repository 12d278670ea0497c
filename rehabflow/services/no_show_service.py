"""
No-show sweep.

Finds appointments still ``scheduled`` more than two hours after their start,
marks them ``no_show`` and enrolls opted-in patients in the recovery
campaign. Each appointment is its own transaction so one failure never
aborts the rest of the sweep.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rehabflow.models.appointment import Appointment
from rehabflow.models.campaign_enrollment import CampaignEnrollment
from rehabflow.models.clinic import Clinic
from rehabflow.models.enums import (
    AppointmentStatus,
    CampaignType,
    EnrollmentStatus,
    MessageDirection,
    MessageStatus,
    MessageType,
)
from rehabflow.models.message_log import MessageLog
from rehabflow.models.patient import Patient

logger = logging.getLogger(__name__)

NO_SHOW_GRACE_PERIOD = timedelta(hours=2)


@dataclass
class SweepResult:
    detected: int = 0
    marked: int = 0
    enrolled: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


def no_show_cutoff(now: datetime) -> datetime:
    return now - NO_SHOW_GRACE_PERIOD


async def count_pending_no_shows(db: AsyncSession, now: datetime) -> int:
    """Appointments the next sweep would mark, without touching them."""
    result = await db.execute(
        select(func.count(Appointment.id)).where(
            Appointment.status == AppointmentStatus.SCHEDULED,
            Appointment.scheduled_at < no_show_cutoff(now),
        )
    )
    return result.scalar_one()


async def detect_and_mark_no_shows(db: AsyncSession, now: datetime) -> SweepResult:
    """
    Mark overdue scheduled appointments as no-shows and start recovery.

    The status change is a conditional update on ``status = 'scheduled'``;
    when another run got there first the row is skipped silently. A failed
    initial query returns an empty result instead of raising.
    """
    sweep = SweepResult()

    try:
        result = await db.execute(
            select(Appointment, Patient, Clinic)
            .join(Patient, Appointment.patient_id == Patient.id)
            .join(Clinic, Appointment.clinic_id == Clinic.id)
            .where(
                Appointment.status == AppointmentStatus.SCHEDULED,
                Appointment.scheduled_at < no_show_cutoff(now),
            )
            .order_by(Appointment.scheduled_at)
        )
        rows = result.all()
    except SQLAlchemyError as e:
        logger.error("detect_and_mark_no_shows: candidate query failed: %s", e)
        await db.rollback()
        return sweep

    # Plain values: a rollback below expires every ORM instance in the session
    candidates = [
        {
            "appointment_id": appointment.id,
            "clinic_id": appointment.clinic_id,
            "scheduled_at": appointment.scheduled_at,
            "patient_id": patient.id,
            "patient_name": patient.full_name,
            "patient_phone": patient.phone or "",
            "opted_in": bool(patient.opt_in_sms),
            "clinic_name": clinic.name,
        }
        for appointment, patient, clinic in rows
    ]
    sweep.detected = len(candidates)

    for candidate in candidates:
        appointment_id = candidate["appointment_id"]
        try:
            marked = await db.execute(
                update(Appointment)
                .where(
                    Appointment.id == appointment_id,
                    Appointment.status == AppointmentStatus.SCHEDULED,
                )
                .values(status=AppointmentStatus.NO_SHOW)
            )
            if marked.rowcount == 0:
                # Another run already handled it
                continue

            if candidate["opted_in"]:
                db.add(
                    CampaignEnrollment(
                        clinic_id=candidate["clinic_id"],
                        patient_id=candidate["patient_id"],
                        appointment_id=appointment_id,
                        campaign=CampaignType.NO_SHOW_RECOVERY,
                        status=EnrollmentStatus.ACTIVE,
                        current_step=1,
                        next_message_at=now,
                        metadata_={
                            "original_scheduled_at": candidate["scheduled_at"].isoformat(),
                            "clinic_name": candidate["clinic_name"],
                            "patient_name": candidate["patient_name"],
                            "no_show_detected_at": now.isoformat(),
                        },
                    )
                )
                db.add(
                    MessageLog(
                        clinic_id=candidate["clinic_id"],
                        patient_id=candidate["patient_id"],
                        appointment_id=appointment_id,
                        campaign=CampaignType.NO_SHOW_RECOVERY,
                        direction=MessageDirection.OUTBOUND,
                        message_type=MessageType.SYSTEM,
                        content=(
                            "No-show detected for appointment scheduled at "
                            f"{candidate['scheduled_at'].isoformat()}"
                        ),
                        recipient=candidate["patient_phone"],
                        status=MessageStatus.LOGGED,
                        metadata_={
                            "no_show_detected": True,
                            "detection_timestamp": now.isoformat(),
                            "original_scheduled_at": candidate["scheduled_at"].isoformat(),
                        },
                    )
                )

            await db.commit()
        except Exception as e:
            logger.exception(
                "detect_and_mark_no_shows: failed for appointment %s", appointment_id,
            )
            await db.rollback()
            sweep.errors.append({"appointment_id": str(appointment_id), "error": str(e)})
            continue

        sweep.marked += 1
        if candidate["opted_in"]:
            sweep.enrolled += 1
            logger.info(
                "detect_and_mark_no_shows: appointment %s marked no_show, patient %s enrolled",
                appointment_id, candidate["patient_id"],
            )
        else:
            logger.info(
                "detect_and_mark_no_shows: appointment %s marked no_show (patient not opted in)",
                appointment_id,
            )

    logger.info(
        "detect_and_mark_no_shows: %d detected, %d marked, %d enrolled, %d error(s)",
        sweep.detected, sweep.marked, sweep.enrolled, len(sweep.errors),
    )
    return sweep
