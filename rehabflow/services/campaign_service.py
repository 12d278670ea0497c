"""
Campaign sequences and the enrollment state machine.

A campaign is a fixed list of steps; each step has a message template and the
delay before the next step. An enrollment advances only after its current
step was sent successfully, by exactly one step, and completes after the last.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from rehabflow.models.campaign_enrollment import CampaignEnrollment
from rehabflow.models.enums import CampaignType, EnrollmentStatus

logger = logging.getLogger(__name__)

# Completed enrollments keep a far-future next_message_at instead of NULL
COMPLETED_SENTINEL_DELAY = timedelta(days=365)


@dataclass(frozen=True)
class CampaignStep:
    number: int
    template: str
    # None on the last step
    delay_after: timedelta | None


@dataclass(frozen=True)
class EnrollmentState:
    status: EnrollmentStatus
    current_step: int
    next_message_at: datetime
    completed_at: datetime | None = None


NO_SHOW_RECOVERY_STEPS = (
    CampaignStep(
        1,
        "Hi {first_name}, we missed you at your appointment today at {clinic_name}. "
        "We're concerned about your recovery progress. Please call us to reschedule "
        "or reply YES to confirm you're okay. Reply STOP to opt out.",
        timedelta(minutes=60),
    ),
    CampaignStep(
        2,
        "Hi {first_name}, it's been 24 hours since your missed appointment. "
        "Your recovery is important to us. Please call {clinic_name} to reschedule "
        "or reply YES if you need help. Reply STOP to opt out.",
        timedelta(hours=24),
    ),
    CampaignStep(
        3,
        "Hi {first_name}, we're reaching out because we care about your recovery. "
        "Missing appointments can delay your progress. Please call us at "
        "{clinic_name} to discuss your treatment plan. Reply STOP to opt out.",
        timedelta(hours=24),
    ),
    CampaignStep(
        4,
        "Hi {first_name}, we want to ensure you're on track with your recovery goals. "
        "Please call {clinic_name} to discuss your progress and reschedule if needed. "
        "We're here to help! Reply STOP to opt out.",
        None,
    ),
)

CAMPAIGN_SEQUENCES: dict[CampaignType, tuple[CampaignStep, ...]] = {
    CampaignType.NO_SHOW_RECOVERY: NO_SHOW_RECOVERY_STEPS,
}


def get_campaign_step(campaign: CampaignType, step: int) -> CampaignStep | None:
    for definition in CAMPAIGN_SEQUENCES.get(campaign, ()):
        if definition.number == step:
            return definition
    return None


def render_campaign_message(
    campaign: CampaignType,
    step: int,
    first_name: str,
    clinic_name: str,
) -> str | None:
    definition = get_campaign_step(campaign, step)
    if definition is None:
        return None
    return definition.template.format(first_name=first_name, clinic_name=clinic_name)


def next_enrollment_state(
    step: int,
    now: datetime,
    campaign: CampaignType = CampaignType.NO_SHOW_RECOVERY,
) -> EnrollmentState:
    """State an enrollment moves to once ``step`` has been sent at ``now``.

    Raises ValueError for a step the campaign does not define.
    """
    definition = get_campaign_step(campaign, step)
    if definition is None:
        raise ValueError(f"{campaign.value} has no step {step}")

    if definition.delay_after is None:
        return EnrollmentState(
            status=EnrollmentStatus.COMPLETED,
            current_step=step + 1,
            next_message_at=now + COMPLETED_SENTINEL_DELAY,
            completed_at=now,
        )
    return EnrollmentState(
        status=EnrollmentStatus.ACTIVE,
        current_step=step + 1,
        next_message_at=now + definition.delay_after,
    )


async def advance_enrollment(
    db: AsyncSession,
    *,
    campaign: CampaignType,
    patient_id: UUID,
    appointment_id: UUID,
    sent_step: int,
    now: datetime,
) -> bool:
    """Move an active enrollment past ``sent_step``.

    The update only matches while the row is still active at ``sent_step``,
    so a concurrent or repeated call cannot skip or regress a step. Returns
    whether a row moved. The caller commits.
    """
    state = next_enrollment_state(sent_step, now, campaign)
    result = await db.execute(
        update(CampaignEnrollment)
        .where(
            CampaignEnrollment.campaign == campaign,
            CampaignEnrollment.patient_id == patient_id,
            CampaignEnrollment.appointment_id == appointment_id,
            CampaignEnrollment.current_step == sent_step,
            CampaignEnrollment.status == EnrollmentStatus.ACTIVE,
        )
        .values(
            status=state.status,
            current_step=state.current_step,
            next_message_at=state.next_message_at,
            completed_at=state.completed_at,
        )
    )

    if result.rowcount == 0:
        logger.warning(
            "advance_enrollment: no active %s enrollment at step %d for appointment %s",
            campaign.value, sent_step, appointment_id,
        )
        return False

    if state.status is EnrollmentStatus.COMPLETED:
        logger.info(
            "advance_enrollment: %s completed for appointment %s",
            campaign.value, appointment_id,
        )
    else:
        logger.info(
            "advance_enrollment: %s step %d -> %d for appointment %s (next at %s)",
            campaign.value, sent_step, state.current_step, appointment_id,
            state.next_message_at.isoformat(),
        )
    return True
