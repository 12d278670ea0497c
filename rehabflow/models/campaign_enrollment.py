"""
CampaignEnrollment model: a patient's position in a drip campaign.

Enrollments are tied to the appointment that triggered them through a real
foreign key, and at most one enrollment exists per (campaign, appointment).
"""

from sqlalchemy import (
    Column, Index, UniqueConstraint, CheckConstraint, Integer, DateTime, ForeignKey, text,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rehabflow.database import Base
from rehabflow.models.enums import CampaignType, EnrollmentStatus, enum_column


class CampaignEnrollment(Base):
    __tablename__ = "campaign_enrollments"
    __table_args__ = (
        UniqueConstraint("campaign", "appointment_id", name="uq_campaign_enrollments_campaign_appointment"),
        Index("ix_campaign_enrollments_due", "status", "next_message_at"),
        CheckConstraint("current_step >= 1", name="ck_campaign_enrollments_step_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False)
    campaign = Column(enum_column(CampaignType, "campaign_type"), nullable=False)
    status = Column(
        enum_column(EnrollmentStatus, "enrollment_status"),
        nullable=False,
        default=EnrollmentStatus.ACTIVE,
    )

    # Step whose message is due next; one past the last step once completed
    current_step = Column(Integer, nullable=False, default=1)
    next_message_at = Column(DateTime(timezone=True), nullable=False)
    enrolled_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Snapshot of names and timestamps at enrollment time
    metadata_ = Column("metadata", JSONB, nullable=False, default=dict, server_default=text("'{}'::jsonb"))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    patient = relationship("Patient", lazy="selectin")
    appointment = relationship("Appointment", lazy="select")
    messages = relationship("MessageLog", back_populates="enrollment", lazy="select")

    def __repr__(self):
        return (
            f"<CampaignEnrollment(id={self.id}, campaign='{self.campaign}', "
            f"step={self.current_step}, status='{self.status}')>"
        )
