"""
MessageLog model: append-only record of every SMS sent, attempted or received.

The idempotency_key column is the sole duplicate-send guard for the message
engine. A reminder or campaign step is considered delivered once a row with
its key and status 'sent' exists.
"""

from sqlalchemy import Column, Index, String, Text, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rehabflow.database import Base
from rehabflow.models.enums import (
    CampaignType,
    MessageDirection,
    MessageStatus,
    MessageType,
    enum_column,
)


class MessageLog(Base):
    __tablename__ = "message_logs"
    __table_args__ = (
        Index("ix_message_logs_clinic_sent_at", "clinic_id", "sent_at"),
        Index("ix_message_logs_twilio_sid", "twilio_sid"),
        # Database backstop for the application-level idempotency check
        Index(
            "uq_message_logs_idempotency_sent",
            "idempotency_key",
            unique=True,
            postgresql_where=text("status = 'sent'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id", ondelete="SET NULL"), nullable=True)
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True)
    enrollment_id = Column(UUID(as_uuid=True), ForeignKey("campaign_enrollments.id", ondelete="SET NULL"), nullable=True)
    campaign = Column(enum_column(CampaignType, "message_log_campaign"), nullable=True)

    direction = Column(
        enum_column(MessageDirection, "message_direction"),
        nullable=False,
        default=MessageDirection.OUTBOUND,
    )
    message_type = Column(enum_column(MessageType, "message_type"), nullable=False)
    content = Column(Text, nullable=False)
    # Destination for outbound, clinic number for inbound
    recipient = Column(String(20), nullable=False)
    status = Column(enum_column(MessageStatus, "message_status"), nullable=False)

    twilio_sid = Column(String(64), nullable=True)
    delivery_status = Column(String(20), nullable=True)
    idempotency_key = Column(String(255), nullable=True)

    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSONB, nullable=False, default=dict, server_default=text("'{}'::jsonb"))
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    patient = relationship("Patient", lazy="select")
    appointment = relationship("Appointment", lazy="select")
    enrollment = relationship("CampaignEnrollment", back_populates="messages", lazy="select")

    def __repr__(self):
        return (
            f"<MessageLog(id={self.id}, type='{self.message_type}', "
            f"status='{self.status}', key='{self.idempotency_key}')>"
        )
