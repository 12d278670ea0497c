from sqlalchemy import Column, Index, String, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rehabflow.database import Base
from rehabflow.models.enums import AppointmentStatus, enum_column


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # Serves both the reminder window scan and the no-show sweep
        Index("ix_appointments_status_scheduled_at", "status", "scheduled_at"),
        Index("ix_appointments_patient", "clinic_id", "patient_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id"), nullable=False)
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    appointment_type = Column(String(100), nullable=True)
    status = Column(
        enum_column(AppointmentStatus, "appointment_status"),
        default=AppointmentStatus.SCHEDULED,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    clinic = relationship("Clinic", back_populates="appointments", lazy="select")
    patient = relationship("Patient", back_populates="appointments", lazy="selectin")

    def __repr__(self):
        return f"<Appointment(id={self.id}, scheduled_at={self.scheduled_at}, status='{self.status}')>"
