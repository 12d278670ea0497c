from sqlalchemy import Column, CheckConstraint, Integer, Text, Date, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from rehabflow.database import Base


class PatientProgress(Base):
    __tablename__ = "patient_progress"
    __table_args__ = (
        CheckConstraint("pain_level BETWEEN 0 AND 10", name="ck_patient_progress_pain_level"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    assessment_date = Column(Date, nullable=False)
    pain_level = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<PatientProgress(id={self.id}, pain_level={self.pain_level})>"
