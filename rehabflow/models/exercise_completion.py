from sqlalchemy import Column, Float, Text, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from rehabflow.database import Base


class ExerciseCompletion(Base):
    __tablename__ = "exercise_completions"

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    clinic_id = Column(UUID(as_uuid=True), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    completed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    compliance_score = Column(Float, nullable=False, default=1.0)
    notes = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ExerciseCompletion(id={self.id}, patient_id={self.patient_id})>"
