from sqlalchemy import Column, String, DateTime, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rehabflow.database import Base


class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    name = Column(String(255), nullable=False)
    # The Twilio number patients text; inbound webhooks resolve the tenant by it
    phone = Column(String(20), nullable=True, unique=True)
    timezone = Column(String(50), nullable=False, default="America/New_York")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    patients = relationship("Patient", back_populates="clinic", lazy="select", cascade="all, delete-orphan", passive_deletes=True)
    appointments = relationship("Appointment", back_populates="clinic", lazy="select", cascade="all, delete-orphan", passive_deletes=True)

    def __repr__(self):
        return f"<Clinic(id={self.id}, name='{self.name}')>"
