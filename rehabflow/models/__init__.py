from rehabflow.models.clinic import Clinic
from rehabflow.models.patient import Patient
from rehabflow.models.appointment import Appointment
from rehabflow.models.campaign_enrollment import CampaignEnrollment
from rehabflow.models.message_log import MessageLog
from rehabflow.models.exercise_completion import ExerciseCompletion
from rehabflow.models.patient_progress import PatientProgress
from rehabflow.models.enums import (
    AppointmentStatus,
    CampaignType,
    EnrollmentStatus,
    MessageDirection,
    MessageStatus,
    MessageType,
)

__all__ = [
    "Clinic",
    "Patient",
    "Appointment",
    "CampaignEnrollment",
    "MessageLog",
    "ExerciseCompletion",
    "PatientProgress",
    "AppointmentStatus",
    "CampaignType",
    "EnrollmentStatus",
    "MessageDirection",
    "MessageStatus",
    "MessageType",
]
