"""Status and tag enums shared by the models and the message engine."""

import enum

from sqlalchemy import Enum


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"


class CampaignType(str, enum.Enum):
    NO_SHOW_RECOVERY = "no_show_recovery"


class EnrollmentStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class MessageDirection(str, enum.Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class MessageType(str, enum.Enum):
    REMINDER = "reminder"
    RECOVERY = "recovery"
    COMPLIANCE = "compliance"
    REPLY = "reply"
    SYSTEM = "system"


class MessageStatus(str, enum.Enum):
    # Provider delivery progress is kept in MessageLog.delivery_status; status
    # stays "sent" so the idempotency key keeps matching.
    SENT = "sent"
    FAILED = "failed"
    RECEIVED = "received"
    LOGGED = "logged"


def enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    """VARCHAR + CHECK storage of an enum's values (not its member names)."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )
