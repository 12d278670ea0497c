"""Initial message engine schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 09:00:00.000000

Creates clinics, patients, appointments, campaign_enrollments, message_logs,
exercise_completions and patient_progress. Status and tag columns are
VARCHAR with CHECK constraints (non-native enums) so new values only need a
constraint change, not an ALTER TYPE.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True, length=32)


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=nullable,
    )


def _fk(name: str, target: str, ondelete: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
    )


def upgrade() -> None:
    # gen_random_uuid() is built in from PostgreSQL 13; older servers need pgcrypto
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # -----------------------------------------------------------------------
    # CLINICS / PATIENTS / APPOINTMENTS
    # -----------------------------------------------------------------------
    op.create_table(
        "clinics",
        _uuid_pk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True, unique=True),
        sa.Column("timezone", sa.String(50), nullable=False, server_default="America/New_York"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "patients",
        _uuid_pk(),
        _fk("clinic_id", "clinics.id", "CASCADE"),
        sa.Column("first_name", sa.String(255), nullable=False),
        sa.Column("last_name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("opt_in_sms", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("clinic_id", "phone", name="uq_patients_clinic_phone"),
    )
    op.create_index("ix_patients_clinic_name", "patients", ["clinic_id", "last_name", "first_name"])

    op.create_table(
        "appointments",
        _uuid_pk(),
        _fk("clinic_id", "clinics.id", "CASCADE"),
        sa.Column(
            "patient_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("patients.id"),
            nullable=False,
        ),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("appointment_type", sa.String(100), nullable=True),
        sa.Column(
            "status",
            _enum("appointment_status", "scheduled", "confirmed", "completed", "no_show", "cancelled"),
            nullable=False,
            server_default="scheduled",
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_appointments_status_scheduled_at", "appointments", ["status", "scheduled_at"])
    op.create_index("ix_appointments_patient", "appointments", ["clinic_id", "patient_id"])

    # -----------------------------------------------------------------------
    # CAMPAIGN ENROLLMENTS
    # -----------------------------------------------------------------------
    op.create_table(
        "campaign_enrollments",
        _uuid_pk(),
        _fk("clinic_id", "clinics.id", "CASCADE"),
        _fk("patient_id", "patients.id", "CASCADE"),
        _fk("appointment_id", "appointments.id", "CASCADE"),
        sa.Column("campaign", _enum("campaign_type", "no_show_recovery"), nullable=False),
        sa.Column(
            "status",
            _enum("enrollment_status", "active", "completed"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("next_message_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("enrolled_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "campaign", "appointment_id", name="uq_campaign_enrollments_campaign_appointment",
        ),
        sa.CheckConstraint("current_step >= 1", name="ck_campaign_enrollments_step_positive"),
    )
    op.create_index(
        "ix_campaign_enrollments_due", "campaign_enrollments", ["status", "next_message_at"],
    )

    # -----------------------------------------------------------------------
    # MESSAGE LOGS (append-only; the idempotency key backs duplicate-send checks)
    # -----------------------------------------------------------------------
    op.create_table(
        "message_logs",
        _uuid_pk(),
        _fk("clinic_id", "clinics.id", "CASCADE"),
        _fk("patient_id", "patients.id", "SET NULL", nullable=True),
        _fk("appointment_id", "appointments.id", "SET NULL", nullable=True),
        _fk("enrollment_id", "campaign_enrollments.id", "SET NULL", nullable=True),
        sa.Column("campaign", _enum("message_log_campaign", "no_show_recovery"), nullable=True),
        sa.Column(
            "direction",
            _enum("message_direction", "outbound", "inbound"),
            nullable=False,
            server_default="outbound",
        ),
        sa.Column(
            "message_type",
            _enum("message_type", "reminder", "recovery", "compliance", "reply", "system"),
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("recipient", sa.String(20), nullable=False),
        sa.Column(
            "status",
            _enum("message_status", "sent", "failed", "received", "logged"),
            nullable=False,
        ),
        sa.Column("twilio_sid", sa.String(64), nullable=True),
        sa.Column("delivery_status", sa.String(20), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_message_logs_clinic_sent_at", "message_logs", ["clinic_id", "sent_at"])
    op.create_index("ix_message_logs_twilio_sid", "message_logs", ["twilio_sid"])
    op.create_index(
        "uq_message_logs_idempotency_sent",
        "message_logs",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text("status = 'sent'"),
    )

    # -----------------------------------------------------------------------
    # PATIENT REPLIES
    # -----------------------------------------------------------------------
    op.create_table(
        "exercise_completions",
        _uuid_pk(),
        _fk("clinic_id", "clinics.id", "CASCADE"),
        _fk("patient_id", "patients.id", "CASCADE"),
        _timestamp("completed_at"),
        sa.Column("compliance_score", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("notes", sa.Text(), nullable=True),
    )

    op.create_table(
        "patient_progress",
        _uuid_pk(),
        _fk("clinic_id", "clinics.id", "CASCADE"),
        _fk("patient_id", "patients.id", "CASCADE"),
        sa.Column("assessment_date", sa.Date(), nullable=False),
        sa.Column("pain_level", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint("pain_level BETWEEN 0 AND 10", name="ck_patient_progress_pain_level"),
    )


def downgrade() -> None:
    op.drop_table("patient_progress")
    op.drop_table("exercise_completions")
    op.drop_index("uq_message_logs_idempotency_sent", table_name="message_logs")
    op.drop_index("ix_message_logs_twilio_sid", table_name="message_logs")
    op.drop_index("ix_message_logs_clinic_sent_at", table_name="message_logs")
    op.drop_table("message_logs")
    op.drop_index("ix_campaign_enrollments_due", table_name="campaign_enrollments")
    op.drop_table("campaign_enrollments")
    op.drop_index("ix_appointments_patient", table_name="appointments")
    op.drop_index("ix_appointments_status_scheduled_at", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("ix_patients_clinic_name", table_name="patients")
    op.drop_table("patients")
    op.drop_table("clinics")
