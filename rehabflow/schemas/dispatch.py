from pydantic import BaseModel, Field
from uuid import UUID
from typing import Any


class DispatchRequest(BaseModel):
    """Body of POST /api/cron/dispatch."""
    dry_run: bool = False


class EngineStatusResponse(BaseModel):
    status: str = Field(..., description="healthy or error")
    database_connected: bool
    pending_appointment_reminders: int = 0
    pending_campaign_messages: int = 0
    total_pending: int = 0
    last_check: str
    error: str | None = None

    model_config = {"from_attributes": True}


class NoShowResultResponse(BaseModel):
    detected: int = 0
    marked: int = 0
    enrolled: int = 0
    errors: list[dict[str, Any]] = []

    model_config = {"from_attributes": True}


class DispatchResultResponse(BaseModel):
    success: bool = True
    processed: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = []

    model_config = {"from_attributes": True}


class DispatchResponse(BaseModel):
    success: bool
    status: str = Field(..., description="completed, or skipped when another run holds the lock")
    timestamp: str
    execution_time_ms: int
    engine_status: EngineStatusResponse
    no_show_result: NoShowResultResponse
    dispatch_result: DispatchResultResponse
    message: str


class DueReminderPreview(BaseModel):
    """A reminder a dry run would send. The recipient is masked."""
    kind: str
    idempotency_key: str
    clinic_id: UUID
    patient_id: UUID
    appointment_id: UUID
    recipient: str
    body: str
    band: str | None = None
    campaign: str | None = None
    step: int | None = None


class DryRunResponse(BaseModel):
    success: bool = True
    dry_run: bool = True
    timestamp: str
    execution_time_ms: int
    engine_status: EngineStatusResponse
    would_mark_no_shows: int
    would_send: int
    reminders: list[DueReminderPreview]
    message: str


class PingResponse(BaseModel):
    status: str
    database_connected: bool
    timestamp: str
    error: str | None = None
