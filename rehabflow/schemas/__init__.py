from rehabflow.schemas.dispatch import (
    DispatchRequest, DispatchResponse, DryRunResponse, DueReminderPreview,
    EngineStatusResponse, NoShowResultResponse, DispatchResultResponse, PingResponse,
)
