"""
Cron trigger endpoints for the message engine.

- GET  /api/cron/dispatch           run dispatch (Authorization: Bearer <CRON_SECRET>)
- GET  /api/cron/dispatch/external  same, with ?token=<CRON_SECRET> for cron
                                    services that cannot set headers
- POST /api/cron/dispatch           {"dry_run": true} previews without writing
- HEAD /api/cron/dispatch           health check, status in headers only
- GET  /api/cron/ping               database ping

Authorization is checked before the database session is opened, so an
unauthorized call never touches the database.
"""

import hmac
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rehabflow.config import get_settings
from rehabflow.database import get_db
from rehabflow.models.clinic import Clinic
from rehabflow.schemas.dispatch import (
    DispatchRequest,
    DispatchResponse,
    DispatchResultResponse,
    DryRunResponse,
    DueReminderPreview,
    EngineStatusResponse,
    NoShowResultResponse,
    PingResponse,
)
from rehabflow.services.dispatch_service import (
    EngineUnavailableError,
    ensure_engine_ready,
    get_engine_status,
    preview_dispatch,
    run_dispatch,
)
from rehabflow.utils.log_sanitizer import mask_phone

logger = logging.getLogger(__name__)
router = APIRouter()


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

def _secret_matches(candidate: str | None) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode(), get_settings().CRON_SECRET.encode())


def require_cron_bearer(request: Request) -> None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not _secret_matches(token):
        logger.warning(
            "cron: unauthorized %s %s from %s",
            request.method, request.url.path,
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_cron_token(
    request: Request,
    token: str | None = Query(None),
) -> None:
    if not _secret_matches(token):
        logger.warning(
            "cron: unauthorized external trigger from %s",
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "Unauthorized",
                "message": "Invalid or missing token",
                "hint": "Add ?token=YOUR_CRON_SECRET to the URL",
            },
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _engine_failure(exc: EngineUnavailableError, started: float) -> JSONResponse:
    logger.error("cron: message engine unavailable: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Message engine is not healthy",
            "details": str(exc),
            "engine_status": EngineStatusResponse.model_validate(exc.status).model_dump(),
            "timestamp": _now_iso(),
            "execution_time_ms": _elapsed_ms(started),
        },
    )


async def _dispatch(db: AsyncSession, started: float) -> DispatchResponse | JSONResponse:
    try:
        engine_status = await ensure_engine_ready(db)
    except EngineUnavailableError as e:
        return _engine_failure(e, started)

    try:
        run = await run_dispatch(db)
    except (SQLAlchemyError, OSError) as e:
        logger.exception("cron: dispatch aborted, database unavailable")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Dispatch failed: database unavailable",
                "details": str(e),
                "timestamp": _now_iso(),
                "execution_time_ms": _elapsed_ms(started),
            },
        )

    processed = run.dispatch_result.processed
    failed = len(run.dispatch_result.errors)

    if run.status == "skipped":
        message = "Another dispatch run is in progress; nothing was sent"
    else:
        message = (
            f"Processed {processed} messages, marked {run.no_show_result.marked} no-shows, "
            f"{failed} errors"
        )
    logger.info("cron: dispatch %s in %dms: %s", run.status, _elapsed_ms(started), message)

    return DispatchResponse(
        success=run.success,
        status=run.status,
        timestamp=_now_iso(),
        execution_time_ms=_elapsed_ms(started),
        engine_status=EngineStatusResponse.model_validate(engine_status),
        no_show_result=NoShowResultResponse.model_validate(run.no_show_result),
        dispatch_result=DispatchResultResponse.model_validate(run.dispatch_result),
        message=message,
    )


async def _dry_run(db: AsyncSession, started: float) -> DryRunResponse | JSONResponse:
    try:
        engine_status = await ensure_engine_ready(db)
    except EngineUnavailableError as e:
        return _engine_failure(e, started)

    preview = await preview_dispatch(db)
    reminders = [
        DueReminderPreview(
            kind=r.kind.value,
            idempotency_key=r.idempotency_key,
            clinic_id=r.clinic_id,
            patient_id=r.patient_id,
            appointment_id=r.appointment_id,
            recipient=mask_phone(r.recipient),
            body=r.body,
            band=r.band.value if r.band else None,
            campaign=r.campaign.value if r.campaign else None,
            step=r.step,
        )
        for r in preview.reminders
    ]
    return DryRunResponse(
        timestamp=_now_iso(),
        execution_time_ms=_elapsed_ms(started),
        engine_status=EngineStatusResponse.model_validate(engine_status),
        would_mark_no_shows=preview.would_mark_no_shows,
        would_send=len(reminders),
        reminders=reminders,
        message=(
            f"Dry run: would mark {preview.would_mark_no_shows} no-shows "
            f"and send {len(reminders)} messages"
        ),
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get(
    "/dispatch",
    response_model=DispatchResponse,
    dependencies=[Depends(require_cron_bearer)],
)
async def dispatch(db: AsyncSession = Depends(get_db)):
    """Run the full dispatch: no-show sweep, reminders, recovery steps."""
    return await _dispatch(db, time.perf_counter())


@router.get(
    "/dispatch/external",
    response_model=DispatchResponse,
    dependencies=[Depends(require_cron_token)],
)
async def dispatch_external(db: AsyncSession = Depends(get_db)):
    """Query-token variant of GET /dispatch for external cron services."""
    return await _dispatch(db, time.perf_counter())


@router.post(
    "/dispatch",
    response_model=DispatchResponse | DryRunResponse,
    dependencies=[Depends(require_cron_bearer)],
)
async def dispatch_manual(
    body: DispatchRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Manual trigger; ``{"dry_run": true}`` reports what would happen."""
    started = time.perf_counter()
    if body is not None and body.dry_run:
        return await _dry_run(db, started)
    return await _dispatch(db, started)


@router.head("/dispatch")
async def dispatch_health(db: AsyncSession = Depends(get_db)):
    """Health check for uptime monitors. No body, no auth."""
    engine_status = await get_engine_status(db)
    return Response(
        status_code=status.HTTP_200_OK if engine_status.healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        headers={
            "X-Engine-Status": engine_status.status,
            "X-Pending-Messages": str(engine_status.total_pending),
            "X-Last-Check": engine_status.last_check,
        },
    )


@router.get("/ping", response_model=PingResponse)
async def ping(db: AsyncSession = Depends(get_db)):
    """Keep-alive ping against the database."""
    try:
        await db.execute(select(func.count(Clinic.id)))
    except (SQLAlchemyError, OSError) as e:
        logger.error("cron: ping failed: %s", e)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=PingResponse(
                status="error",
                database_connected=False,
                timestamp=_now_iso(),
                error=str(e),
            ).model_dump(),
        )
    return PingResponse(status="ok", database_connected=True, timestamp=_now_iso())
