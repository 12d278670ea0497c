import contextvars
import logging
import uuid

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from rehabflow.config import get_settings
from rehabflow.database import dispose_engine, get_session_factory
from rehabflow.utils.log_sanitizer import PHISanitizationFilter

APP_VERSION = "1.0.0"

settings = get_settings()
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"
_log_handler: logging.Handler | None = None

# ---------------------------------------------------------------------------
# Request correlation
# ---------------------------------------------------------------------------
request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class _RequestIdFilter(logging.Filter):
    """Stamp each record with the id of the request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        return True


def configure_logging(level: str = "INFO") -> logging.Handler:
    """Install one stream handler on the root logger.

    The filters sit on the handler, not the logger, so records propagated
    from every module logger pass through them.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_RequestIdFilter())
    handler.addFilter(PHISanitizationFilter())

    global _log_handler
    root = logging.getLogger()
    if _log_handler is not None:
        root.removeHandler(_log_handler)
    _log_handler = handler
    root.addHandler(handler)
    root.setLevel(level)
    return handler


configure_logging(settings.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Message engine starting (env=%s, real_sms=%s)",
        settings.APP_ENV, settings.ENABLE_REAL_SMS,
    )
    yield
    await dispose_engine()
    logger.info("Message engine stopped")


# API docs are only served outside production
_docs_enabled = settings.APP_ENV != "production"

app = FastAPI(
    title="RehabFlow Message Engine",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _docs_enabled else None,
    redoc_url="/redoc" if _docs_enabled else None,
    openapi_url="/openapi.json" if _docs_enabled else None,
)


@app.exception_handler(Exception)
async def _unhandled_exception(request: Request, exc: Exception):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def _request_id(request: Request, call_next):
    """Reuse the caller's X-Request-ID or mint one, and echo it back."""
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from rehabflow.routes.cron import router as cron_router
from rehabflow.routes.twilio import router as twilio_router

app.include_router(cron_router, prefix="/api/cron", tags=["Cron"])
app.include_router(twilio_router, prefix="/api/twilio", tags=["Twilio Webhooks"])


@app.get("/api/health")
async def health_check():
    """Liveness plus database reachability; 503 takes the instance out of rotation."""
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning("health_check: database unreachable: %s", e)
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "version": APP_VERSION, "database": "unavailable"},
        )

    return {
        "status": "healthy",
        "version": APP_VERSION,
        "database": "connected",
        "real_sms": settings.ENABLE_REAL_SMS,
    }
