"""
Twilio webhook endpoints.

- POST /api/twilio/status   delivery status callback (MessageSid, MessageStatus, ErrorCode)
- POST /api/twilio/inbound  inbound patient SMS; replies with TwiML

Both endpoints are public because Twilio cannot send a Bearer token. When
TWILIO_VALIDATE_WEBHOOKS is on, the X-Twilio-Signature header is checked
with the SDK's RequestValidator and forged requests get a 403. Otherwise
they always answer 200, even when processing fails, so Twilio never retries.
"""

import logging
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.request_validator import RequestValidator

from rehabflow.config import get_settings
from rehabflow.database import get_db
from rehabflow.services.inbound_service import InboundMessage, handle_inbound_message
from rehabflow.services.sms_service import handle_delivery_status

logger = logging.getLogger(__name__)
router = APIRouter()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _twiml(reply_message: str | None = None, status_code: int = status.HTTP_200_OK) -> PlainTextResponse:
    if reply_message:
        content = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f"<Response><Message>{escape(reply_message)}</Message></Response>"
        )
    else:
        content = EMPTY_TWIML
    return PlainTextResponse(content=content, media_type="application/xml", status_code=status_code)


def _signature_valid(request: Request, params: dict[str, str]) -> bool:
    """True when validation is off or the Twilio signature checks out."""
    settings = get_settings()
    if not settings.TWILIO_VALIDATE_WEBHOOKS:
        return True

    if not settings.TWILIO_AUTH_TOKEN:
        logger.error("twilio webhook: validation enabled but TWILIO_AUTH_TOKEN is not set")
        return False

    validator = RequestValidator(settings.TWILIO_AUTH_TOKEN)
    signature = request.headers.get("X-Twilio-Signature", "")
    if validator.validate(str(request.url), params, signature):
        return True

    logger.warning(
        "twilio webhook: invalid signature from %s",
        request.client.host if request.client else "unknown",
    )
    return False


# ---------------------------------------------------------------------------
# POST /api/twilio/status -- delivery status callback
# ---------------------------------------------------------------------------

@router.post("/status")
async def twilio_status_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    form_data = await request.form()
    params = {k: v for k, v in form_data.items() if isinstance(v, str)}

    if not _signature_valid(request, params):
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": "Invalid signature"})

    message_sid = params.get("MessageSid", "")
    message_status = params.get("MessageStatus", "")
    if not message_sid or not message_status:
        logger.warning("twilio_status_callback: missing MessageSid or MessageStatus")
        return {"received": True}

    try:
        await handle_delivery_status(db, message_sid, message_status, params.get("ErrorCode") or None)
        await db.commit()
    except Exception:
        logger.exception("twilio_status_callback: failed to record status for %s", message_sid)
        await db.rollback()

    return {"received": True}


# ---------------------------------------------------------------------------
# POST /api/twilio/inbound -- inbound patient SMS
# ---------------------------------------------------------------------------

@router.post("/inbound")
async def twilio_inbound_message(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Webhook for SMS sent to a clinic's Twilio number.

    Handles opt-out/opt-in keywords, appointment confirmation, exercise
    completion and pain-level reports, and logs everything else for manual
    review. The reply, if any, goes back as a TwiML <Message>.
    """
    try:
        form_data = await request.form()
        params = {k: v for k, v in form_data.items() if isinstance(v, str)}
    except Exception:
        logger.exception("twilio_inbound_message: unreadable form body")
        return _twiml()

    if not _signature_valid(request, params):
        return _twiml(status_code=status.HTTP_403_FORBIDDEN)

    from_number = params.get("From", "")
    to_number = params.get("To", "")
    if not from_number or not to_number:
        logger.warning("twilio_inbound_message: missing From or To in request")
        return _twiml()

    message = InboundMessage(
        message_sid=params.get("MessageSid", ""),
        account_sid=params.get("AccountSid"),
        from_number=from_number,
        to_number=to_number,
        body=params.get("Body", ""),
    )
    logger.info(
        "twilio_inbound_message: received SMS from=%s sid=%s",
        message.from_number, message.message_sid,
    )

    try:
        result = await handle_inbound_message(db, message)
    except Exception:
        logger.exception("twilio_inbound_message: error handling SMS %s", message.message_sid)
        await db.rollback()
        return _twiml()

    return _twiml(result.reply_message)
