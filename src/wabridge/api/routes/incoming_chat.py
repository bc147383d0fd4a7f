"""Chat transport webhook - Twilio WhatsApp.

Security:
- Phone numbers and message text exist only in memory during processing
- Logs carry hashes and lengths only

Twilio wants a fast TwiML answer; the pending-case completion retries run as a
background task after the response is sent.
"""

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request, Response
from starlette.concurrency import run_in_threadpool

from wabridge.api.webhook_auth import get_bridge, webhook_secret_ok
from wabridge.errors import EmailTransportError, InvalidPayloadError, ThreadStoreError
from wabridge.observability.correlation import get_correlation_id
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context
from wabridge.whatsapp.twilio_adapter import normalize

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

EMPTY_TWIML = "<Response></Response>"


def _twiml(status_code: int = 200) -> Response:
    return Response(status_code=status_code, content=EMPTY_TWIML, media_type="application/xml")


async def _read_payload(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        payload = await request.json()
        if not isinstance(payload, dict):
            raise InvalidPayloadError("json body is not an object")
        return payload
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("/incoming-chat")
async def incoming_chat(request: Request, background_tasks: BackgroundTasks) -> Response:
    """Receive one WhatsApp message.

    Returns:
        200 TwiML if relayed or ignored (invalid address).
        400 if the payload is malformed.
        401 if the shared secret is wrong.
        502 if the email transport failed.
        503 if the thread store is failing systemically.
    """
    correlation_id = get_correlation_id()
    bridge = get_bridge(request)

    if not webhook_secret_ok(request, bridge):
        return Response(status_code=401, content="unauthorized")

    try:
        event = normalize(await _read_payload(request))
    except (InvalidPayloadError, ValueError) as e:
        logger.warning(
            "invalid chat payload",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(e))},
        )
        return Response(status_code=400, content="invalid payload")

    try:
        result = await run_in_threadpool(bridge.inbound.handle, event)
    except EmailTransportError:
        logger.warning(
            "inbound relay failed: email transport",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return _twiml(502)
    except ThreadStoreError:
        logger.error(
            "inbound relay failed: thread store unavailable",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return _twiml(503)
    except Exception:
        logger.exception(
            "inbound relay failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return _twiml(500)

    delays = bridge.settings.pending_completion_delays
    if result.needs_completion and result.chat_address and delays:
        background_tasks.add_task(
            bridge.resolver.complete_pending_case_later, result.chat_address, delays
        )

    return _twiml()
