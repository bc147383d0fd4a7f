"""Helpdesk notification webhook - SendGrid Inbound Parse.

The helpdesk emails its replies to the requester's pseudo identity; the
pseudo identity domain's MX points at SendGrid, which posts each message here.
"""

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from wabridge.api.webhook_auth import get_bridge, webhook_secret_ok
from wabridge.errors import ChatTransportError, InvalidPayloadError, PolicyRejection
from wabridge.mail.inbound_parse import UploadedFile, parse_inbound_email
from wabridge.observability.correlation import get_correlation_id
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)


@router.post("/helpdesk-outbound")
async def helpdesk_outbound(request: Request) -> Response:
    """Receive one helpdesk notification email.

    Returns:
        200 if relayed, recorded as an anchor, or ignored.
        400 if the form is malformed.
        401 if the shared secret is wrong.
        403 if the sender is not allowlisted.
        502 if the chat transport failed.
    """
    correlation_id = get_correlation_id()
    bridge = get_bridge(request)

    if not webhook_secret_ok(request, bridge):
        return Response(status_code=401, content="unauthorized")

    try:
        form = await request.form()
        fields: dict[str, str] = {}
        files: dict[str, UploadedFile] = {}
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                files[key] = (
                    value.filename or key,
                    value.content_type or "application/octet-stream",
                    await value.read(),
                )
            else:
                fields.setdefault(key, value)
        email = parse_inbound_email(fields, files)
    except (InvalidPayloadError, ValueError) as e:
        logger.warning(
            "invalid notification payload",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(e))},
        )
        return Response(status_code=400, content="invalid payload")

    try:
        result = await run_in_threadpool(bridge.outbound.handle, email)
    except PolicyRejection as e:
        return Response(status_code=e.status_code, content=e.reason)
    except ChatTransportError:
        logger.warning(
            "outbound relay failed: chat transport",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=502, content="chat transport failed")
    except Exception:
        logger.exception(
            "outbound relay failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="processing failed")

    return JSONResponse({"status": result.status, "reason": result.reason})
