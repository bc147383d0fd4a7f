"""Shared-secret verification for inbound webhooks.

Twilio and SendGrid Inbound Parse cannot sign requests with our key, so both
webhook URLs carry the secret as a ``token`` query parameter; callers that can
set headers may send ``X-Webhook-Secret`` instead.
"""

from __future__ import annotations

import hmac

from fastapi import Request

from wabridge.bridge import Bridge
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

SECRET_HEADER = "X-Webhook-Secret"
SECRET_QUERY_PARAM = "token"


def get_bridge(request: Request) -> Bridge:
    return request.app.state.bridge


def webhook_secret_ok(request: Request, bridge: Bridge) -> bool:
    """Constant-time comparison against WEBHOOK_SECRET (fail-closed)."""
    settings = bridge.settings
    if settings.webhook_auth_disabled:
        return True
    expected = settings.webhook_secret
    if not expected:
        logger.error("WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)")
        return False

    provided = request.headers.get(SECRET_HEADER) or request.query_params.get(
        SECRET_QUERY_PARAM
    )
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(
            "webhook secret mismatch",
            extra={"extra_fields": safe_log_context(path=request.url.path)},
        )
        return False
    return True
