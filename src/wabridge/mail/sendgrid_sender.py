"""Outgoing email via the SendGrid v3 ``mail/send`` API.

Security: NEVER log addresses, subjects or bodies. Only hashes and sizes.
"""

from __future__ import annotations

import base64
from typing import Any

import requests

from wabridge.domain.models import OutgoingEmail
from wabridge.errors import EmailTransportError
from wabridge.infra.hashing import hash_identifier
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"

# SendGrid refuses to let callers set these; they come from the payload fields
_RESERVED_HEADERS = {"from", "to", "subject", "content-type", "cc", "bcc", "reply-to"}


def build_payload(email: OutgoingEmail) -> dict[str, Any]:
    """Translate an OutgoingEmail into a SendGrid v3 request body."""
    payload: dict[str, Any] = {
        "personalizations": [{"to": [{"email": email.to}]}],
        "from": {"email": email.from_address, "name": email.from_name},
        "subject": email.subject,
        "content": [{"type": "text/plain", "value": email.text}],
    }
    headers = {k: v for k, v in email.headers.items() if k.lower() not in _RESERVED_HEADERS}
    if headers:
        payload["headers"] = headers
    if email.attachments:
        payload["attachments"] = [
            {
                "content": base64.b64encode(a.content).decode("ascii"),
                "filename": a.filename,
                "type": a.content_type,
                "disposition": "attachment",
            }
            for a in email.attachments
        ]
    return payload


class SendGridSender:
    def __init__(
        self,
        *,
        api_key: str,
        timeout: float = 10,
        session: requests.Session | None = None,
        url: str = SENDGRID_SEND_URL,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._session = session or requests.Session()
        self._url = url

    def send(self, email: OutgoingEmail) -> str:
        """Send one email and return the provider's message id.

        Raises:
            EmailTransportError: On missing config, network error or non-2xx.
        """
        if not self._api_key:
            raise EmailTransportError("Missing SendGrid config: SENDGRID_API_KEY required")

        log_ctx = safe_log_context(
            to_hash=hash_identifier(email.to),
            from_hash=hash_identifier(email.from_address),
            text_len=len(email.text),
            attachments=len(email.attachments),
        )
        try:
            resp = self._session.post(
                self._url,
                json=build_payload(email),
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error(
                "email send failed",
                extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
            )
            raise EmailTransportError(f"sendgrid request failed: {type(e).__name__}") from e

        if not 200 <= resp.status_code < 300:
            logger.error(
                "email send rejected",
                extra={"extra_fields": {**log_ctx, "status": str(resp.status_code)}},
            )
            raise EmailTransportError(f"sendgrid returned HTTP {resp.status_code}")

        message_id = resp.headers.get("X-Message-Id", "")
        logger.info("email sent", extra={"extra_fields": {**log_ctx, "message_id": message_id}})
        return message_id
