"""Outbound WhatsApp messaging via the Twilio Messages API.

Security: NEVER log to_address or text. Only log hashes and lengths.
No retries: Twilio status callbacks own redelivery.
"""

from __future__ import annotations

from typing import Sequence

import requests

from wabridge.errors import ChatTransportError
from wabridge.infra.hashing import hash_identifier
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class TwilioSender:
    """Sends WhatsApp messages from a fixed Twilio sender number."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_address: str,
        timeout: float = 10,
        session: requests.Session | None = None,
        api_base: str = TWILIO_API_BASE,
    ) -> None:
        self._account_sid = account_sid
        self._auth = (account_sid, auth_token)
        self._from = from_address
        self._timeout = timeout
        self._session = session or requests.Session()
        self._api_base = api_base.rstrip("/")

    def send_message(self, to_address: str, text: str, media_urls: Sequence[str] = ()) -> str:
        """Send one message and return Twilio's message SID.

        Args:
            to_address: Canonical chat address. NEVER logged.
            text: Message body. NEVER logged.
            media_urls: Public URLs Twilio fetches and attaches.

        Raises:
            ChatTransportError: On missing config, network error or non-2xx.
        """
        if not self._account_sid or not self._from:
            raise ChatTransportError(
                "Missing Twilio config: TWILIO_ACCOUNT_SID and TWILIO_WHATSAPP_FROM required"
            )

        # requests repeats a key for each tuple, which is how Twilio takes MediaUrl
        form: list[tuple[str, str]] = [("From", self._from), ("To", to_address), ("Body", text)]
        form.extend(("MediaUrl", url) for url in media_urls)

        log_ctx = safe_log_context(
            to_hash=hash_identifier(to_address),
            text_len=len(text),
            media_count=len(media_urls),
            provider="twilio",
        )
        logger.info("sending outbound message via twilio", extra={"extra_fields": log_ctx})

        url = f"{self._api_base}/Accounts/{self._account_sid}/Messages.json"
        try:
            resp = self._session.post(url, data=form, auth=self._auth, timeout=self._timeout)
        except requests.RequestException as e:
            logger.error(
                "outbound send via twilio failed",
                extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
            )
            raise ChatTransportError(f"twilio request failed: {type(e).__name__}") from e

        if not 200 <= resp.status_code < 300:
            logger.error(
                "outbound send via twilio rejected",
                extra={"extra_fields": {**log_ctx, "status": str(resp.status_code)}},
            )
            raise ChatTransportError(f"twilio returned HTTP {resp.status_code}")

        try:
            sid = str(resp.json().get("sid") or "")
        except ValueError:
            sid = ""
        logger.info(
            "outbound message sent via twilio",
            extra={"extra_fields": {**log_ctx, "sid": sid}},
        )
        return sid
