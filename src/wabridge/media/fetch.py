"""Authenticated media download from the chat transport.

Twilio media URLs require the account's basic-auth credentials and answer with
a redirect to short-lived storage; `requests` drops the Authorization header
on cross-host redirects.
"""

from __future__ import annotations

import requests

from wabridge.errors import MediaFetchError
from wabridge.infra.hashing import hash_identifier
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Streamed so oversized media is abandoned early
_CHUNK_SIZE = 64 * 1024


class MediaFetcher:
    """Downloads media with the chat transport's credentials."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        timeout: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        self._auth = (account_sid, auth_token) if account_sid and auth_token else None
        self._timeout = timeout
        self._session = session or requests.Session()

    def fetch_authenticated(self, url: str, max_bytes: int | None = None) -> bytes:
        """Download one media item.

        Args:
            url: Transport media URL. NEVER logged in full.
            max_bytes: Abort once the body exceeds this size.

        Raises:
            MediaFetchError: On non-2xx, timeout, network error or size overrun.
        """
        log_ctx = safe_log_context(url_hash=hash_identifier(url))
        try:
            with self._session.get(
                url, auth=self._auth, timeout=self._timeout, stream=True
            ) as resp:
                if not 200 <= resp.status_code < 300:
                    raise MediaFetchError(f"media fetch returned HTTP {resp.status_code}")

                chunks: list[bytes] = []
                received = 0
                for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                    received += len(chunk)
                    if max_bytes is not None and received > max_bytes:
                        raise MediaFetchError("media exceeds size limit")
                    chunks.append(chunk)
        except requests.RequestException as e:
            logger.warning(
                "media fetch failed",
                extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
            )
            raise MediaFetchError(f"media fetch failed: {type(e).__name__}") from e

        content = b"".join(chunks)
        logger.info(
            "media fetched",
            extra={"extra_fields": {**log_ctx, "bytes": str(len(content))}},
        )
        return content
