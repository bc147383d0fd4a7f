"""Short-lived public hosting for relayed media.

The chat transport can only attach media by URL, so helpdesk attachments are
parked here under a random token and served from ``GET /file/{id}`` until they
expire. Entries are reaped by expiry, not on first read, so transport retries
can fetch the same URL again. Nothing survives a restart.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from wabridge.infra.time import utc_now
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

TOKEN_BYTES = 24


@dataclass(frozen=True)
class RelayedMedia:
    id: str
    content: bytes
    content_type: str
    filename: str
    expires_at: datetime


class TempFileStore:
    """In-memory blob table keyed by random tokens."""

    def __init__(
        self,
        *,
        public_base_url: str,
        ttl: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._public_base_url = public_base_url.rstrip("/")
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[str, RelayedMedia] = {}

    def publish_temporary(self, content: bytes, content_type: str, filename: str) -> str:
        """Store a blob and return the public URL that serves it."""
        media_id = secrets.token_urlsafe(TOKEN_BYTES)
        item = RelayedMedia(
            id=media_id,
            content=content,
            content_type=content_type or "application/octet-stream",
            filename=filename or "attachment",
            expires_at=self._clock() + self._ttl,
        )
        with self._lock:
            self._items[media_id] = item
        logger.info(
            "media published",
            extra={
                "extra_fields": safe_log_context(
                    bytes=len(content), content_type=item.content_type
                )
            },
        )
        return f"{self._public_base_url}/file/{media_id}"

    def get(self, media_id: str) -> RelayedMedia | None:
        """Return a live blob; expired entries are treated as absent."""
        with self._lock:
            item = self._items.get(media_id)
        if item is None or item.expires_at <= self._clock():
            return None
        return item

    def sweep(self) -> int:
        """Delete expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._items.items() if v.expires_at <= now]
            for key in expired:
                del self._items[key]
        if expired:
            logger.info(
                "expired media swept",
                extra={"extra_fields": safe_log_context(removed=len(expired))},
            )
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class TempFileSweeper:
    """Background thread that calls `TempFileStore.sweep` at a fixed interval."""

    def __init__(self, store: TempFileStore, interval_seconds: float) -> None:
        self._store = store
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="wabridge-media-sweeper", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._store.sweep()
            except Exception:
                # Keep sweeping on the next tick
                logger.exception("media sweep failed")
