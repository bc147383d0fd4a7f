"""Thread store: chat address -> helpdesk threading state.

The store is the bridge's only durable state. Two backends share one contract:

- `FileThreadStore`: one JSON document, rewritten through a temp file and an
  atomic rename so a crash mid-write leaves the previous version intact.
- `PostgresThreadStore`: one row per chat address, upserted in a transaction.

Every successful `upsert` is durable before it returns. Failures surface as
`ThreadStoreError`; the case resolver decides how to degrade.

Per-address serialization is the caller's job (see `infra.locks.KeyedLock`);
the file backend additionally serializes whole-file rewrites internally.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol

import psycopg2

from wabridge.domain.models import ThreadRecord
from wabridge.errors import ThreadStoreError
from wabridge.infra.db import fetchone, txn
from wabridge.infra.time import parse_timestamp, utc_now
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

_UNSET: Any = object()


class ThreadStore(Protocol):
    """Persistent mapping from chat address to `ThreadRecord`."""

    def get(self, chat_address: str) -> ThreadRecord | None:
        ...

    def upsert(
        self,
        chat_address: str,
        *,
        case_id: str | None = _UNSET,
        last_inbound_anchor: str | None = _UNSET,
    ) -> ThreadRecord:
        ...

    def prune(self, older_than: timedelta) -> int:
        ...


def _patch_from(case_id: Any, last_inbound_anchor: Any) -> dict[str, Any]:
    patch = {"case_id": case_id, "last_inbound_anchor": last_inbound_anchor}
    return {k: v for k, v in patch.items() if v is not _UNSET}


def _record_to_json(record: ThreadRecord) -> dict[str, Any]:
    return {
        "case_id": record.case_id,
        "last_inbound_anchor": record.last_inbound_anchor,
        "updated_at": record.updated_at.isoformat(),
    }


def _record_from_json(chat_address: str, data: dict[str, Any]) -> ThreadRecord:
    return ThreadRecord(
        chat_address=chat_address,
        case_id=data.get("case_id"),
        last_inbound_anchor=data.get("last_inbound_anchor"),
        updated_at=parse_timestamp(data["updated_at"]),
    )


class FileThreadStore:
    """JSON-file backend with write-temp-then-rename durability."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._records: dict[str, ThreadRecord] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, ThreadRecord]:
        """Load the document once; later reads come from memory."""
        if self._records is not None:
            return self._records
        if not self._path.exists():
            self._records = {}
            return self._records
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            records = {
                address: _record_from_json(address, data)
                for address, data in raw.get("threads", {}).items()
            }
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise ThreadStoreError(f"cannot read thread store: {type(e).__name__}") from e
        self._records = records
        return records

    def _flush(self, records: dict[str, ThreadRecord]) -> None:
        document = {
            "version": 1,
            "threads": {address: _record_to_json(r) for address, r in records.items()},
        }
        payload = json.dumps(document, indent=2, sort_keys=True)
        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
            tmp_name = None
        except OSError as e:
            raise ThreadStoreError(f"cannot write thread store: {type(e).__name__}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def get(self, chat_address: str) -> ThreadRecord | None:
        with self._lock:
            return self._load().get(chat_address)

    def upsert(
        self,
        chat_address: str,
        *,
        case_id: str | None = _UNSET,
        last_inbound_anchor: str | None = _UNSET,
    ) -> ThreadRecord:
        patch = _patch_from(case_id, last_inbound_anchor)
        with self._lock:
            current = self._load()
            existing = current.get(chat_address)
            if existing is None:
                record = ThreadRecord(
                    chat_address=chat_address,
                    case_id=patch.get("case_id"),
                    last_inbound_anchor=patch.get("last_inbound_anchor"),
                    updated_at=utc_now(),
                )
            else:
                record = replace(existing, updated_at=utc_now(), **patch)

            updated = dict(current)
            updated[chat_address] = record
            # Memory only reflects what reached disk
            self._flush(updated)
            self._records = updated
            return record

    def prune(self, older_than: timedelta) -> int:
        cutoff = utc_now() - older_than
        with self._lock:
            current = self._load()
            kept = {a: r for a, r in current.items() if r.updated_at >= cutoff}
            removed = len(current) - len(kept)
            if removed:
                self._flush(kept)
                self._records = kept
        logger.info(
            "thread store pruned",
            extra={"extra_fields": safe_log_context(backend="file", removed=removed)},
        )
        return removed


class PostgresThreadStore:
    """Postgres backend. Schema: migrations/versions/001_thread_records.py."""

    def get(self, chat_address: str) -> ThreadRecord | None:
        try:
            with txn() as cur:
                row = fetchone(
                    cur,
                    """
                    SELECT case_id, last_inbound_anchor, updated_at
                    FROM thread_records
                    WHERE chat_address = %s
                    """,
                    (chat_address,),
                )
        except (psycopg2.Error, RuntimeError) as e:
            raise ThreadStoreError(f"cannot read thread store: {type(e).__name__}") from e

        if row is None:
            return None
        return ThreadRecord(
            chat_address=chat_address,
            case_id=row[0],
            last_inbound_anchor=row[1],
            updated_at=row[2],
        )

    def upsert(
        self,
        chat_address: str,
        *,
        case_id: str | None = _UNSET,
        last_inbound_anchor: str | None = _UNSET,
    ) -> ThreadRecord:
        patch = _patch_from(case_id, last_inbound_anchor)
        now = utc_now()

        columns = ["chat_address", *patch.keys(), "updated_at"]
        values = [chat_address, *patch.values(), now]
        # Only patched columns are overwritten on conflict
        assignments = ", ".join(f"{col} = EXCLUDED.{col}" for col in [*patch.keys(), "updated_at"])
        query = (
            f"INSERT INTO thread_records ({', '.join(columns)}) "
            f"VALUES ({', '.join(['%s'] * len(values))}) "
            f"ON CONFLICT (chat_address) DO UPDATE SET {assignments} "
            "RETURNING case_id, last_inbound_anchor, updated_at"
        )

        try:
            with txn() as cur:
                row = fetchone(cur, query, values)
        except (psycopg2.Error, RuntimeError) as e:
            raise ThreadStoreError(f"cannot write thread store: {type(e).__name__}") from e

        if row is None:
            raise ThreadStoreError("upsert returned no row")
        return ThreadRecord(
            chat_address=chat_address,
            case_id=row[0],
            last_inbound_anchor=row[1],
            updated_at=row[2],
        )

    def prune(self, older_than: timedelta) -> int:
        cutoff = utc_now() - older_than
        try:
            with txn() as cur:
                cur.execute("DELETE FROM thread_records WHERE updated_at < %s", (cutoff,))
                removed = cur.rowcount
        except (psycopg2.Error, RuntimeError) as e:
            raise ThreadStoreError(f"cannot prune thread store: {type(e).__name__}") from e
        logger.info(
            "thread store pruned",
            extra={"extra_fields": safe_log_context(backend="postgres", removed=removed)},
        )
        return removed


def build_thread_store(backend: str, path: str) -> ThreadStore:
    """Construct the configured backend."""
    if backend == "postgres":
        return PostgresThreadStore()
    if backend == "file":
        return FileThreadStore(path)
    raise ValueError(f"Unknown THREAD_STORE_BACKEND: {backend}")
