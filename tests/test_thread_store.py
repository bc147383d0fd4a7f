"""Tests for the thread store backends."""

import json
import os
from datetime import timedelta
from unittest.mock import patch

import pytest

from wabridge.errors import ThreadStoreError
from wabridge.infra.thread_store import FileThreadStore, PostgresThreadStore, build_thread_store

ADDR = "whatsapp:+447911123456"
OTHER = "whatsapp:+15551234567"


class TestFileThreadStore:
    """JSON file backend."""

    def test_get_missing_returns_none(self, tmp_path):
        store = FileThreadStore(tmp_path / "threads.json")
        assert store.get(ADDR) is None

    def test_upsert_creates_record(self, tmp_path):
        store = FileThreadStore(tmp_path / "threads.json")
        record = store.upsert(ADDR, case_id="42")
        assert record.chat_address == ADDR
        assert record.case_id == "42"
        assert record.last_inbound_anchor is None
        assert record.updated_at.tzinfo is not None

    def test_upsert_merges_only_supplied_fields(self, tmp_path):
        store = FileThreadStore(tmp_path / "threads.json")
        store.upsert(ADDR, case_id="42")
        record = store.upsert(ADDR, last_inbound_anchor="<abc@mail>")
        assert record.case_id == "42"
        assert record.last_inbound_anchor == "<abc@mail>"

    def test_upsert_advances_updated_at(self, tmp_path):
        store = FileThreadStore(tmp_path / "threads.json")
        first = store.upsert(ADDR, case_id="42")
        second = store.upsert(ADDR, case_id="43")
        assert second.updated_at >= first.updated_at

    def test_durable_across_instances(self, tmp_path):
        path = tmp_path / "threads.json"
        FileThreadStore(path).upsert(ADDR, case_id="42", last_inbound_anchor="<a@b>")

        reopened = FileThreadStore(path).get(ADDR)
        assert reopened is not None
        assert reopened.case_id == "42"
        assert reopened.last_inbound_anchor == "<a@b>"

    def test_document_shape(self, tmp_path):
        path = tmp_path / "threads.json"
        FileThreadStore(path).upsert(ADDR, case_id="42")
        document = json.loads(path.read_text(encoding="utf-8"))
        assert document["version"] == 1
        assert document["threads"][ADDR]["case_id"] == "42"

    def test_no_temp_files_left_behind(self, tmp_path):
        store = FileThreadStore(tmp_path / "threads.json")
        store.upsert(ADDR, case_id="1")
        store.upsert(OTHER, case_id="2")
        assert sorted(p.name for p in tmp_path.iterdir()) == ["threads.json"]

    def test_creates_parent_directory(self, tmp_path):
        store = FileThreadStore(tmp_path / "nested" / "dir" / "threads.json")
        store.upsert(ADDR, case_id="1")
        assert (tmp_path / "nested" / "dir" / "threads.json").exists()

    def test_corrupt_document_raises(self, tmp_path):
        path = tmp_path / "threads.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ThreadStoreError):
            FileThreadStore(path).get(ADDR)

    def test_failed_write_keeps_previous_state(self, tmp_path):
        path = tmp_path / "threads.json"
        store = FileThreadStore(path)
        store.upsert(ADDR, case_id="42")

        with patch("wabridge.infra.thread_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(ThreadStoreError):
                store.upsert(ADDR, case_id="99")

        assert store.get(ADDR).case_id == "42"
        assert FileThreadStore(path).get(ADDR).case_id == "42"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["threads.json"]

    def test_prune_removes_stale_records(self, tmp_path):
        path = tmp_path / "threads.json"
        store = FileThreadStore(path)
        store.upsert(ADDR, case_id="1")
        store.upsert(OTHER, case_id="2")

        document = json.loads(path.read_text(encoding="utf-8"))
        document["threads"][ADDR]["updated_at"] = "2020-01-01T00:00:00+00:00"
        path.write_text(json.dumps(document), encoding="utf-8")

        reopened = FileThreadStore(path)
        assert reopened.prune(timedelta(days=30)) == 1
        assert reopened.get(ADDR) is None
        assert reopened.get(OTHER) is not None

    def test_prune_nothing_stale(self, tmp_path):
        store = FileThreadStore(tmp_path / "threads.json")
        store.upsert(ADDR, case_id="1")
        assert store.prune(timedelta(days=1)) == 0


class TestBuildThreadStore:
    def test_file_backend(self, tmp_path):
        store = build_thread_store("file", str(tmp_path / "t.json"))
        assert isinstance(store, FileThreadStore)

    def test_postgres_backend(self):
        assert isinstance(build_thread_store("postgres", ""), PostgresThreadStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_thread_store("redis", "")


class TestPostgresThreadStoreErrors:
    """Connection failures surface as ThreadStoreError - no real DB needed."""

    def test_missing_database_url(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ThreadStoreError):
                PostgresThreadStore().get(ADDR)


@pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping DB integration tests",
)
class TestPostgresThreadStore:
    """Postgres backend (requires migrations applied)."""

    @pytest.fixture(autouse=True)
    def _cleanup(self):
        from wabridge.infra.db import txn

        yield
        with txn() as cur:
            cur.execute(
                "DELETE FROM thread_records WHERE chat_address IN (%s, %s)", (ADDR, OTHER)
            )

    def test_upsert_and_get(self):
        store = PostgresThreadStore()
        store.upsert(ADDR, case_id="42")
        record = store.upsert(ADDR, last_inbound_anchor="<a@b>")
        assert record.case_id == "42"
        assert record.last_inbound_anchor == "<a@b>"
        assert store.get(ADDR) == record

    def test_get_missing(self):
        assert PostgresThreadStore().get(OTHER) is None
