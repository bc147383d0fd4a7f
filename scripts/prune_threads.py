"""Maintenance: delete thread records untouched for N days.

Closed conversations are a helpdesk concern, so the bridge never deletes
records on its own. Run this from cron to keep the store small; a pruned
address is simply re-discovered through the helpdesk on its next message.

Usage:
    THREAD_STORE_BACKEND=file THREAD_STORE_PATH=./data/threads.json python scripts/prune_threads.py 90
    THREAD_STORE_BACKEND=postgres DATABASE_URL=postgres://... python scripts/prune_threads.py 90
"""

from __future__ import annotations

import os
import sys
from datetime import timedelta

from wabridge.errors import ThreadStoreError
from wabridge.infra.thread_store import build_thread_store

DEFAULT_MAX_AGE_DAYS = 90


def main(argv: list[str]) -> int:
    try:
        days = int(argv[1]) if len(argv) > 1 else DEFAULT_MAX_AGE_DAYS
    except ValueError:
        print("Usage: python scripts/prune_threads.py [max_age_days]", file=sys.stderr)
        return 2
    if days < 1:
        print("ERROR: max_age_days must be at least 1", file=sys.stderr)
        return 2

    store = build_thread_store(
        os.environ.get("THREAD_STORE_BACKEND", "file"),
        os.environ.get("THREAD_STORE_PATH", "./data/threads.json"),
    )
    try:
        removed = store.prune(timedelta(days=days))
    except ThreadStoreError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(f"Done. {removed} thread record(s) older than {days} day(s) removed.")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
