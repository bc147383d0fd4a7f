"""Case resolver: which helpdesk case does a chat address belong to?

Resolution runs an ordered list of strategies inside a per-address critical
section. Each strategy returns a `CaseResolution` or None ("not found by this
strategy"); the first hit wins:

1. STORE   - the thread store already knows the case (no helpdesk call).
2. SEARCH  - the helpdesk has an open case requested by the pseudo identity.
3. CREATED - direct case creation, when enabled; the id is captured
             synchronously so no completion step is needed.

When every strategy misses, the result is PENDING: the helpdesk creates the
case from the first email, and `complete_pending_case` or `record_case_anchor`
closes the loop later.

Thread store failures degrade to "unknown" and fall through to discovery.
Only a run of consecutive failures is escalated as `ThreadStoreError`.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from wabridge.domain.identity import display_number, normalize_chat_address, to_pseudo_identity
from wabridge.domain.models import CaseResolution, CaseSource, ThreadRecord
from wabridge.errors import HelpdeskApiError, ThreadStoreError
from wabridge.helpdesk.base import HelpdeskClient
from wabridge.infra.hashing import hash_identifier
from wabridge.infra.locks import KeyedLock
from wabridge.infra.thread_store import ThreadStore
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)


@dataclass
class _Lookup:
    """State shared by the strategies of one resolution."""

    chat_address: str
    identity: str
    record: ThreadRecord | None = None

    @property
    def anchor(self) -> str | None:
        return self.record.last_inbound_anchor if self.record else None


Strategy = Callable[[_Lookup], "CaseResolution | None"]


class CaseResolver:
    def __init__(
        self,
        *,
        store: ThreadStore,
        helpdesk: HelpdeskClient | None,
        pseudo_identity_domain: str,
        locks: KeyedLock | None = None,
        create_cases: bool = False,
        subject_template: str = "WhatsApp conversation with {chat_address}",
        max_store_failures: int = 3,
    ) -> None:
        self._store = store
        self._helpdesk = helpdesk
        self._domain = pseudo_identity_domain
        self._locks = locks if locks is not None else KeyedLock()
        self._create_cases = create_cases
        self._subject_template = subject_template
        self._max_store_failures = max(max_store_failures, 1)
        self._failure_lock = threading.Lock()
        self._store_failures = 0

        strategies: list[Strategy] = [self._from_store]
        if helpdesk is not None:
            strategies.append(self._from_search)
            if create_cases:
                strategies.append(self._by_creation)
        self._strategies = tuple(strategies)

    # ------------------------------------------------------------------
    # Thread store access with failure accounting
    # ------------------------------------------------------------------

    def _store_ok(self) -> None:
        with self._failure_lock:
            self._store_failures = 0

    def _store_failed(self, op: str, chat_address: str, error: ThreadStoreError) -> int:
        with self._failure_lock:
            self._store_failures += 1
            failures = self._store_failures
        logger.warning(
            "thread store unavailable; treating thread as unknown",
            extra={
                "extra_fields": safe_log_context(
                    op=op,
                    chat_hash=hash_identifier(chat_address),
                    consecutive_failures=failures,
                    error=str(error),
                )
            },
        )
        return failures

    def _escalate_if_systemic(self, failures: int, error: ThreadStoreError) -> None:
        if failures >= self._max_store_failures:
            logger.error(
                "thread store failing repeatedly",
                extra={"extra_fields": safe_log_context(consecutive_failures=failures)},
            )
            raise ThreadStoreError(
                f"thread store failed {failures} consecutive times"
            ) from error

    def _read(self, chat_address: str, *, escalate: bool = True) -> ThreadRecord | None:
        try:
            record = self._store.get(chat_address)
        except ThreadStoreError as e:
            failures = self._store_failed("get", chat_address, e)
            if escalate:
                self._escalate_if_systemic(failures, e)
            return None
        self._store_ok()
        return record

    def _write(self, chat_address: str, *, escalate: bool = True, **patch: Any) -> bool:
        """Upsert; a failure is logged and leaves the thread unknown."""
        try:
            self._store.upsert(chat_address, **patch)
        except ThreadStoreError as e:
            failures = self._store_failed("upsert", chat_address, e)
            if escalate:
                self._escalate_if_systemic(failures, e)
            return False
        self._store_ok()
        return True

    @property
    def consecutive_store_failures(self) -> int:
        with self._failure_lock:
            return self._store_failures

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _from_store(self, lookup: _Lookup) -> CaseResolution | None:
        lookup.record = self._read(lookup.chat_address)
        if lookup.record is None or not lookup.record.case_id:
            return None
        return CaseResolution(
            case_id=lookup.record.case_id, source=CaseSource.STORE, anchor=lookup.anchor
        )

    def _search(self, identity: str) -> str | None:
        if self._helpdesk is None:
            return None
        try:
            return self._helpdesk.search_cases_by_identity(identity, open_states_only=True)
        except HelpdeskApiError as e:
            logger.warning(
                "helpdesk case search failed",
                extra={"extra_fields": safe_log_context(status=e.status_code, error=str(e))},
            )
            return None

    def _from_search(self, lookup: _Lookup) -> CaseResolution | None:
        case_id = self._search(lookup.identity)
        if case_id is None:
            return None
        self._write(lookup.chat_address, case_id=case_id)
        return CaseResolution(case_id=case_id, source=CaseSource.SEARCH, anchor=lookup.anchor)

    def _by_creation(self, lookup: _Lookup) -> CaseResolution | None:
        if self._helpdesk is None:
            return None
        number = display_number(lookup.chat_address)
        subject = self._subject_template.format(chat_address=number)
        try:
            requester_id = self._helpdesk.find_or_create_user(lookup.identity, number)
            case_id = self._helpdesk.create_case(
                subject,
                lookup.identity,
                f"Conversation started over WhatsApp by {number}.",
                requester_id=requester_id,
            )
        except HelpdeskApiError as e:
            logger.warning(
                "helpdesk case creation failed",
                extra={"extra_fields": safe_log_context(status=e.status_code, error=str(e))},
            )
            return None
        self._write(lookup.chat_address, case_id=case_id)
        return CaseResolution(case_id=case_id, source=CaseSource.CREATED, anchor=lookup.anchor)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def resolve_case_for_inbound(self, chat_address: str) -> CaseResolution:
        """Find the case for an inbound message, or return a PENDING resolution.

        Raises:
            InvalidAddress: If the chat address cannot be normalized.
            ThreadStoreError: Only after repeated consecutive store failures.
        """
        address = normalize_chat_address(chat_address)
        lookup = _Lookup(chat_address=address, identity=to_pseudo_identity(address, self._domain))

        with self._locks.hold(address):
            for strategy in self._strategies:
                resolution = strategy(lookup)
                if resolution is not None:
                    break
            else:
                resolution = CaseResolution(
                    case_id=None, source=CaseSource.PENDING, anchor=lookup.anchor
                )

        logger.info(
            "case resolved",
            extra={
                "extra_fields": safe_log_context(
                    chat_hash=hash_identifier(address),
                    source=resolution.source.value,
                    case_id=resolution.case_id or "",
                )
            },
        )
        return resolution

    def record_case_anchor(
        self, chat_address: str, case_id: str | None, anchor_token: str | None
    ) -> bool:
        """Remember the case and threading anchor observed for a chat address.

        Best-effort: returns False when nothing was recorded.
        """
        patch: dict[str, Any] = {}
        if case_id:
            patch["case_id"] = case_id
        if anchor_token:
            patch["last_inbound_anchor"] = anchor_token
        if not patch:
            return False

        address = normalize_chat_address(chat_address)
        with self._locks.hold(address):
            # Escalation is for the inbound path; anchors stay best-effort
            recorded = self._write(address, escalate=False, **patch)
        if recorded:
            logger.info(
                "case anchor recorded",
                extra={
                    "extra_fields": safe_log_context(
                        chat_hash=hash_identifier(address),
                        case_id=case_id or "",
                        has_anchor=bool(anchor_token),
                    )
                },
            )
        return recorded

    def complete_pending_case(self, chat_address: str) -> str | None:
        """Follow-up discovery after the first email of a new conversation.

        Best-effort: the helpdesk may not have indexed the new case yet, in
        which case the next inbound message or the acknowledgment retries.
        """
        if self._helpdesk is None:
            return None
        address = normalize_chat_address(chat_address)
        with self._locks.hold(address):
            record = self._read(address, escalate=False)
            if record is not None and record.case_id:
                return record.case_id

            case_id = self._search(to_pseudo_identity(address, self._domain))
            if case_id is None:
                logger.info(
                    "pending case not yet discoverable",
                    extra={"extra_fields": safe_log_context(chat_hash=hash_identifier(address))},
                )
                return None
            self._write(address, escalate=False, case_id=case_id)
        logger.info(
            "pending case completed",
            extra={
                "extra_fields": safe_log_context(
                    chat_hash=hash_identifier(address), case_id=case_id
                )
            },
        )
        return case_id

    def complete_pending_case_later(
        self,
        chat_address: str,
        delays: Sequence[float],
        sleep: Callable[[float], None] = time.sleep,
    ) -> str | None:
        """Retry `complete_pending_case` after each delay until the case shows up.

        The helpdesk needs time to ingest the first email and index the new
        case. If every attempt misses, the SEARCH strategy on the next inbound
        message or an acknowledgment anchor completes the thread instead.
        """
        for delay in delays:
            sleep(delay)
            case_id = self.complete_pending_case(chat_address)
            if case_id is not None:
                return case_id
        return None
