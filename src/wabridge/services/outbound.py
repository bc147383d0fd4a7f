"""Outbound handler: one helpdesk notification -> the customer's chat.

Flow:
0. Ignore our own relayed emails (loop prevention).
1. Automated acknowledgments from the helpdesk only update the thread
   anchor; automated mail from anyone else is ignored.
2. Enforce the sender allowlist.
3. Resolve the destination chat address.
4. Extract and sanitize the text.
5. Publish non-inline attachments within the chat caps.
6. Send via the chat transport; record the reply as the new anchor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from email.utils import parseaddr
from typing import Protocol, Sequence

from wabridge.config import Settings
from wabridge.domain.case_resolver import CaseResolver
from wabridge.domain.identity import from_pseudo_identity, normalize_chat_address
from wabridge.domain.models import InboundEmail, OutboundEvent
from wabridge.domain.sanitizer import html_to_text, sanitize
from wabridge.errors import InvalidAddress, PolicyRejection
from wabridge.infra.hashing import hash_identifier
from wabridge.media.policy import chat_cap
from wabridge.media.temp_store import TempFileStore
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context
from wabridge.services.inbound import RELAY_HEADER

logger = get_logger(__name__)

CASE_ID_HEADER = "X-Helpdesk-Case-Id"
_AUTO_PRECEDENCE = {"auto_reply", "bulk", "junk"}


class ChatSender(Protocol):
    def send_message(self, to_address: str, text: str, media_urls: Sequence[str] = ()) -> str:
        ...


@dataclass(frozen=True)
class OutboundResult:
    status: str  # "sent" | "anchored" | "ignored"
    chat_address: str | None = None
    delivery_id: str | None = None
    case_id: str | None = None
    media_urls: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    reason: str | None = None


def is_automated(
    email: InboundEmail, system_domains: Sequence[str], trusted_senders: Sequence[str] = ()
) -> bool:
    """True for auto-acknowledgments and other machine-generated mail.

    The sender-domain rule skips trusted senders, which may share the
    helpdesk's domain.
    """
    auto_submitted = (email.header("Auto-Submitted") or "").strip().lower()
    if auto_submitted and auto_submitted != "no":
        return True
    if email.header("X-Autoreply") or email.header("X-Autorespond"):
        return True
    if (email.header("Precedence") or "").strip().lower() in _AUTO_PRECEDENCE:
        return True
    _, sender = parseaddr(email.sender)
    if sender.lower() in {s.lower() for s in trusted_senders}:
        return False
    return on_system_domain(sender, system_domains)


def on_system_domain(address: str, system_domains: Sequence[str]) -> bool:
    domain = address.rpartition("@")[2].lower()
    return bool(domain) and any(
        domain == d or domain.endswith(f".{d}") for d in system_domains
    )


def extract_case_id(email: InboundEmail, pattern: str) -> str | None:
    """Case id from the subject reference, else from the case-id header."""
    match = re.search(pattern, email.subject or "")
    if match:
        return match.group(1)
    header = (email.header(CASE_ID_HEADER) or "").strip()
    return header or None


class OutboundHandler:
    def __init__(
        self,
        *,
        settings: Settings,
        resolver: CaseResolver,
        chat_sender: ChatSender,
        temp_store: TempFileStore,
    ) -> None:
        self._settings = settings
        self._resolver = resolver
        self._chat_sender = chat_sender
        self._temp_store = temp_store

    def resolve_destination(self, email: InboundEmail) -> str | None:
        """Explicit recipient field first, then the pseudo identity recipients."""
        if email.explicit_chat_address:
            try:
                return normalize_chat_address(email.explicit_chat_address)
            except InvalidAddress:
                logger.warning("explicit chat recipient is not a valid address")

        domain = self._settings.pseudo_identity_domain
        candidates = list(email.recipients)
        to_header = email.header("To")
        if to_header:
            candidates.extend(addr.strip() for addr in to_header.split(","))
        for candidate in candidates:
            chat_address = from_pseudo_identity(candidate, domain)
            if chat_address is not None:
                return chat_address
        return None

    def extract_text(self, email: InboundEmail) -> str:
        raw = email.text if email.text.strip() else html_to_text(email.html)
        return sanitize(raw, max_length=self._settings.sanitized_max_chars)

    def _publish_attachments(self, email: InboundEmail) -> tuple[list[str], list[str]]:
        cap = chat_cap(self._settings.media_limits)
        urls: list[str] = []
        for part in email.parts:
            if part.inline:
                continue
            if not cap.admit(len(part.content), part.filename):
                continue
            urls.append(
                self._temp_store.publish_temporary(part.content, part.content_type, part.filename)
            )
        return urls, list(cap.skipped)

    def _record_anchor(self, chat_address: str, email: InboundEmail) -> str | None:
        case_id = extract_case_id(email, self._settings.case_ref_pattern)
        self._resolver.record_case_anchor(chat_address, case_id, email.message_id)
        return case_id

    def _from_helpdesk(self, email: InboundEmail) -> bool:
        _, sender = parseaddr(email.sender)
        return self._settings.is_allowlisted_sender(sender) or on_system_domain(
            sender, self._settings.helpdesk_system_domains
        )

    def handle(self, email: InboundEmail) -> OutboundResult:
        """Relay one helpdesk notification.

        Raises:
            PolicyRejection: If the sender is not allowlisted.
            ChatTransportError: If the chat send fails.
        """
        sender_hash = hash_identifier(email.sender.lower())
        if email.header(RELAY_HEADER):
            logger.info(
                "notification ignored: relayed by this bridge",
                extra={"extra_fields": safe_log_context(sender_hash=sender_hash)},
            )
            return OutboundResult(status="ignored", reason="loop")

        if is_automated(
            email,
            self._settings.helpdesk_system_domains,
            self._settings.outbound_sender_allowlist,
        ):
            if not self._from_helpdesk(email):
                # Header markers are forgeable; only helpdesk mail may move anchors
                logger.info(
                    "notification ignored: automated mail from outside the helpdesk",
                    extra={"extra_fields": safe_log_context(sender_hash=sender_hash)},
                )
                return OutboundResult(status="ignored", reason="untrusted_automated")
            chat_address = self.resolve_destination(email)
            if chat_address is None:
                return OutboundResult(status="ignored", reason="no_destination")
            case_id = self._record_anchor(chat_address, email)
            logger.info(
                "acknowledgment recorded as anchor",
                extra={
                    "extra_fields": safe_log_context(
                        chat_hash=hash_identifier(chat_address), case_id=case_id or ""
                    )
                },
            )
            return OutboundResult(status="anchored", chat_address=chat_address, case_id=case_id)

        if not self._settings.is_allowlisted_sender(email.sender):
            logger.warning(
                "notification rejected: sender not allowlisted",
                extra={"extra_fields": safe_log_context(sender_hash=sender_hash)},
            )
            raise PolicyRejection("sender not allowlisted")

        chat_address = self.resolve_destination(email)
        if chat_address is None:
            logger.info(
                "notification ignored: no chat recipient",
                extra={"extra_fields": safe_log_context(recipients=len(email.recipients))},
            )
            return OutboundResult(status="ignored", reason="no_destination")

        urls, skipped = self._publish_attachments(email)
        event = OutboundEvent(
            chat_address=chat_address, text=self.extract_text(email), media_urls=tuple(urls)
        )
        delivery_id = self._chat_sender.send_message(
            event.chat_address, event.text, list(event.media_urls)
        )

        case_id = self._record_anchor(chat_address, email)
        logger.info(
            "reply relayed to chat",
            extra={
                "extra_fields": safe_log_context(
                    chat_hash=hash_identifier(chat_address),
                    text_len=len(event.text),
                    media_count=len(urls),
                    skipped=len(skipped),
                    delivery_id=delivery_id,
                )
            },
        )
        return OutboundResult(
            status="sent",
            chat_address=chat_address,
            delivery_id=delivery_id,
            case_id=case_id,
            media_urls=event.media_urls,
            skipped=tuple(skipped),
        )
