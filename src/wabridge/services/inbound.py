"""Inbound handler: one chat message -> the helpdesk.

Flow:
1. Normalize the sender and derive its pseudo identity.
2. Resolve the case (may be PENDING for a brand-new conversation).
3. Fetch media within the email byte budget; failures are noted in the body.
4. Deliver: email to the helpdesk inbox, or a direct API append when
   ``INBOUND_DELIVERY=api`` and the case is known.
5. Report whether the pending case still needs a completion pass.

Transport failures on the primary send propagate; everything else degrades.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from typing import Protocol

from wabridge.config import Settings
from wabridge.domain.case_resolver import CaseResolver
from wabridge.domain.identity import display_number, normalize_chat_address, to_pseudo_identity
from wabridge.domain.models import (
    CaseResolution,
    EmailAttachment,
    InboundEvent,
    OutgoingEmail,
)
from wabridge.errors import InvalidAddress, MediaFetchError
from wabridge.helpdesk.base import HelpdeskClient
from wabridge.infra.hashing import hash_identifier
from wabridge.media.fetch import MediaFetcher
from wabridge.media.policy import email_budget
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

RELAY_HEADER = "X-WABridge-Relay"
RELAY_HEADER_VALUE = "inbound"


class EmailSender(Protocol):
    def send(self, email: OutgoingEmail) -> str:
        ...


@dataclass(frozen=True)
class InboundResult:
    status: str  # "sent" | "appended" | "ignored"
    chat_address: str | None = None
    resolution: CaseResolution | None = None
    delivery_id: str | None = None
    attachments: int = 0
    omitted: tuple[str, ...] = ()
    reason: str | None = None

    @property
    def needs_completion(self) -> bool:
        """True when the case is still unknown after a successful email send."""
        return (
            self.status == "sent"
            and self.resolution is not None
            and self.resolution.is_pending
        )


@dataclass
class _CollectedMedia:
    attachments: list[EmailAttachment] = field(default_factory=list)
    omitted: list[str] = field(default_factory=list)


def _media_filename(index: int, content_type: str) -> str:
    ext = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ".bin"
    return f"whatsapp-media-{index + 1}{ext}"


def attachment_placeholder(count: int) -> str:
    noun = "attachment" if count == 1 else "attachments"
    return f"(WhatsApp message with {count} {noun})"


def omission_note(omitted: int) -> str:
    noun = "attachment" if omitted == 1 else "attachments"
    return f"[{omitted} {noun} could not be retrieved]"


class InboundHandler:
    def __init__(
        self,
        *,
        settings: Settings,
        resolver: CaseResolver,
        email_sender: EmailSender,
        media_fetcher: MediaFetcher,
        helpdesk: HelpdeskClient | None = None,
    ) -> None:
        self._settings = settings
        self._resolver = resolver
        self._email_sender = email_sender
        self._media_fetcher = media_fetcher
        self._helpdesk = helpdesk

    def _collect_media(self, event: InboundEvent) -> _CollectedMedia:
        collected = _CollectedMedia()
        budget = email_budget(self._settings.media_limits)
        for i, ref in enumerate(event.media):
            filename = _media_filename(i, ref.content_type)
            try:
                content = self._media_fetcher.fetch_authenticated(
                    ref.url, max_bytes=budget.remaining
                )
            except MediaFetchError as e:
                logger.warning(
                    "media item skipped",
                    extra={"extra_fields": safe_log_context(index=i, error=str(e))},
                )
                collected.omitted.append(filename)
                continue
            if not budget.admit(len(content), filename):
                collected.omitted.append(filename)
                continue
            collected.attachments.append(
                EmailAttachment(content=content, filename=filename, content_type=ref.content_type)
            )
        return collected

    def _compose_body(self, event: InboundEvent, media: _CollectedMedia) -> str:
        body = event.text.strip() or attachment_placeholder(len(event.media))
        if media.omitted:
            body = f"{body}\n\n{omission_note(len(media.omitted))}"
        return body

    def compose_email(
        self,
        chat_address: str,
        raw_sender: str,
        resolution: CaseResolution,
        body: str,
        attachments: list[EmailAttachment],
        profile_name: str | None = None,
    ) -> OutgoingEmail:
        subject = self._settings.email_subject_template.format(
            chat_address=display_number(chat_address)
        )
        if resolution.case_id:
            subject = f"{subject} [#{resolution.case_id}]"

        headers = {RELAY_HEADER: RELAY_HEADER_VALUE}
        if resolution.anchor:
            headers["In-Reply-To"] = resolution.anchor
            headers["References"] = resolution.anchor

        return OutgoingEmail(
            to=self._settings.helpdesk_inbox,
            from_address=to_pseudo_identity(chat_address, self._settings.pseudo_identity_domain),
            from_name=f"{profile_name} ({raw_sender})" if profile_name else raw_sender,
            subject=subject,
            text=body,
            attachments=tuple(attachments),
            headers=headers,
        )

    def _append_via_api(
        self,
        case_id: str,
        identity: str,
        body: str,
        attachments: list[EmailAttachment],
    ) -> bool:
        if self._helpdesk is None:
            return False
        result = self._helpdesk.append_public_message(
            case_id, body, requester_identity=identity, attachments=tuple(attachments)
        )
        if not result.ok:
            logger.warning(
                "every reply channel failed; falling back to email",
                extra={
                    "extra_fields": safe_log_context(
                        case_id=case_id, attempts=len(result.attempts)
                    )
                },
            )
        return result.ok

    def handle(self, event: InboundEvent) -> InboundResult:
        """Deliver one chat message.

        Raises:
            EmailTransportError: If the email send fails.
            ThreadStoreError: On systemic thread store failure.
        """
        try:
            chat_address = normalize_chat_address(event.chat_address)
        except InvalidAddress:
            logger.info(
                "inbound message ignored: invalid chat address",
                extra={"extra_fields": safe_log_context(message_id=event.message_id or "")},
            )
            return InboundResult(status="ignored", reason="invalid_address")

        log_ctx = safe_log_context(
            chat_hash=hash_identifier(chat_address),
            message_id=event.message_id or "",
            text_len=len(event.text),
            media_count=len(event.media),
        )
        logger.info("inbound message received", extra={"extra_fields": log_ctx})

        resolution = self._resolver.resolve_case_for_inbound(chat_address)
        media = self._collect_media(event)
        body = self._compose_body(event, media)
        identity = to_pseudo_identity(chat_address, self._settings.pseudo_identity_domain)

        if (
            self._settings.inbound_delivery == "api"
            and self._helpdesk is not None
            and resolution.case_id
            and self._append_via_api(resolution.case_id, identity, body, media.attachments)
        ):
            logger.info(
                "inbound message appended to case",
                extra={"extra_fields": {**log_ctx, "case_id": resolution.case_id}},
            )
            return InboundResult(
                status="appended",
                chat_address=chat_address,
                resolution=resolution,
                attachments=len(media.attachments),
                omitted=tuple(media.omitted),
            )

        email = self.compose_email(
            chat_address,
            event.chat_address,
            resolution,
            body,
            media.attachments,
            profile_name=(event.profile_name or "").strip() or None,
        )
        delivery_id = self._email_sender.send(email)
        logger.info(
            "inbound message relayed by email",
            extra={
                "extra_fields": {
                    **log_ctx,
                    "case_source": resolution.source.value,
                    "attachments": str(len(media.attachments)),
                }
            },
        )
        return InboundResult(
            status="sent",
            chat_address=chat_address,
            resolution=resolution,
            delivery_id=delivery_id,
            attachments=len(media.attachments),
            omitted=tuple(media.omitted),
        )
