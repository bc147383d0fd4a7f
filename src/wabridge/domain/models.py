"""Bridge data models.

ThreadRecord is the only persisted shape. Events and emails are transient and
live for a single request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(frozen=True)
class ThreadRecord:
    """Per-chat-address threading state."""

    chat_address: str
    case_id: str | None
    last_inbound_anchor: str | None
    updated_at: datetime


class CaseSource(str, Enum):
    STORE = "store"
    SEARCH = "search"
    CREATED = "created"
    PENDING = "pending"


@dataclass(frozen=True)
class CaseResolution:
    """Outcome of case resolution for one inbound message.

    `case_id` is None only when `source` is PENDING: the helpdesk will create
    the case itself when the first email arrives.
    """

    case_id: str | None
    source: CaseSource
    anchor: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.case_id is None


@dataclass(frozen=True)
class MediaRef:
    url: str
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class InboundEvent:
    """One chat message arriving from the chat transport."""

    chat_address: str  # raw sender, normalized by the handler
    text: str
    media: tuple[MediaRef, ...] = ()
    message_id: str | None = None
    profile_name: str | None = None


@dataclass(frozen=True)
class OutboundEvent:
    """One helpdesk reply ready for the chat transport."""

    chat_address: str
    text: str
    media_urls: tuple[str, ...] = ()


@dataclass(frozen=True)
class EmailAttachment:
    content: bytes
    filename: str
    content_type: str


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    from_address: str
    from_name: str
    subject: str
    text: str
    attachments: tuple[EmailAttachment, ...] = ()
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EmailPart:
    """A file part of an inbound email notification."""

    content: bytes
    filename: str
    content_type: str
    content_id: str | None = None
    inline: bool = False


@dataclass(frozen=True)
class InboundEmail:
    """Parsed helpdesk notification (already decoded by the email provider)."""

    sender: str
    recipients: tuple[str, ...]
    subject: str
    text: str
    html: str
    headers: dict[str, str]
    parts: tuple[EmailPart, ...] = ()
    explicit_chat_address: str | None = None

    @property
    def message_id(self) -> str | None:
        return self.header("Message-ID")

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None
