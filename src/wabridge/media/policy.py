"""Media size and count caps.

Each cap is enforced item by item: an item that does not fit is skipped and
logged, and the rest of the message still goes out.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from wabridge.config import MediaLimits
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)


@dataclass
class EmailBudget:
    """Cumulative byte budget for attachments of one outgoing email."""

    limit: int
    used: int = 0
    skipped: list[str] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    def admit(self, size: int, label: str) -> bool:
        if size > self.remaining:
            self.skipped.append(label)
            logger.warning(
                "attachment skipped: email byte budget exhausted",
                extra={
                    "extra_fields": safe_log_context(
                        size=size, used=self.used, limit=self.limit
                    )
                },
            )
            return False
        self.used += size
        return True


@dataclass
class ChatAttachmentCap:
    """Per-file size cap and per-message count cap toward the chat transport."""

    file_bytes: int
    max_count: int
    accepted: int = 0
    skipped: list[str] = field(default_factory=list)

    @property
    def full(self) -> bool:
        return self.accepted >= self.max_count

    def admit(self, size: int, label: str) -> bool:
        if self.full:
            self.skipped.append(label)
            logger.warning(
                "attachment skipped: chat attachment count limit reached",
                extra={"extra_fields": safe_log_context(max_count=self.max_count)},
            )
            return False
        if size > self.file_bytes:
            self.skipped.append(label)
            logger.warning(
                "attachment skipped: exceeds chat per-file limit",
                extra={"extra_fields": safe_log_context(size=size, limit=self.file_bytes)},
            )
            return False
        self.accepted += 1
        return True


def email_budget(limits: MediaLimits) -> EmailBudget:
    return EmailBudget(limit=limits.email_total_bytes)


def chat_cap(limits: MediaLimits) -> ChatAttachmentCap:
    return ChatAttachmentCap(
        file_bytes=limits.chat_file_bytes, max_count=limits.chat_max_attachments
    )
