"""Helpdesk capability consumed by the bridge.

Only four operations cross this boundary; everything vendor-specific stays in
the concrete client.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Sequence

from wabridge.domain.models import EmailAttachment


class ReplyChannel(str, Enum):
    """How a message is appended to an existing case."""

    MAIL = "MAIL"
    MESSENGER = "MESSENGER"
    NOTE = "NOTE"

    @classmethod
    def parse_order(cls, names: Sequence[str]) -> tuple["ReplyChannel", ...]:
        """Ordered, de-duplicated channels; unknown names are ignored."""
        order: list[ReplyChannel] = []
        for name in names:
            try:
                channel = cls(name.strip().upper())
            except ValueError:
                continue
            if channel not in order:
                order.append(channel)
        return tuple(order) or (cls.MAIL, cls.NOTE)


class Attribution(str, Enum):
    """Who a message appended through the API is shown as coming from."""

    REQUESTER = "requester"
    AGENT = "agent"


@dataclass(frozen=True)
class AppendAttempt:
    channel: ReplyChannel
    ok: bool
    detail: str = ""


@dataclass(frozen=True)
class AppendResult:
    """Outcome of trying each configured reply channel in order.

    `channel` is the one that succeeded; None means every strategy failed.
    """

    channel: ReplyChannel | None
    attempts: tuple[AppendAttempt, ...]

    @property
    def ok(self) -> bool:
        return self.channel is not None


class HelpdeskClient(Protocol):
    def search_cases_by_identity(
        self, identity_address: str, open_states_only: bool = True
    ) -> str | None:
        """Most recently updated case requested by this identity, if any."""
        ...

    def create_case(
        self,
        subject: str,
        requester_identity: str,
        initial_body: str,
        *,
        requester_id: str | None = None,
    ) -> str:
        """Create a case synchronously and return its id.

        `requester_id` skips the requester lookup when the caller already
        holds the id returned by `find_or_create_user`.
        """
        ...

    def append_public_message(
        self,
        case_id: str,
        body: str,
        *,
        requester_identity: str,
        attachments: Sequence[EmailAttachment] = (),
    ) -> AppendResult:
        ...

    def find_or_create_user(self, email: str, display_name: str) -> str:
        ...
