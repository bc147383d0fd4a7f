"""Identity codec: chat address <-> helpdesk pseudo identity.

A chat participant is known to the helpdesk as ``<digits>@<domain>``. The local
part is exactly the normalized digits, which makes the mapping reversible and
collision-free.
"""

from __future__ import annotations

import re
from email.utils import parseaddr

from wabridge.errors import InvalidAddress

CHANNEL_PREFIX = "whatsapp"
MIN_DIGITS = 6

_PREFIX_RE = re.compile(r"^\s*[a-z][a-z0-9_-]*:", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")
_DIGITS_ONLY = re.compile(r"^\d+$")


def _digits(raw: str) -> str:
    """Strip channel prefix, punctuation and international call prefix."""
    without_prefix = _PREFIX_RE.sub("", raw or "", count=1)
    # JIDs such as 447911123456@s.whatsapp.net carry the number in the local part
    without_prefix = without_prefix.split("@", 1)[0]
    digits = _NON_DIGITS.sub("", without_prefix)
    stripped = without_prefix.strip()
    if stripped.startswith("00") and not stripped.startswith("+"):
        digits = digits[2:]
    return digits


def normalize_chat_address(raw: str) -> str:
    """Return the canonical ``whatsapp:+<digits>`` form.

    Raises:
        InvalidAddress: If fewer than `MIN_DIGITS` digits remain.
    """
    digits = _digits(raw)
    if len(digits) < MIN_DIGITS:
        raise InvalidAddress("chat address has too few digits")
    return f"{CHANNEL_PREFIX}:+{digits}"


def phone_digits(chat_address: str) -> str:
    """Digits of a chat address (normalizing first)."""
    return normalize_chat_address(chat_address).split("+", 1)[1]


def to_pseudo_identity(chat_address: str, domain: str) -> str:
    """Derive the helpdesk-side identity for a chat address.

    Raises:
        InvalidAddress: If fewer than `MIN_DIGITS` digits remain.
    """
    return f"{phone_digits(chat_address)}@{domain.strip().lower()}"


def from_pseudo_identity(address: str, domain: str) -> str | None:
    """Recognize a pseudo identity and return its chat address.

    Accepts bare addresses and ``Name <addr>`` forms. Returns None for anything
    that is not ``<digits>@<domain>``; never raises.
    """
    if not address:
        return None
    _, parsed = parseaddr(address)
    candidate = (parsed or address).strip()
    local, sep, host = candidate.rpartition("@")
    if not sep:
        return None
    if host.strip().lower() != domain.strip().lower():
        return None
    if not _DIGITS_ONLY.match(local) or len(local) < MIN_DIGITS:
        return None
    return f"{CHANNEL_PREFIX}:+{local}"


def display_number(chat_address: str) -> str:
    """Human-facing form used as email display name: ``+<digits>``."""
    return f"+{phone_digits(chat_address)}"
