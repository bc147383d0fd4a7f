"""Twilio WhatsApp adapter - validate and normalize webhook payloads.

Twilio posts form-encoded fields (``From``, ``Body``, ``NumMedia``,
``MediaUrl0``...). JSON payloads relayed by proxies use other names for the
same values, so every field is read through an ordered list of extraction
rules; the first rule that yields a non-empty value wins.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from wabridge.domain.models import InboundEvent, MediaRef
from wabridge.errors import InvalidPayloadError

Payload = Mapping[str, Any]
Rule = Callable[[Payload], Any]

# Twilio never sends more than 10 media items per message
MAX_REPORTED_MEDIA = 10


def _field(name: str) -> Rule:
    def rule(payload: Payload) -> Any:
        return payload.get(name)

    return rule


def _nested(*path: str) -> Rule:
    def rule(payload: Payload) -> Any:
        node: Any = payload
        for key in path:
            if not isinstance(node, Mapping):
                return None
            node = node.get(key)
        return node

    return rule


def _wa_id(payload: Payload) -> Any:
    wa_id = payload.get("WaId")
    return f"whatsapp:+{wa_id}" if wa_id else None


# Priority order is part of the webhook contract
SENDER_RULES: tuple[Rule, ...] = (
    _field("From"),
    _field("from"),
    _field("sender"),
    _wa_id,
    _nested("data", "key", "remoteJid"),
)

TEXT_RULES: tuple[Rule, ...] = (
    _field("Body"),
    _field("body"),
    _field("text"),
    _field("message"),
    _field("caption"),
)

MESSAGE_ID_RULES: tuple[Rule, ...] = (
    _field("MessageSid"),
    _field("SmsMessageSid"),
    _field("message_id"),
    _nested("data", "key", "id"),
)

PROFILE_NAME_RULES: tuple[Rule, ...] = (
    _field("ProfileName"),
    _field("profile_name"),
    _nested("data", "pushName"),
)


def first_match(payload: Payload, rules: tuple[Rule, ...]) -> str | None:
    """Apply rules in order and return the first non-empty string value."""
    for rule in rules:
        value = rule(payload)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _reported_media_count(payload: Payload) -> int:
    raw = payload.get("NumMedia")
    try:
        count = int(raw) if raw is not None else 0
    except (TypeError, ValueError):
        raise InvalidPayloadError("NumMedia is not an integer") from None
    if count < 0:
        raise InvalidPayloadError("NumMedia is negative")
    return min(count, MAX_REPORTED_MEDIA)


def extract_media(payload: Payload) -> tuple[MediaRef, ...]:
    """Media items, bounded by the transport-reported count.

    Form payloads enumerate ``MediaUrlN``/``MediaContentTypeN``; JSON payloads
    may carry a ``media`` list of ``{url, content_type}`` objects instead.
    """
    refs: list[MediaRef] = []
    for i in range(_reported_media_count(payload)):
        url = payload.get(f"MediaUrl{i}")
        if not isinstance(url, str) or not url:
            continue
        content_type = payload.get(f"MediaContentType{i}") or "application/octet-stream"
        refs.append(MediaRef(url=url, content_type=str(content_type)))
    if refs:
        return tuple(refs)

    items = payload.get("media")
    if isinstance(items, list):
        for item in items[:MAX_REPORTED_MEDIA]:
            if isinstance(item, Mapping) and isinstance(item.get("url"), str):
                refs.append(
                    MediaRef(
                        url=item["url"],
                        content_type=str(
                            item.get("content_type")
                            or item.get("contentType")
                            or "application/octet-stream"
                        ),
                    )
                )
    return tuple(refs)


def normalize(payload: Payload) -> InboundEvent:
    """Normalize a chat webhook payload into an InboundEvent.

    The sender is kept raw; the inbound handler normalizes it so that a bad
    address is answered with 200 rather than 400.

    Raises:
        InvalidPayloadError: If there is no sender, or neither text nor media.
    """
    if not isinstance(payload, Mapping):
        raise InvalidPayloadError("payload is not an object")

    sender = first_match(payload, SENDER_RULES)
    if sender is None:
        raise InvalidPayloadError("missing sender")

    media = extract_media(payload)
    text = first_match(payload, TEXT_RULES) or ""
    if not text and not media:
        raise InvalidPayloadError("message has neither text nor media")

    return InboundEvent(
        chat_address=sender,
        text=text,
        media=media,
        message_id=first_match(payload, MESSAGE_ID_RULES),
        profile_name=first_match(payload, PROFILE_NAME_RULES),
    )
