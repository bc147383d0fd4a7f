"""SendGrid Inbound Parse webhook - normalize the multipart form.

SendGrid posts already-decoded fields: ``headers`` (raw header block),
``from``, ``to``, ``subject``, ``text``, ``html``, ``envelope`` (JSON),
``attachments`` (count), ``attachment-info`` (JSON) and one file part per
attachment (``attachment1``...).
"""

from __future__ import annotations

import json
from email.parser import HeaderParser
from email.utils import getaddresses, parseaddr
from typing import Any, Mapping

from wabridge.domain.models import EmailPart, InboundEmail
from wabridge.errors import InvalidPayloadError

EXPLICIT_RECIPIENT_FIELD = "whatsapp_to"
EXPLICIT_RECIPIENT_HEADER = "X-WABridge-To"

# (filename, content_type, content) as read from the multipart upload
UploadedFile = tuple[str, str, bytes]


def _parse_headers(raw: str) -> dict[str, str]:
    message = HeaderParser().parsestr(raw or "")
    headers: dict[str, str] = {}
    for name, value in message.items():
        # First occurrence wins, matching how mail clients display them
        headers.setdefault(name, str(value).strip())
    return headers


def _parse_json_field(fields: Mapping[str, str], name: str) -> Any:
    raw = fields.get(name)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        raise InvalidPayloadError(f"{name} is not valid JSON") from None


def _recipients(fields: Mapping[str, str], headers: dict[str, str]) -> tuple[str, ...]:
    """Envelope recipients first, then addresses from the To header."""
    ordered: list[str] = []
    envelope = _parse_json_field(fields, "envelope")
    if isinstance(envelope, dict):
        to = envelope.get("to") or []
        if isinstance(to, str):
            to = [to]
        ordered.extend(str(addr) for addr in to)

    to_field = fields.get("to") or headers.get("To") or ""
    ordered.extend(addr for _, addr in getaddresses([to_field]) if addr)

    seen: set[str] = set()
    unique = []
    for addr in ordered:
        key = addr.strip().lower()
        if key and key not in seen:
            seen.add(key)
            unique.append(addr.strip())
    return tuple(unique)


def _parts(
    fields: Mapping[str, str], files: Mapping[str, UploadedFile]
) -> tuple[EmailPart, ...]:
    info = _parse_json_field(fields, "attachment-info") or {}
    if not isinstance(info, dict):
        info = {}

    parts = []
    for key in sorted(files, key=lambda k: (len(k), k)):
        filename, content_type, content = files[key]
        meta = info.get(key) or {}
        content_id = meta.get("content-id") or None
        parts.append(
            EmailPart(
                content=content,
                filename=meta.get("filename") or filename or key,
                content_type=meta.get("type") or content_type or "application/octet-stream",
                content_id=content_id,
                inline=bool(content_id) or meta.get("disposition") == "inline",
            )
        )
    return tuple(parts)


def parse_inbound_email(
    fields: Mapping[str, str], files: Mapping[str, UploadedFile] | None = None
) -> InboundEmail:
    """Build an InboundEmail from Inbound Parse form fields and file parts.

    Raises:
        InvalidPayloadError: If the sender is missing or a JSON field is malformed.
    """
    headers = _parse_headers(fields.get("headers", ""))
    _, sender = parseaddr(fields.get("from") or headers.get("From") or "")
    if not sender:
        raise InvalidPayloadError("missing sender")

    explicit = (fields.get(EXPLICIT_RECIPIENT_FIELD) or "").strip() or None
    if explicit is None:
        for name, value in headers.items():
            if name.lower() == EXPLICIT_RECIPIENT_HEADER.lower() and value:
                explicit = value
                break

    return InboundEmail(
        sender=sender,
        recipients=_recipients(fields, headers),
        subject=fields.get("subject") or headers.get("Subject") or "",
        text=fields.get("text") or "",
        html=fields.get("html") or "",
        headers=headers,
        parts=_parts(fields, files or {}),
        explicit_chat_address=explicit,
    )
