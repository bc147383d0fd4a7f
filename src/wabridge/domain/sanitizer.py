"""Reduce an agent's email reply to a clean chat message.

`sanitize()` is pure and total. The steps run in a fixed order: quoted lines
are dropped before the "wrote:" cut (quoted history can contain its own
attribution lines) and every truncation runs before whitespace is collapsed
(collapsing first can glue a signature separator onto body text).
"""

from __future__ import annotations

import re

from bs4 import BeautifulSoup

NO_TEXT_PLACEHOLDER = "(no text)"
ELLIPSIS = "…"
DEFAULT_MAX_LENGTH = 1400

_QUOTE_LINE = re.compile(r"^\s*>")

_ATTRIBUTION_LINE = re.compile(
    r"^\s*(?:On\s.+\bwrote|Le\s.+\ba\s+écrit|Am\s.+\bschrieb)\s*:\s*$",
    re.IGNORECASE,
)
_ATTRIBUTION_START = re.compile(r"^\s*(?:On|Le|Am)\s\S.*$", re.IGNORECASE)
_ATTRIBUTION_END = re.compile(r"^\s*.*\b(?:wrote|a\s+écrit|schrieb)\s*:\s*$", re.IGNORECASE)

_FORWARD_MARKER = re.compile(
    r"^\s*-*\s*(?:Original Message|Forwarded message|Begin forwarded message)\b",
    re.IGNORECASE,
)
_HEADER_FROM = re.compile(r"^\s*\*?(?:From|De|Von)\s*:\*?\s", re.IGNORECASE)
_HEADER_OTHER = re.compile(r"^\s*\*?(?:Sent|Date|To|Subject|Cc|Envoyé|Gesendet)\s*:\*?", re.IGNORECASE)
_HEADER_WINDOW = 4

_HORIZONTAL_RULE = re.compile(r"[-_—–=]{10,}")
_SIGNATURE_DELIMITER = re.compile(r"^--\s?$")

_CONTACT_FIELD = re.compile(
    r"^\s*(?:"
    r"(?:tel|telephone|phone|mobile|mob|cell|fax|e-?mail|web|website)\s*[:.|]"
    r"|[tmew]\s*:\s*\S"
    r"|www\.\S"
    r")",
    re.IGNORECASE,
)
_CONTACT_LINE_MAX = 80

LEGAL_PHRASES = (
    "this email and any attachments",
    "this e-mail and any attachments",
    "this message is confidential",
    "this email is confidential",
    "confidentiality notice",
    "intended solely for",
    "intended only for the use",
    "received this email in error",
    "received this e-mail in error",
    "received this message in error",
    "registered address",
    "registered office",
    "registered in england",
    "company registration number",
    "company number",
    "disclaimer:",
)

_IMAGE_PLACEHOLDER = re.compile(
    r"\[(?:image|cid|inline image|inline-image|bild)\s*:[^\]]*\]|\[image\]",
    re.IGNORECASE,
)
_LEADING_PLACEHOLDERS = re.compile(
    r"^\s*(?:(?:" + _IMAGE_PLACEHOLDER.pattern + r")\s*)+", re.IGNORECASE
)


def _drop_quoted(lines: list[str]) -> list[str]:
    return [line for line in lines if not _QUOTE_LINE.match(line)]


def _cut_at(lines: list[str], index: int | None) -> list[str]:
    return lines if index is None else lines[:index]


def _find_attribution(lines: list[str]) -> int | None:
    for i, line in enumerate(lines):
        if _ATTRIBUTION_LINE.match(line):
            return i
        # Clients wrap long attributions: "On Mon, ... <a@b.c>" / "wrote:"
        if (
            _ATTRIBUTION_START.match(line)
            and i + 1 < len(lines)
            and _ATTRIBUTION_END.match(lines[i + 1])
            and len(lines[i + 1].strip()) < 60
        ):
            return i
    return None


def _find_forward_header(lines: list[str]) -> int | None:
    for i, line in enumerate(lines):
        if _FORWARD_MARKER.match(line):
            return i
        if _HEADER_FROM.match(line):
            window = lines[i + 1 : i + 1 + _HEADER_WINDOW]
            if any(_HEADER_OTHER.match(candidate) for candidate in window):
                return i
    return None


def _unmarked(line: str) -> str:
    return _LEADING_PLACEHOLDERS.sub("", line)


def _find_rule(lines: list[str]) -> int | None:
    for i, line in enumerate(lines):
        if _HORIZONTAL_RULE.search(line) or _SIGNATURE_DELIMITER.match(_unmarked(line)):
            return i
    return None


def _find_contact_field(lines: list[str]) -> int | None:
    for i, line in enumerate(lines):
        bare = _unmarked(line)
        if len(bare.strip()) <= _CONTACT_LINE_MAX and _CONTACT_FIELD.match(bare):
            return i
    return None


def _find_legal(lines: list[str]) -> int | None:
    for i, line in enumerate(lines):
        lowered = line.lower()
        if any(phrase in lowered for phrase in LEGAL_PHRASES):
            return i
    return None


def _strip_image_placeholders(lines: list[str]) -> list[str]:
    result = []
    for line in lines:
        cleaned = _IMAGE_PLACEHOLDER.sub("", line)
        # A line that held only a placeholder disappears entirely
        if cleaned.strip() or not line.strip():
            result.append(cleaned)
    return result


def _collapse_whitespace(lines: list[str]) -> str:
    text = "\n".join(line.rstrip() for line in lines)
    text = re.sub(r"\n{4,}", "\n\n\n", text)
    return text.strip()


def _cap_length(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    head = text[: max_length - len(ELLIPSIS)]
    if not text[len(head)].isspace():
        # Back off to the last word boundary, if the head has one
        boundary = max(head.rfind(" "), head.rfind("\n"))
        if boundary > 0:
            head = head[:boundary]
    return head.rstrip() + ELLIPSIS


def _clean(text: str, max_length: int) -> str:
    lines = text.split("\n")

    lines = _drop_quoted(lines)
    lines = _cut_at(lines, _find_attribution(lines))
    lines = _cut_at(lines, _find_forward_header(lines))
    lines = _cut_at(lines, _find_rule(lines))
    lines = _cut_at(lines, _find_contact_field(lines))
    lines = _cut_at(lines, _find_legal(lines))
    lines = _strip_image_placeholders(lines)

    return _cap_length(_collapse_whitespace(lines), max_length)


def sanitize(raw_text: str | None, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Strip quoted history, signatures and boilerplate from a reply.

    Never returns an empty string: empty results become `NO_TEXT_PLACEHOLDER`.
    The result is a fixed point, so sanitizing it again changes nothing.
    """
    text = (raw_text or "").replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _clean(text, max_length)
    # Placeholder stripping and the cap can expose a new cut point. Every
    # pass that changes the text shortens it, so this terminates.
    while cleaned:
        again = _clean(cleaned, max_length)
        if again == cleaned:
            break
        cleaned = again
    return cleaned or NO_TEXT_PLACEHOLDER


_BLOCK_TAGS = ("p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "table", "ul", "ol")
_QUOTE_SELECTORS = (
    "blockquote",
    "div.gmail_quote",
    "div.gmail_extra",
    "div.moz-cite-prefix",
    "div#divRplyFwdMsg",
    "div#appendonsend",
    "div.yahoo_quoted",
)


def html_to_text(html: str | None) -> str:
    """Render rich email content as plain text for the chat channel.

    Quoted history containers are removed before rendering.
    """
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "head", "title", "meta"]):
        tag.decompose()
    for selector in _QUOTE_SELECTORS:
        for tag in soup.select(selector):
            tag.decompose()

    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_after("\n")

    text = soup.get_text()
    lines = [re.sub(r"[ \t\xa0]+", " ", line).strip() for line in text.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()
