"""Environment-driven settings.

All configuration is read once at startup by `load_settings()`. Secrets stay
in the environment; nothing here is logged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

MIB = 1024 * 1024

_REPLY_ATTRIBUTIONS = {"requester", "agent"}
_INBOUND_DELIVERY_MODES = {"email", "api"}
_THREAD_STORE_BACKENDS = {"file", "postgres"}


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_seconds_tuple(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if value is None:
        return default
    seconds = []
    for item in _as_csv_tuple(value):
        try:
            parsed = int(item)
        except ValueError:
            continue
        if parsed >= 0:
            seconds.append(parsed)
    return tuple(seconds)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _require(name: str, value: str) -> str:
    if not value:
        raise RuntimeError(
            f"Missing required environment variable: {name}. "
            f"Set it in your .env / deployment config before starting."
        )
    return value


@dataclass(frozen=True)
class MediaLimits:
    """Size and count caps enforced by the media relay."""

    email_total_bytes: int = 20 * MIB
    chat_file_bytes: int = 5 * MIB
    chat_max_attachments: int = 10


@dataclass(frozen=True)
class Settings:
    public_base_url: str
    pseudo_identity_domain: str
    helpdesk_inbox: str
    webhook_secret: str = ""
    webhook_auth_disabled: bool = False

    helpdesk_base_url: str = ""
    helpdesk_username: str = ""
    helpdesk_password: str = ""
    helpdesk_create_cases: bool = False
    helpdesk_reply_attribution: str = "requester"
    helpdesk_reply_channels: tuple[str, ...] = ("MAIL", "NOTE")
    helpdesk_system_domains: tuple[str, ...] = ()
    inbound_delivery: str = "email"

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_from: str = ""

    sendgrid_api_key: str = ""
    outbound_sender_allowlist: tuple[str, ...] = ()
    email_subject_template: str = "WhatsApp conversation with {chat_address}"
    case_ref_pattern: str = r"\[#(\d+)\]"

    thread_store_backend: str = "file"
    thread_store_path: str = "./data/threads.json"
    thread_store_max_failures: int = 3
    pending_completion_delays: tuple[int, ...] = (5, 30)

    media_ttl_seconds: int = 1800
    media_sweep_interval_seconds: int = 60
    media_limits: MediaLimits = field(default_factory=MediaLimits)

    chat_max_chars: int = 1600
    http_timeout_seconds: int = 10

    @property
    def helpdesk_enabled(self) -> bool:
        return bool(self.helpdesk_base_url and self.helpdesk_username and self.helpdesk_password)

    @property
    def sanitized_max_chars(self) -> int:
        """Body cap kept below the chat transport's hard limit."""
        return max(self.chat_max_chars - 200, 100)

    def is_allowlisted_sender(self, address: str) -> bool:
        normalized = address.strip().lower()
        return any(normalized == allowed.lower() for allowed in self.outbound_sender_allowlist)


def load_settings() -> Settings:
    """Build `Settings` from the process environment.

    Raises:
        RuntimeError: If a required variable is missing.
    """
    helpdesk_base_url = os.getenv("HELPDESK_BASE_URL", "").strip().rstrip("/")
    system_domains = _as_csv_tuple(os.getenv("HELPDESK_SYSTEM_DOMAINS"))
    if not system_domains and helpdesk_base_url:
        host = urlparse(helpdesk_base_url).hostname or ""
        system_domains = (host,) if host else ()

    webhook_auth_disabled = _as_bool(os.getenv("WEBHOOK_AUTH_DISABLED"), False)
    webhook_secret = os.getenv("WEBHOOK_SECRET", "").strip()
    if not webhook_auth_disabled:
        _require("WEBHOOK_SECRET", webhook_secret)

    defaults = MediaLimits()
    media_limits = MediaLimits(
        email_total_bytes=_as_int(os.getenv("MEDIA_EMAIL_TOTAL_BYTES"), defaults.email_total_bytes),
        chat_file_bytes=_as_int(os.getenv("MEDIA_CHAT_FILE_BYTES"), defaults.chat_file_bytes),
        chat_max_attachments=_as_int(
            os.getenv("MEDIA_CHAT_MAX_ATTACHMENTS"), defaults.chat_max_attachments
        ),
    )

    return Settings(
        public_base_url=_require(
            "PUBLIC_BASE_URL", os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")
        ),
        pseudo_identity_domain=_require(
            "PSEUDO_IDENTITY_DOMAIN", os.getenv("PSEUDO_IDENTITY_DOMAIN", "").strip().lower()
        ),
        helpdesk_inbox=_require("HELPDESK_INBOX", os.getenv("HELPDESK_INBOX", "").strip()),
        webhook_secret=webhook_secret,
        webhook_auth_disabled=webhook_auth_disabled,
        helpdesk_base_url=helpdesk_base_url,
        helpdesk_username=os.getenv("HELPDESK_USERNAME", "").strip(),
        helpdesk_password=os.getenv("HELPDESK_PASSWORD", ""),
        helpdesk_create_cases=_as_bool(os.getenv("HELPDESK_CREATE_CASES"), False),
        helpdesk_reply_attribution=_normalize_mode(
            os.getenv("HELPDESK_REPLY_ATTRIBUTION"),
            default="requester",
            allowed=_REPLY_ATTRIBUTIONS,
        ),
        helpdesk_reply_channels=tuple(
            c.upper() for c in _as_csv_tuple(os.getenv("HELPDESK_REPLY_CHANNELS"))
        )
        or ("MAIL", "NOTE"),
        helpdesk_system_domains=tuple(d.lower() for d in system_domains),
        inbound_delivery=_normalize_mode(
            os.getenv("INBOUND_DELIVERY"), default="email", allowed=_INBOUND_DELIVERY_MODES
        ),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", "").strip(),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", "").strip(),
        twilio_whatsapp_from=os.getenv("TWILIO_WHATSAPP_FROM", "").strip(),
        sendgrid_api_key=os.getenv("SENDGRID_API_KEY", "").strip(),
        outbound_sender_allowlist=_as_csv_tuple(os.getenv("OUTBOUND_SENDER_ALLOWLIST")),
        email_subject_template=os.getenv(
            "EMAIL_SUBJECT_TEMPLATE", "WhatsApp conversation with {chat_address}"
        ),
        case_ref_pattern=os.getenv("CASE_REF_PATTERN", r"\[#(\d+)\]"),
        thread_store_backend=_normalize_mode(
            os.getenv("THREAD_STORE_BACKEND"), default="file", allowed=_THREAD_STORE_BACKENDS
        ),
        thread_store_path=os.getenv("THREAD_STORE_PATH", "./data/threads.json"),
        thread_store_max_failures=_as_int(os.getenv("THREAD_STORE_MAX_FAILURES"), 3),
        pending_completion_delays=_as_seconds_tuple(
            os.getenv("PENDING_COMPLETION_DELAYS"), (5, 30)
        ),
        media_ttl_seconds=_as_int(os.getenv("MEDIA_TTL_SECONDS"), 1800),
        media_sweep_interval_seconds=_as_int(os.getenv("MEDIA_SWEEP_INTERVAL_SECONDS"), 60),
        media_limits=media_limits,
        chat_max_chars=_as_int(os.getenv("CHAT_MAX_CHARS"), 1600),
        http_timeout_seconds=_as_int(os.getenv("HTTP_TIMEOUT_SECONDS"), 10),
    )
