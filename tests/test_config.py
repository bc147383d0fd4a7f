"""Tests for load_settings()."""

import os
from unittest.mock import patch

import pytest

from wabridge.config import MIB, load_settings

BASE_ENV = {
    "PUBLIC_BASE_URL": "https://bridge.example.com/",
    "PSEUDO_IDENTITY_DOMAIN": "WA.Example.com",
    "HELPDESK_INBOX": "support@acme.example.com",
    "WEBHOOK_SECRET": "s3cret",
}


def _load(**extra):
    env = {**BASE_ENV, **extra}
    with patch.dict(os.environ, env, clear=True):
        return load_settings()


class TestRequiredVariables:
    @pytest.mark.parametrize(
        "missing", ["PUBLIC_BASE_URL", "PSEUDO_IDENTITY_DOMAIN", "HELPDESK_INBOX", "WEBHOOK_SECRET"]
    )
    def test_missing_required_raises(self, missing):
        env = {k: v for k, v in BASE_ENV.items() if k != missing}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(RuntimeError, match=missing):
                load_settings()

    def test_secret_optional_when_auth_disabled(self):
        env = {k: v for k, v in BASE_ENV.items() if k != "WEBHOOK_SECRET"}
        env["WEBHOOK_AUTH_DISABLED"] = "true"
        with patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        assert settings.webhook_auth_disabled is True
        assert settings.webhook_secret == ""


class TestDefaults:
    def test_defaults(self):
        settings = _load()
        assert settings.public_base_url == "https://bridge.example.com"
        assert settings.pseudo_identity_domain == "wa.example.com"
        assert settings.helpdesk_enabled is False
        assert settings.inbound_delivery == "email"
        assert settings.helpdesk_reply_attribution == "requester"
        assert settings.helpdesk_reply_channels == ("MAIL", "NOTE")
        assert settings.thread_store_backend == "file"
        assert settings.thread_store_max_failures == 3
        assert settings.pending_completion_delays == (5, 30)
        assert settings.media_limits.email_total_bytes == 20 * MIB
        assert settings.media_limits.chat_max_attachments == 10
        assert settings.chat_max_chars == 1600
        assert settings.sanitized_max_chars == 1400

    def test_system_domain_derived_from_helpdesk_url(self):
        settings = _load(
            HELPDESK_BASE_URL="https://Acme.Kayako.com/",
            HELPDESK_USERNAME="bot@acme.example.com",
            HELPDESK_PASSWORD="pw",
        )
        assert settings.helpdesk_base_url == "https://Acme.Kayako.com"
        assert settings.helpdesk_system_domains == ("acme.kayako.com",)
        assert settings.helpdesk_enabled is True


class TestOverrides:
    def test_csv_lists(self):
        settings = _load(
            OUTBOUND_SENDER_ALLOWLIST=" agent@acme.example.com , ,lead@acme.example.com",
            HELPDESK_REPLY_CHANNELS="messenger,note",
            HELPDESK_SYSTEM_DOMAINS="Mail.Acme.com",
        )
        assert settings.outbound_sender_allowlist == (
            "agent@acme.example.com",
            "lead@acme.example.com",
        )
        assert settings.helpdesk_reply_channels == ("MESSENGER", "NOTE")
        assert settings.helpdesk_system_domains == ("mail.acme.com",)

    def test_invalid_mode_falls_back_to_default(self):
        settings = _load(INBOUND_DELIVERY="carrier-pigeon", THREAD_STORE_BACKEND="redis")
        assert settings.inbound_delivery == "email"
        assert settings.thread_store_backend == "file"

    def test_invalid_int_falls_back_to_default(self):
        assert _load(CHAT_MAX_CHARS="lots").chat_max_chars == 1600

    @pytest.mark.parametrize("value,expected", [("yes", True), ("0", False), ("maybe", False)])
    def test_bool_parsing(self, value, expected):
        assert _load(HELPDESK_CREATE_CASES=value).helpdesk_create_cases is expected

    @pytest.mark.parametrize(
        "value,expected", [("10, 60", (10, 60)), ("", ()), ("5,soon,-1", (5,))]
    )
    def test_pending_completion_delays(self, value, expected):
        assert _load(PENDING_COMPLETION_DELAYS=value).pending_completion_delays == expected

    def test_media_limits(self):
        settings = _load(MEDIA_CHAT_MAX_ATTACHMENTS="3", MEDIA_CHAT_FILE_BYTES="1024")
        assert settings.media_limits.chat_max_attachments == 3
        assert settings.media_limits.chat_file_bytes == 1024


class TestAllowlist:
    def test_case_insensitive_exact_match(self):
        settings = _load(OUTBOUND_SENDER_ALLOWLIST="Agent@Acme.example.com")
        assert settings.is_allowlisted_sender(" agent@acme.example.com ")
        assert not settings.is_allowlisted_sender("other@acme.example.com")
