"""Tests for SendGrid Inbound Parse normalization."""

import json

import pytest

from wabridge.errors import InvalidPayloadError
from wabridge.mail.inbound_parse import parse_inbound_email

RAW_HEADERS = (
    "Message-ID: <n1@acme.kayako.com>\r\n"
    "From: Agent Smith <agent@acme.example.com>\r\n"
    "To: 447911123456@wa.example.com\r\n"
    "Subject: Re: WhatsApp conversation with +447911123456 [#1001]\r\n"
    "Received: first\r\n"
    "Received: second\r\n"
)


def _fields(**overrides):
    fields = {
        "headers": RAW_HEADERS,
        "from": "Agent Smith <agent@acme.example.com>",
        "to": "447911123456@wa.example.com",
        "subject": "Re: WhatsApp conversation with +447911123456 [#1001]",
        "text": "We've shipped it",
        "html": "<p>We've shipped it</p>",
        "envelope": json.dumps(
            {"to": ["447911123456@wa.example.com"], "from": "agent@acme.example.com"}
        ),
    }
    fields.update(overrides)
    return fields


class TestParseInboundEmail:
    """Tests for parse_inbound_email()."""

    def test_basic_notification(self):
        email = parse_inbound_email(_fields())
        assert email.sender == "agent@acme.example.com"
        assert email.recipients == ("447911123456@wa.example.com",)
        assert email.subject.endswith("[#1001]")
        assert email.text == "We've shipped it"
        assert email.html == "<p>We've shipped it</p>"
        assert email.message_id == "<n1@acme.kayako.com>"
        assert email.parts == ()
        assert email.explicit_chat_address is None

    def test_first_header_occurrence_wins(self):
        assert parse_inbound_email(_fields()).header("received") == "first"

    def test_envelope_then_to_field_deduplicated(self):
        email = parse_inbound_email(
            _fields(
                to='"Customer" <447911123456@WA.example.com>, other@example.com',
                envelope=json.dumps({"to": "447911123456@wa.example.com"}),
            )
        )
        assert email.recipients == ("447911123456@wa.example.com", "other@example.com")

    def test_sender_from_headers_when_field_missing(self):
        fields = _fields()
        del fields["from"]
        assert parse_inbound_email(fields).sender == "agent@acme.example.com"

    def test_missing_sender_raises(self):
        with pytest.raises(InvalidPayloadError, match="sender"):
            parse_inbound_email({"text": "hi"})

    def test_bad_envelope_raises(self):
        with pytest.raises(InvalidPayloadError, match="envelope"):
            parse_inbound_email(_fields(envelope="{broken"))

    def test_explicit_recipient_field(self):
        email = parse_inbound_email(_fields(whatsapp_to=" +447911123456 "))
        assert email.explicit_chat_address == "+447911123456"

    def test_explicit_recipient_header(self):
        headers = RAW_HEADERS + "X-WABridge-To: whatsapp:+15551234567\r\n"
        email = parse_inbound_email(_fields(headers=headers))
        assert email.explicit_chat_address == "whatsapp:+15551234567"


class TestAttachments:
    """File parts and attachment-info metadata."""

    def test_parts_ordered_and_inline_flagged(self):
        files = {
            "attachment10": ("j.txt", "text/plain", b"ten"),
            "attachment2": ("b.pdf", "application/pdf", b"two"),
            "attachment1": ("logo.png", "image/png", b"one"),
        }
        info = {
            "attachment1": {"filename": "logo.png", "type": "image/png", "content-id": "logo@x"},
            "attachment2": {"filename": "invoice.pdf", "type": "application/pdf"},
        }
        email = parse_inbound_email(_fields(**{"attachment-info": json.dumps(info)}), files)

        assert [p.content for p in email.parts] == [b"one", b"two", b"ten"]
        assert email.parts[0].inline is True
        assert email.parts[0].content_id == "logo@x"
        assert email.parts[1].inline is False
        assert email.parts[1].filename == "invoice.pdf"
        assert email.parts[2].filename == "j.txt"

    def test_inline_disposition(self):
        files = {"attachment1": ("a.png", "image/png", b"x")}
        info = {"attachment1": {"disposition": "inline"}}
        email = parse_inbound_email(_fields(**{"attachment-info": json.dumps(info)}), files)
        assert email.parts[0].inline is True

    def test_missing_metadata_defaults(self):
        files = {"attachment1": ("", "", b"x")}
        part = parse_inbound_email(_fields(), files).parts[0]
        assert part.filename == "attachment1"
        assert part.content_type == "application/octet-stream"
