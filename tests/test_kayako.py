"""Tests for KayakoClient against a mocked requests session."""

from unittest.mock import MagicMock

import pytest
import requests

from tests.fakes import PSEUDO_DOMAIN, MemoryThreadStore
from wabridge.domain.case_resolver import CaseResolver
from wabridge.domain.models import CaseSource, EmailAttachment
from wabridge.errors import HelpdeskApiError
from wabridge.helpdesk.base import Attribution, ReplyChannel
from wabridge.helpdesk.kayako import KayakoClient

BASE = "https://acme.kayako.com"
API = f"{BASE}/api/v1"
IDENTITY = "447911123456@wa.example.com"


def _resp(status_code=200, body=None, headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body if body is not None else {}
    resp.headers = headers or {}
    return resp


def _session_response():
    return _resp(body={"session_id": "sess-1"}, headers={"X-CSRF-Token": "csrf-1"})


class Routes:
    """Dispatches session.request calls by (method, path) to queued responses."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def __call__(self, method, url, **kwargs):
        path = url[len(API):]
        self.calls.append((method, path, kwargs))
        queue = self.routes.get((method, path))
        if not queue:
            return _resp(404)
        return queue.pop(0) if len(queue) > 1 else queue[0]


def _client(routes, **kwargs):
    session = MagicMock()
    session.get.return_value = _session_response()
    session.request.side_effect = routes
    client = KayakoClient(
        base_url=BASE + "/", username="bot@acme.example.com", password="pw", session=session, **kwargs
    )
    return client, session


def _user_hit(user_id="7", email=IDENTITY):
    return _resp(body={"data": [{"id": user_id, "resource": "user", "snippet": email}]})


class TestSession:
    """CSRF session handling."""

    def test_session_headers_sent_and_cached(self):
        routes = Routes()
        routes.add("GET", "/search.json", _resp(body={"data": []}))
        client, session = _client(routes)

        client.find_user(IDENTITY)
        client.find_user(IDENTITY)

        assert session.get.call_count == 1
        headers = routes.calls[0][2]["headers"]
        assert headers["X-CSRF-Token"] == "csrf-1"
        assert headers["Cookie"] == "kayako_session_id=sess-1"

    def test_refresh_once_on_401(self):
        routes = Routes()
        routes.add("GET", "/search.json", _resp(401), _resp(body={"data": []}))
        client, session = _client(routes)

        assert client.find_user(IDENTITY) is None
        assert session.get.call_count == 2

    def test_second_401_raises(self):
        routes = Routes()
        routes.add("GET", "/search.json", _resp(401))
        client, _ = _client(routes)

        with pytest.raises(HelpdeskApiError) as exc:
            client.find_user(IDENTITY)
        assert exc.value.status_code == 401

    def test_session_missing_csrf_raises(self):
        client, session = _client(Routes())
        session.get.return_value = _resp(body={})
        with pytest.raises(HelpdeskApiError, match="CSRF"):
            client.find_user(IDENTITY)

    def test_network_error_raises(self):
        client, session = _client(Routes())
        session.request.side_effect = requests.ConnectionError()
        with pytest.raises(HelpdeskApiError):
            client.find_user(IDENTITY)


class TestUsers:
    def test_exact_snippet_match(self):
        routes = Routes()
        routes.add(
            "GET",
            "/search.json",
            _resp(
                body={
                    "data": [
                        {"id": 1, "resource": "user", "snippet": "other@wa.example.com"},
                        {"id": 2, "resource": "user", "snippet": IDENTITY.upper()},
                    ]
                }
            ),
        )
        client, _ = _client(routes)
        assert client.find_user(IDENTITY) == "2"

    def test_ambiguous_hits_not_trusted(self):
        routes = Routes()
        routes.add(
            "GET",
            "/search.json",
            _resp(body={"data": [{"id": 1, "snippet": "a"}, {"id": 2, "snippet": "b"}]}),
        )
        client, _ = _client(routes)
        assert client.find_user(IDENTITY) is None

    def test_creates_customer_when_missing(self):
        routes = Routes()
        routes.add("GET", "/search.json", _resp(body={"data": []}))
        routes.add("POST", "/users.json", _resp(201, body={"data": {"id": 99}}))
        client, _ = _client(routes)

        assert client.find_or_create_user(IDENTITY, "+447911123456") == "99"
        payload = routes.calls[-1][2]["json"]
        assert payload == {"full_name": "+447911123456", "role_id": 4, "email": IDENTITY}


class TestCases:
    """Case search and creation."""

    def test_search_returns_latest_open_case(self):
        routes = Routes()
        routes.add("GET", "/search.json", _user_hit())
        routes.add("GET", "/cases.json", _resp(body={"data": [{"id": 1001}]}))
        client, _ = _client(routes)

        assert client.search_cases_by_identity(IDENTITY) == "1001"
        params = routes.calls[-1][2]["params"]
        assert params == {
            "requester_id": "7",
            "sort": "updated_at:desc",
            "limit": 1,
            "state": "ACTIVE",
        }

    def test_search_any_state(self):
        routes = Routes()
        routes.add("GET", "/search.json", _user_hit())
        routes.add("GET", "/cases.json", _resp(body={"data": []}))
        client, _ = _client(routes)

        assert client.search_cases_by_identity(IDENTITY, open_states_only=False) is None
        assert "state" not in routes.calls[-1][2]["params"]

    def test_search_unknown_user_skips_case_query(self):
        routes = Routes()
        routes.add("GET", "/search.json", _resp(body={"data": []}))
        client, _ = _client(routes)

        assert client.search_cases_by_identity(IDENTITY) is None
        assert [c[1] for c in routes.calls] == ["/search.json"]

    def test_create_case(self):
        routes = Routes()
        routes.add("GET", "/search.json", _user_hit())
        routes.add("POST", "/cases.json", _resp(201, body={"data": {"id": 1002}}))
        client, _ = _client(routes)

        case_id = client.create_case("WhatsApp conversation with +447911123456", IDENTITY, "hi")

        assert case_id == "1002"
        payload = routes.calls[-1][2]["json"]
        assert payload["requester_id"] == "7"
        assert payload["channel"] == "mail"
        assert payload["contents"] == [{"type": "text", "body": "hi"}]

    def test_create_case_without_requester_raises(self):
        routes = Routes()
        routes.add("GET", "/search.json", _resp(body={"data": []}))
        client, _ = _client(routes)
        with pytest.raises(HelpdeskApiError):
            client.create_case("s", IDENTITY, "hi")

    def test_create_case_with_known_requester_skips_search(self):
        routes = Routes()
        routes.add("POST", "/cases.json", _resp(201, body={"data": {"id": 1003}}))
        client, _ = _client(routes)

        assert client.create_case("s", IDENTITY, "hi", requester_id="55") == "1003"
        assert [(m, p) for m, p, _ in routes.calls] == [("POST", "/cases.json")]
        assert routes.calls[0][2]["json"]["requester_id"] == "55"

    def test_new_requester_gets_case_before_search_index_catches_up(self):
        routes = Routes()
        routes.add("GET", "/search.json", _resp(body={"data": []}))
        routes.add("POST", "/users.json", _resp(201, body={"data": {"id": 55}}))
        routes.add("POST", "/cases.json", _resp(201, body={"data": {"id": 900}}))
        client, _ = _client(routes)
        resolver = CaseResolver(
            store=MemoryThreadStore(),
            helpdesk=client,
            pseudo_identity_domain=PSEUDO_DOMAIN,
            create_cases=True,
        )

        resolution = resolver.resolve_case_for_inbound("whatsapp:+447911123456")

        assert resolution.source == CaseSource.CREATED
        assert resolution.case_id == "900"
        method, path, kwargs = routes.calls[-1]
        assert (method, path) == ("POST", "/cases.json")
        assert kwargs["json"]["requester_id"] == "55"


class TestAppendPublicMessage:
    """Reply channel strategies and fallback."""

    def test_requester_attribution_posts_message(self):
        routes = Routes()
        routes.add("GET", "/search.json", _user_hit())
        routes.add(
            "GET",
            "/users/7/identities.json",
            _resp(body={"data": [{"id": 31, "resource_type": "identity_email", "email": IDENTITY}]}),
        )
        routes.add("POST", "/messages.json", _resp(201, body={"data": {"id": 5}}))
        client, _ = _client(routes)

        result = client.append_public_message("1001", "Hello", requester_identity=IDENTITY)

        assert result.ok
        assert result.channel == ReplyChannel.MAIL
        payload = routes.calls[-1][2]["json"]
        assert payload["actor"] == {"id": "7", "resource_type": "user"}
        assert payload["identity"] == {"id": "31", "resource_type": "identity_email"}
        assert payload["origin"] == "USER"
        assert payload["is_public"] is True

    def test_agent_attribution_posts_reply(self):
        routes = Routes()
        routes.add("POST", "/cases/1001/reply.json", _resp(201))
        client, _ = _client(routes, attribution=Attribution.AGENT)

        result = client.append_public_message("1001", "Hello", requester_identity=IDENTITY)

        assert result.channel == ReplyChannel.MAIL
        assert routes.calls[-1][2]["json"] == {"contents": "Hello", "channel": "MAIL"}

    def test_falls_back_to_next_channel(self):
        routes = Routes()
        routes.add("POST", "/cases/1001/reply.json", _resp(500))
        routes.add("POST", "/cases/1001/notes.json", _resp(201))
        client, _ = _client(routes, attribution=Attribution.AGENT)

        result = client.append_public_message("1001", "Hello", requester_identity=IDENTITY)

        assert result.channel == ReplyChannel.NOTE
        assert [(a.channel, a.ok) for a in result.attempts] == [
            (ReplyChannel.MAIL, False),
            (ReplyChannel.NOTE, True),
        ]

    def test_all_channels_fail(self):
        routes = Routes()
        client, _ = _client(routes, attribution=Attribution.AGENT)
        result = client.append_public_message("1001", "Hello", requester_identity=IDENTITY)
        assert not result.ok
        assert len(result.attempts) == 2

    def test_attachments_uploaded_and_referenced(self):
        routes = Routes()
        routes.add("POST", "/files.json", _resp(201, body={"data": {"id": 11}}))
        routes.add("POST", "/cases/1001/notes.json", _resp(201))
        client, _ = _client(routes, reply_channels=(ReplyChannel.NOTE,))
        attachment = EmailAttachment(content=b"x", filename="a.png", content_type="image/png")

        result = client.append_public_message(
            "1001", "see photo", requester_identity=IDENTITY, attachments=[attachment]
        )

        assert result.channel == ReplyChannel.NOTE
        assert routes.calls[-1][2]["json"]["file_ids"] == "11"

    def test_failed_upload_appends_text_only(self):
        routes = Routes()
        routes.add("POST", "/files.json", _resp(500))
        routes.add("POST", "/cases/1001/notes.json", _resp(201))
        client, _ = _client(routes, reply_channels=(ReplyChannel.NOTE,))
        attachment = EmailAttachment(content=b"x", filename="a.png", content_type="image/png")

        result = client.append_public_message(
            "1001", "see photo", requester_identity=IDENTITY, attachments=[attachment]
        )

        assert result.ok
        assert "file_ids" not in routes.calls[-1][2]["json"]


class TestReplyChannelParseOrder:
    def test_order_and_dedupe(self):
        assert ReplyChannel.parse_order(["note", "MAIL", "note", "fax"]) == (
            ReplyChannel.NOTE,
            ReplyChannel.MAIL,
        )

    def test_empty_falls_back_to_default(self):
        assert ReplyChannel.parse_order([]) == (ReplyChannel.MAIL, ReplyChannel.NOTE)
