"""Kayako REST API v1 client.

Kayako requires a CSRF token and session cookie on writes. Any authenticated
GET returns both (``X-CSRF-Token`` header, ``session_id`` in the body); they
are cached per client and refreshed once on 401.

Security: NEVER log emails, names or message bodies. Only ids, hashes, lengths.
"""

from __future__ import annotations

import threading
from typing import Any, Sequence

import requests

from wabridge.domain.models import EmailAttachment
from wabridge.errors import HelpdeskApiError
from wabridge.helpdesk.base import (
    AppendAttempt,
    AppendResult,
    Attribution,
    ReplyChannel,
)
from wabridge.infra.hashing import hash_identifier
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

CUSTOMER_ROLE_ID = 4
OPEN_CASE_STATE = "ACTIVE"


def _extract_id(body: Any) -> str | None:
    """Kayako wraps resources in ``data``; some endpoints return them bare."""
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    if body.get("id") is not None:
        return str(body["id"])
    return None


def _text_contents(body: str) -> list[dict[str, str]]:
    return [{"type": "text", "body": body}]


class KayakoClient:
    """Implements `HelpdeskClient` against ``<base_url>/api/v1``."""

    def __init__(
        self,
        *,
        base_url: str,
        username: str,
        password: str,
        attribution: Attribution = Attribution.REQUESTER,
        reply_channels: Sequence[ReplyChannel] = (ReplyChannel.MAIL, ReplyChannel.NOTE),
        timeout: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        self._api = f"{base_url.rstrip('/')}/api/v1"
        self._auth = (username, password)
        self._attribution = attribution
        self._reply_channels = tuple(reply_channels)
        self._timeout = timeout
        self._http = session or requests.Session()
        self._session_lock = threading.Lock()
        self._csrf: str | None = None
        self._session_id: str | None = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _refresh_session(self) -> None:
        try:
            resp = self._http.get(
                f"{self._api}/cases.json",
                params={"limit": 1},
                auth=self._auth,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise HelpdeskApiError(f"session request failed: {type(e).__name__}") from e
        if resp.status_code != 200:
            raise HelpdeskApiError("session request rejected", status_code=resp.status_code)

        csrf = resp.headers.get("X-CSRF-Token")
        try:
            session_id = resp.json().get("session_id")
        except ValueError:
            session_id = None
        if not csrf or not session_id:
            raise HelpdeskApiError("session response missing CSRF token or session id")
        self._csrf, self._session_id = csrf, session_id

    def _session_headers(self, *, force_refresh: bool = False) -> dict[str, str]:
        with self._session_lock:
            if force_refresh or self._csrf is None:
                self._refresh_session()
            return {
                "X-CSRF-Token": self._csrf or "",
                "Cookie": f"kayako_session_id={self._session_id}",
            }

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._api}{path}"
        for attempt in range(2):
            headers = self._session_headers(force_refresh=attempt > 0)
            try:
                resp = self._http.request(
                    method, url, auth=self._auth, headers=headers, timeout=self._timeout, **kwargs
                )
            except requests.RequestException as e:
                logger.warning(
                    "helpdesk request failed",
                    extra={
                        "extra_fields": safe_log_context(
                            method=method, path=path.split("?")[0], error_type=type(e).__name__
                        )
                    },
                )
                raise HelpdeskApiError(f"{method} {path} failed: {type(e).__name__}") from e

            if resp.status_code == 401 and attempt == 0:
                # Session expired: refresh once
                continue
            if not 200 <= resp.status_code < 300:
                logger.warning(
                    "helpdesk request rejected",
                    extra={
                        "extra_fields": safe_log_context(
                            method=method, path=path.split("?")[0], status=resp.status_code
                        )
                    },
                )
                raise HelpdeskApiError(
                    f"{method} {path} returned HTTP {resp.status_code}",
                    status_code=resp.status_code,
                )
            try:
                return resp.json()
            except ValueError:
                return {}
        raise HelpdeskApiError(f"{method} {path} unauthorized", status_code=401)

    # ------------------------------------------------------------------
    # Users and identities
    # ------------------------------------------------------------------

    def find_user(self, email: str) -> str | None:
        """Exact-match user lookup by email; never creates."""
        body = self._request(
            "GET", "/search.json", params={"query": email, "resources": "users"}
        )
        hits = body.get("data") or []
        for hit in hits:
            if hit.get("resource") == "user" and str(hit.get("snippet", "")).lower() == email.lower():
                return str(hit["id"])
        # Search is fuzzy; only trust a lone hit
        if len(hits) == 1 and hits[0].get("id") is not None:
            return str(hits[0]["id"])
        return None

    def find_or_create_user(self, email: str, display_name: str) -> str:
        user_id = self.find_user(email)
        if user_id is not None:
            return user_id

        body = self._request(
            "POST",
            "/users.json",
            json={"full_name": display_name, "role_id": CUSTOMER_ROLE_ID, "email": email},
        )
        user_id = _extract_id(body)
        if user_id is None:
            raise HelpdeskApiError("user creation returned no id")
        logger.info(
            "helpdesk user created",
            extra={"extra_fields": safe_log_context(user_id=user_id, email_hash=hash_identifier(email))},
        )
        return user_id

    def _email_identity_id(self, user_id: str, email: str) -> str:
        body = self._request("GET", f"/users/{user_id}/identities.json")
        for identity in body.get("data") or []:
            is_email = identity.get("resource_type") == "identity_email" or identity.get("type") == "email"
            if is_email and str(identity.get("email", "")).lower() == email.lower():
                return str(identity["id"])

        created = self._request(
            "POST", f"/users/{user_id}/identities.json", json={"type": "email", "email": email}
        )
        identity_id = _extract_id(created)
        if identity_id is None:
            raise HelpdeskApiError("identity creation returned no id")
        return identity_id

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def search_cases_by_identity(
        self, identity_address: str, open_states_only: bool = True
    ) -> str | None:
        requester_id = self.find_user(identity_address)
        if requester_id is None:
            return None

        params: dict[str, Any] = {
            "requester_id": requester_id,
            "sort": "updated_at:desc",
            "limit": 1,
        }
        if open_states_only:
            params["state"] = OPEN_CASE_STATE
        body = self._request("GET", "/cases.json", params=params)
        cases = body.get("data") or []
        if not cases:
            return None
        return str(cases[0]["id"])

    def create_case(
        self,
        subject: str,
        requester_identity: str,
        initial_body: str,
        *,
        requester_id: str | None = None,
    ) -> str:
        # A user created moments ago is not in the search index yet
        if requester_id is None:
            requester_id = self.find_user(requester_identity)
        if requester_id is None:
            raise HelpdeskApiError("requester not found for case creation")
        body = self._request(
            "POST",
            "/cases.json",
            json={
                "subject": subject,
                "requester_id": requester_id,
                "channel": "mail",
                "contents": _text_contents(initial_body),
            },
        )
        case_id = _extract_id(body)
        if case_id is None:
            raise HelpdeskApiError("case creation returned no id")
        logger.info("helpdesk case created", extra={"extra_fields": safe_log_context(case_id=case_id)})
        return case_id

    # ------------------------------------------------------------------
    # Appending messages
    # ------------------------------------------------------------------

    def _upload_files(self, attachments: Sequence[EmailAttachment]) -> list[str]:
        file_ids = []
        for attachment in attachments:
            body = self._request(
                "POST",
                "/files.json",
                files={"content": (attachment.filename, attachment.content, attachment.content_type)},
            )
            file_id = _extract_id(body)
            if file_id is not None:
                file_ids.append(file_id)
        return file_ids

    def _post_as_requester(
        self, case_id: str, body: str, channel: str, requester_identity: str, file_ids: list[str]
    ) -> None:
        requester_id = self.find_or_create_user(requester_identity, requester_identity)
        identity_id = self._email_identity_id(requester_id, requester_identity)
        payload: dict[str, Any] = {
            "case": {"id": case_id, "resource_type": "case"},
            "actor": {"id": requester_id, "resource_type": "user"},
            "identity": {"id": identity_id, "resource_type": "identity_email"},
            "channel": channel,
            "origin": "USER",
            "is_public": True,
            "contents": _text_contents(body),
        }
        if file_ids:
            payload["file_ids"] = ",".join(file_ids)
        self._request("POST", "/messages.json", json=payload)

    def _post_reply(self, case_id: str, body: str, channel: str, file_ids: list[str]) -> None:
        payload: dict[str, Any] = {"contents": body, "channel": channel}
        if file_ids:
            payload["file_ids"] = ",".join(file_ids)
        self._request("POST", f"/cases/{case_id}/reply.json", json=payload)

    def _append_mail(self, case_id: str, body: str, requester_identity: str, file_ids: list[str]) -> None:
        if self._attribution is Attribution.REQUESTER:
            self._post_as_requester(case_id, body, "mail", requester_identity, file_ids)
        else:
            self._post_reply(case_id, body, "MAIL", file_ids)

    def _append_messenger(
        self, case_id: str, body: str, requester_identity: str, file_ids: list[str]
    ) -> None:
        if self._attribution is Attribution.REQUESTER:
            self._post_as_requester(case_id, body, "messenger", requester_identity, file_ids)
        else:
            self._post_reply(case_id, body, "MESSENGER", file_ids)

    def _append_note(self, case_id: str, body: str, requester_identity: str, file_ids: list[str]) -> None:
        # Notes are always authored by the API user
        payload: dict[str, Any] = {"is_public": True, "contents": _text_contents(body)}
        if file_ids:
            payload["file_ids"] = ",".join(file_ids)
        self._request("POST", f"/cases/{case_id}/notes.json", json=payload)

    def append_public_message(
        self,
        case_id: str,
        body: str,
        *,
        requester_identity: str,
        attachments: Sequence[EmailAttachment] = (),
    ) -> AppendResult:
        """Append to a case, trying each configured reply channel in order."""
        strategies = {
            ReplyChannel.MAIL: self._append_mail,
            ReplyChannel.MESSENGER: self._append_messenger,
            ReplyChannel.NOTE: self._append_note,
        }

        file_ids: list[str] = []
        if attachments:
            try:
                file_ids = self._upload_files(attachments)
            except HelpdeskApiError as e:
                logger.warning(
                    "attachment upload failed; appending text only",
                    extra={"extra_fields": safe_log_context(case_id=case_id, error=str(e))},
                )

        attempts: list[AppendAttempt] = []
        for channel in self._reply_channels:
            try:
                strategies[channel](case_id, body, requester_identity, file_ids)
            except HelpdeskApiError as e:
                attempts.append(AppendAttempt(channel=channel, ok=False, detail=str(e)))
                logger.warning(
                    "append via channel failed",
                    extra={"extra_fields": safe_log_context(case_id=case_id, channel=channel.value)},
                )
                continue
            attempts.append(AppendAttempt(channel=channel, ok=True))
            logger.info(
                "message appended to case",
                extra={
                    "extra_fields": safe_log_context(
                        case_id=case_id, channel=channel.value, text_len=len(body)
                    )
                },
            )
            return AppendResult(channel=channel, attempts=tuple(attempts))

        return AppendResult(channel=None, attempts=tuple(attempts))
