"""Wiring: build every bridge component from `Settings`."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from wabridge.config import Settings
from wabridge.domain.case_resolver import CaseResolver
from wabridge.helpdesk.base import Attribution, HelpdeskClient, ReplyChannel
from wabridge.helpdesk.kayako import KayakoClient
from wabridge.infra.locks import KeyedLock
from wabridge.infra.thread_store import ThreadStore, build_thread_store
from wabridge.mail.sendgrid_sender import SendGridSender
from wabridge.media.fetch import MediaFetcher
from wabridge.media.temp_store import TempFileStore, TempFileSweeper
from wabridge.services.inbound import EmailSender, InboundHandler
from wabridge.services.outbound import ChatSender, OutboundHandler
from wabridge.whatsapp.twilio_sender import TwilioSender


@dataclass
class Bridge:
    """Long-lived components shared by every request."""

    settings: Settings
    store: ThreadStore
    resolver: CaseResolver
    temp_store: TempFileStore
    sweeper: TempFileSweeper
    inbound: InboundHandler
    outbound: OutboundHandler


def assemble(
    settings: Settings,
    *,
    store: ThreadStore,
    helpdesk: HelpdeskClient | None,
    email_sender: EmailSender,
    chat_sender: ChatSender,
    media_fetcher: MediaFetcher,
    temp_store: TempFileStore | None = None,
) -> Bridge:
    """Assemble a Bridge from explicit collaborators (tests pass fakes here)."""
    resolver = CaseResolver(
        store=store,
        helpdesk=helpdesk,
        pseudo_identity_domain=settings.pseudo_identity_domain,
        locks=KeyedLock(),
        create_cases=settings.helpdesk_create_cases,
        subject_template=settings.email_subject_template,
        max_store_failures=settings.thread_store_max_failures,
    )
    if temp_store is None:
        temp_store = TempFileStore(
            public_base_url=settings.public_base_url,
            ttl=timedelta(seconds=settings.media_ttl_seconds),
        )
    return Bridge(
        settings=settings,
        store=store,
        resolver=resolver,
        temp_store=temp_store,
        sweeper=TempFileSweeper(temp_store, settings.media_sweep_interval_seconds),
        inbound=InboundHandler(
            settings=settings,
            resolver=resolver,
            email_sender=email_sender,
            media_fetcher=media_fetcher,
            helpdesk=helpdesk,
        ),
        outbound=OutboundHandler(
            settings=settings,
            resolver=resolver,
            chat_sender=chat_sender,
            temp_store=temp_store,
        ),
    )


def build_helpdesk(settings: Settings) -> HelpdeskClient | None:
    if not settings.helpdesk_enabled:
        return None
    return KayakoClient(
        base_url=settings.helpdesk_base_url,
        username=settings.helpdesk_username,
        password=settings.helpdesk_password,
        attribution=Attribution(settings.helpdesk_reply_attribution),
        reply_channels=ReplyChannel.parse_order(settings.helpdesk_reply_channels),
        timeout=settings.http_timeout_seconds,
    )


def build_bridge(settings: Settings) -> Bridge:
    """Production wiring from environment settings."""
    timeout = settings.http_timeout_seconds
    return assemble(
        settings,
        store=build_thread_store(settings.thread_store_backend, settings.thread_store_path),
        helpdesk=build_helpdesk(settings),
        email_sender=SendGridSender(api_key=settings.sendgrid_api_key, timeout=timeout),
        chat_sender=TwilioSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_address=settings.twilio_whatsapp_from,
            timeout=timeout,
        ),
        media_fetcher=MediaFetcher(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            timeout=timeout,
        ),
    )
