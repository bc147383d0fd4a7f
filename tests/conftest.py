"""Shared pytest fixtures for wabridge tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from tests.fakes import (  # noqa: E402
    FakeChatSender,
    FakeEmailSender,
    FakeHelpdesk,
    FakeMediaFetcher,
    MemoryThreadStore,
    make_settings,
)
from wabridge.api.factory import create_app  # noqa: E402
from wabridge.bridge import assemble  # noqa: E402


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return MemoryThreadStore()


@pytest.fixture
def helpdesk():
    return FakeHelpdesk()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def chat_sender():
    return FakeChatSender()


@pytest.fixture
def media_fetcher():
    return FakeMediaFetcher()


@pytest.fixture
def bridge(settings, store, helpdesk, email_sender, chat_sender, media_fetcher):
    """All components wired against fakes."""
    return assemble(
        settings,
        store=store,
        helpdesk=helpdesk,
        email_sender=email_sender,
        chat_sender=chat_sender,
        media_fetcher=media_fetcher,
    )


@pytest.fixture
def client(bridge):
    """TestClient without lifespan: the sweeper thread is not started."""
    return TestClient(create_app(bridge))
