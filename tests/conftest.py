"""
Shared test fixtures and configuration for pytest
"""
import os

import pytest

from inbox_watch.core.polling import PollingEngine
from inbox_watch.utils.config_manager import PollingConfig

from .test_helpers import (
    ConfigTestHelper,
    FakeConnection,
    FakeMailbox,
    MessageTestHelper,
    ScriptedIMAPServer,
    TLSTestHelper,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep INBOX_WATCH_* variables from the developer's shell out of tests"""
    for key in list(os.environ):
        if key.startswith("INBOX_WATCH_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def test_config():
    """Validated config with fast polling"""
    return ConfigTestHelper.create_test_config()


@pytest.fixture
def mailbox():
    """Empty in-memory mailbox"""
    return FakeMailbox()


@pytest.fixture
def fake_connection(mailbox):
    """Connection fake bound to the mailbox fixture"""
    return FakeConnection(mailbox)


@pytest.fixture
def make_engine(fake_connection):
    """Factory for polling engines over the fake connection"""

    def factory(**polling):
        settings = {"interval": 0.01, "max_wait": 1.0}
        settings.update(polling)
        return PollingEngine(fake_connection, PollingConfig(**settings))

    return factory


@pytest.fixture
def raw_email():
    """Factory for raw RFC822 messages"""
    return MessageTestHelper.create_raw_email


@pytest.fixture
def tls_contexts(tmp_path):
    """(server, client) TLS contexts sharing a throwaway CA"""
    return TLSTestHelper.create_certificates(tmp_path)


@pytest.fixture
async def imap_server(tls_contexts):
    """Scripted IMAP server on a local TLS port"""
    server_context, _ = tls_contexts
    server = ScriptedIMAPServer(server_context)
    await server.start()
    yield server
    await server.stop()
