"""
Tests against a local TLS IMAP server through the real aioimaplib client

Tests cover:
- Tunnel establishment and the server greeting
- LOGIN, SELECT, UID SEARCH and UID FETCH on real response lines
- Streams dropped by the server
- Waiting and lookback searches end to end
"""
import time
from datetime import datetime, timezone

import pytest

from inbox_watch.core.email.imap import IMAPEmailClient
from inbox_watch.core.email.imap.protocol import IMAPProtocol, SessionState
from inbox_watch.core.email.imap.tunnel import open_tunnel
from inbox_watch.core.email.matchers import OtpMatcher
from inbox_watch.core.models import SearchCriteria
from inbox_watch.utils.config_manager import TimeoutConfig
from inbox_watch.utils.errors import ErrorCategory, FailureCause, InboxWatchError

from .test_helpers import ConfigTestHelper, MessageTestHelper


async def open_session(server, client_context, **timeouts):
    """Tunnel plus protocol, not yet logged in"""
    client = await open_tunnel(
        "127.0.0.1", server.port, connect_timeout=5, ssl_context=client_context
    )
    return IMAPProtocol(client, TimeoutConfig(**timeouts))


def server_config(server, **kwargs):
    return ConfigTestHelper.create_test_config(
        imap_host="127.0.0.1", imap_port=server.port, **kwargs
    )


class TestTunnelOverTLS:
    """Tests for opening a real TLS stream"""

    @pytest.mark.asyncio
    async def test_greeting_reaches_not_authenticated(self, imap_server, tls_contexts):
        """Test that open_tunnel returns once the greeting is processed"""
        _, client_context = tls_contexts

        client = await open_tunnel(
            "127.0.0.1", imap_server.port, connect_timeout=5, ssl_context=client_context
        )

        try:
            assert client.protocol.state == "NONAUTH"
            assert not client.is_connection_lost
            assert imap_server.commands == ["CAPABILITY"]
        finally:
            client.close_transport()

    @pytest.mark.asyncio
    async def test_untrusted_certificate(self, imap_server):
        """Test that the default context rejects an unknown CA"""
        with pytest.raises(InboxWatchError) as exc_info:
            await open_tunnel("127.0.0.1", imap_server.port, connect_timeout=5)

        assert exc_info.value.category is ErrorCategory.NETWORK
        assert exc_info.value.cause is FailureCause.TLS_TRUST_FAILURE
        assert not exc_info.value.retryable


class TestSessionCommands:
    """Tests for commands parsed from real aioimaplib responses"""

    @pytest.mark.asyncio
    async def test_login_select_search_fetch(self, imap_server, tls_contexts):
        """Test a full session against the scripted server"""
        first = imap_server.deliver(MessageTestHelper.create_raw_email("Welcome aboard"))
        second = imap_server.deliver(
            MessageTestHelper.create_raw_email("Your code is 482913"),
            arrived_at=datetime(2025, 1, 6, 10, 30, tzinfo=timezone.utc),
        )
        session = await open_session(imap_server, tls_contexts[1])

        await session.authenticate("tester@example.com", "app-password")
        state = await session.select("INBOX")

        assert (state.exists, state.uid_validity, state.uid_next) == (2, 7, second + 1)
        assert await session.search(SearchCriteria.all()) == [first, second]
        assert await session.search(SearchCriteria.uid_after(first)) == [second]
        assert await session.latest_uid() == second

        envelope = await session.fetch(second)
        assert envelope.uid == second
        assert "482913" in envelope.body
        assert envelope.arrived_at == datetime(2025, 1, 6, 10, 30, tzinfo=timezone.utc)
        assert await session.fetch(999) is None

        await session.logout()

        assert session.state is SessionState.LOGGED_OUT
        assert "LOGOUT" in imap_server.commands

    @pytest.mark.asyncio
    async def test_empty_mailbox_search(self, imap_server, tls_contexts):
        """Test an empty SEARCH result"""
        session = await open_session(imap_server, tls_contexts[1])
        await session.authenticate("tester@example.com", "app-password")
        await session.select("INBOX")

        assert await session.search(SearchCriteria.all()) == []
        assert await session.latest_uid() == 0

        await session.logout()

    @pytest.mark.asyncio
    async def test_login_rejected(self, imap_server, tls_contexts):
        """Test that a NO to LOGIN is a non-retryable Protocol error"""
        session = await open_session(imap_server, tls_contexts[1])

        with pytest.raises(InboxWatchError) as exc_info:
            await session.authenticate("tester@example.com", "wrong-password")

        assert exc_info.value.category is ErrorCategory.PROTOCOL
        assert exc_info.value.cause is FailureCause.LOGIN_REJECTED
        assert not exc_info.value.retryable

        session.abort()


class TestDroppedStream:
    """Tests for streams closed by the server"""

    @pytest.mark.asyncio
    async def test_drop_during_command_is_network_error(self, imap_server, tls_contexts):
        """Test that an in-flight command fails fast when the stream drops"""
        session = await open_session(imap_server, tls_contexts[1], search=5)
        await session.authenticate("tester@example.com", "app-password")
        await session.select("INBOX")
        imap_server.drop_on = "UID SEARCH"
        start = time.monotonic()

        with pytest.raises(InboxWatchError) as exc_info:
            await session.search(SearchCriteria.all())

        assert time.monotonic() - start < 2
        assert exc_info.value.category is ErrorCategory.NETWORK
        assert exc_info.value.cause is FailureCause.CONNECTION_LOST
        assert exc_info.value.retryable
        assert session.state is SessionState.BROKEN
        assert not session.is_usable

    @pytest.mark.asyncio
    async def test_drop_between_commands(self, imap_server, tls_contexts):
        """Test that a stream dropped while idle fails the next command at once"""
        session = await open_session(imap_server, tls_contexts[1], fetch=5)
        await session.authenticate("tester@example.com", "app-password")
        await session.select("INBOX")
        start = time.monotonic()

        imap_server.drop_connections()

        with pytest.raises(InboxWatchError) as exc_info:
            await session.fetch(41)

        assert time.monotonic() - start < 2
        assert exc_info.value.category is ErrorCategory.NETWORK
        assert exc_info.value.cause is FailureCause.CONNECTION_LOST
        assert not session.is_usable

    @pytest.mark.asyncio
    async def test_drop_during_login(self, imap_server, tls_contexts):
        """Test that a stream dropped before the LOGIN reply is a Network error"""
        session = await open_session(imap_server, tls_contexts[1], auth=5)
        imap_server.drop_on = "LOGIN"

        with pytest.raises(InboxWatchError) as exc_info:
            await session.authenticate("tester@example.com", "app-password")

        assert exc_info.value.category is ErrorCategory.NETWORK
        assert exc_info.value.retryable


class TestEndToEnd:
    """Tests for the client handle over the scripted server"""

    @pytest.mark.asyncio
    async def test_find_recent_match(self, imap_server, tls_contexts):
        """Test the lookback search over a real connection"""
        imap_server.deliver(MessageTestHelper.create_raw_email("Your code is 482913"))

        client = await IMAPEmailClient.connect(
            server_config(imap_server), ssl_context=tls_contexts[1]
        )
        async with client.into_guard() as guard:
            value = await guard.find_recent_match(OtpMatcher.six_digit(), lookback=300)

        assert value == "482913"
        assert client.is_logged_out

    @pytest.mark.asyncio
    async def test_wait_for_match(self, imap_server, tls_contexts):
        """Test that mail arriving during the wait is found"""
        imap_server.deliver(MessageTestHelper.create_raw_email("Old code 111111"))
        imap_server.deliver_on_noop(MessageTestHelper.create_raw_email("Your code is 482913"))

        client = await IMAPEmailClient.connect(
            server_config(imap_server, polling={"interval": 0.05, "max_wait": 5}),
            ssl_context=tls_contexts[1],
        )
        async with client.into_guard() as guard:
            value = await guard.wait_for_match(OtpMatcher.six_digit())

        assert value == "482913"

    @pytest.mark.asyncio
    async def test_wait_reconnects_after_drop(self, imap_server, tls_contexts):
        """Test that a dropped stream is replaced within the same wait"""
        imap_server.deliver_on_noop(MessageTestHelper.create_raw_email("Your code is 482913"))
        config = server_config(imap_server, polling={"interval": 0.05, "max_wait": 5})

        client = await IMAPEmailClient.connect(config, ssl_context=tls_contexts[1])
        imap_server.drop_connections()

        async with client.into_guard() as guard:
            value = await guard.wait_for_match(OtpMatcher.six_digit())

        assert value == "482913"
        assert client.get_stats().reconnections >= 1
