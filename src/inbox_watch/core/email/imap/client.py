"""IMAP client handle for waiting on verification emails."""

import asyncio
import ssl
from datetime import timedelta
from typing import Optional, Union

from inbox_watch.core.polling import MatcherLike, PollingEngine
from inbox_watch.utils.config_manager import ImapConfig
from inbox_watch.utils.errors import ErrorClassifier, FailureCause, InboxWatchError
from inbox_watch.utils.logging import get_logger, log_event

from .connection import ConnectionStats, IMAPConnection

logger = get_logger(__name__)


class IMAPEmailClient:
    """A connected mailbox that can be searched for matching messages.

    Create one with ``IMAPEmailClient.connect(config)``. Operations on one
    client run one at a time. Call ``logout`` when done, or use the client
    (or ``into_guard()``) as an async context manager.

    Example:
        async with await IMAPEmailClient.connect(config) as client:
            code = await client.wait_for_match(OtpMatcher.six_digit())
    """

    def __init__(self, config: ImapConfig, connection: Optional[IMAPConnection] = None):
        """Initialize a client without connecting.

        Args:
            config: Validated account configuration
            connection: Connection to use instead of a new ``IMAPConnection``
        """
        self.config = config
        self._connection = connection or IMAPConnection(config)
        self._engine = PollingEngine(self._connection, config.polling)
        self._lock = asyncio.Lock()

    @classmethod
    async def connect(
        cls, config: ImapConfig, ssl_context: Optional[ssl.SSLContext] = None
    ) -> "IMAPEmailClient":
        """Resolve the server, open the tunnel, log in and select the mailbox.

        Raises:
            InboxWatchError: Classified failure of whichever step failed
        """
        client = cls(config, IMAPConnection(config, ssl_context=ssl_context))
        await client._run("connect", client._connection.connect)
        return client

    @property
    def email(self) -> str:
        return self.config.email

    @property
    def imap_host(self) -> str:
        return self.config.effective_imap_host()

    @property
    def is_logged_out(self) -> bool:
        return self._connection.is_closed

    def get_stats(self) -> ConnectionStats:
        """Get connection statistics."""
        return self._connection.get_stats()

    async def _run(self, operation: str, func, *args):
        """Run one operation exclusively, surfacing only ``InboxWatchError``."""
        async with self._lock:
            self._connection.get_stats().record_operation()
            try:
                return await func(*args)
            except InboxWatchError:
                raise
            except Exception as e:
                raise ErrorClassifier.classify(e, operation) from e

    async def wait_for_match(self, matcher: MatcherLike) -> str:
        """Wait for a message arriving after this call to match.

        Polls every ``polling.interval`` seconds for at most
        ``polling.max_wait`` seconds.

        Args:
            matcher: A ``Matcher`` or a function from body text to value

        Returns:
            The extracted value

        Raises:
            InboxWatchError: Timeout if no new mail arrived in time, NotFound
                if new mail arrived but nothing matched
        """
        result = await self._run("wait_for_match", self._engine.wait_for_match, matcher)
        logger.info(f"Match found in message {result.uid}")
        return result.value

    async def find_recent_match(
        self,
        matcher: MatcherLike,
        lookback: Union[float, timedelta] = 300.0,
    ) -> str:
        """Return the value from the newest message within ``lookback`` that matches.

        Args:
            matcher: A ``Matcher`` or a function from body text to value
            lookback: Maximum message age, in seconds or as a timedelta

        Raises:
            InboxWatchError: NotFound if no recent message matches
        """
        result = await self._run(
            "find_recent_match", self._engine.find_recent_match, matcher, lookback
        )
        logger.info(f"Match found in recent message {result.uid}")
        return result.value

    async def logout(self) -> None:
        """Log out from the server. Later operations fail with a Configuration error."""
        async with self._lock:
            await self._connection.logout()

        log_event("logout", f"Logged out {self.email}", level="DEBUG")

    def abort(self) -> None:
        """Drop the connection without LOGOUT."""
        self._connection.discard()

    def into_guard(self) -> "ClientGuard":
        """Wrap the client in a guard that always logs out when its block exits."""
        return ClientGuard(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await ClientGuard(self).release()

    def __repr__(self) -> str:
        return f"IMAPEmailClient(email={self.email!r}, imap_host={self.imap_host!r})"


class ClientGuard:
    """Async context manager that guarantees a best-effort logout.

    Leaving the block, normally or by exception or cancellation, attempts
    logout bounded by the logout timeout. Logout failures are logged and
    suppressed so they never mask the block's own outcome.
    """

    def __init__(self, client: IMAPEmailClient):
        self._client: Optional[IMAPEmailClient] = client

    @property
    def client(self) -> IMAPEmailClient:
        if self._client is None:
            raise ErrorClassifier.error(
                FailureCause.SESSION_CLOSED, "Guard has already been released"
            )
        return self._client

    async def __aenter__(self) -> "ClientGuard":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False

    async def wait_for_match(self, matcher: MatcherLike) -> str:
        return await self.client.wait_for_match(matcher)

    async def find_recent_match(
        self,
        matcher: MatcherLike,
        lookback: Union[float, timedelta] = 300.0,
    ) -> str:
        return await self.client.find_recent_match(matcher, lookback)

    async def logout(self) -> None:
        """Log out now, reporting failures; the guard is released either way."""
        client, self._client = self._client, None
        if client is not None:
            await client.logout()

    async def release(self) -> None:
        """Log out if still connected, suppressing and logging any failure."""
        client, self._client = self._client, None
        if client is None or client.is_logged_out:
            return

        timeout = client.config.timeouts.logout
        try:
            await asyncio.wait_for(client.logout(), timeout=timeout)
        except asyncio.TimeoutError:
            client.abort()
            log_event(
                "logout_failed",
                f"Logout of {client.email} timed out after {timeout:g}s",
                level="WARNING",
                cause=FailureCause.OPERATION_TIMEOUT.value,
            )
        except Exception as e:
            error = ErrorClassifier.classify(e, "logout")
            log_event(
                "logout_failed",
                f"Logout of {client.email} failed: {error.message}",
                level="WARNING",
                cause=error.cause.value,
            )


async def connect(
    config: ImapConfig, ssl_context: Optional[ssl.SSLContext] = None
) -> IMAPEmailClient:
    """Connect a new ``IMAPEmailClient``."""
    return await IMAPEmailClient.connect(config, ssl_context=ssl_context)
