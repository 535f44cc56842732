"""IMAP connection management - handles session setup, replacement and cleanup."""

import ssl
import time
from dataclasses import dataclass
from typing import Optional

from inbox_watch.utils.config_manager import ImapConfig
from inbox_watch.utils.errors import ErrorClassifier, FailureCause
from inbox_watch.utils.logging import get_logger, log_span

from .protocol import IMAPProtocol
from .tunnel import open_tunnel

logger = get_logger(__name__)


@dataclass
class ConnectionStats:
    """Tracks IMAP connection metrics."""

    connections_created: int = 0
    reconnections: int = 0
    failed_connections: int = 0
    operations_count: int = 0
    last_connected_at: Optional[float] = None
    total_connect_time: float = 0.0

    def record_connection(self, duration: float) -> None:
        """Record a successful connection and how long it took.

        Args:
            duration: Time taken for tunnel, login and select in seconds
        """
        self.connections_created += 1
        self.total_connect_time += duration
        self.last_connected_at = time.time()

    def record_operation(self) -> None:
        """Count one public client operation."""
        self.operations_count += 1


class IMAPConnection:
    """Owns the current IMAP session of one client.

    The session is opened by ``connect``, replaced by ``reconnect`` and ended
    by ``logout``. After logout every call fails with a Configuration error.
    Callers serialize access.
    """

    def __init__(self, config: ImapConfig, ssl_context: Optional[ssl.SSLContext] = None):
        """Initialize IMAP connection.

        Args:
            config: Validated account configuration
            ssl_context: TLS context override, mostly for private CAs
        """
        self.config = config
        self.ssl_context = ssl_context
        self.host = config.effective_imap_host()
        self._session: Optional[IMAPProtocol] = None
        self._closed = False
        self._stats = ConnectionStats()

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def session(self) -> Optional[IMAPProtocol]:
        return self._session

    def get_stats(self) -> ConnectionStats:
        """Get current connection statistics."""
        return self._stats

    def _ensure_open(self) -> None:
        if self._closed:
            raise ErrorClassifier.error(
                FailureCause.SESSION_CLOSED,
                f"Client for {self.config.email} has been logged out",
                email=self.config.email,
            )

    async def connect(self) -> IMAPProtocol:
        """Open tunnel, log in and select the configured mailbox.

        Raises:
            InboxWatchError: Whatever the failing step reported; a partially
                opened transport is always closed
        """
        self._ensure_open()
        config = self.config
        start_time = time.monotonic()

        async with log_span(
            "imap.connect",
            server=f"{self.host}:{config.imap_port}",
            username=config.email,
        ):
            client = await open_tunnel(
                self.host,
                config.imap_port,
                proxy=config.proxy,
                connect_timeout=config.timeouts.connect,
                ssl_context=self.ssl_context,
            )
            session = IMAPProtocol(client, config.timeouts)

            try:
                await session.authenticate(config.email, config.password.get_secret_value())
                await session.select(config.mailbox)
            except BaseException:
                self._stats.failed_connections += 1
                session.abort()
                raise

        self._session = session
        duration = time.monotonic() - start_time
        self._stats.record_connection(duration)

        logger.info(
            "IMAP connection established",
            extra={
                "server": self.host,
                "username": config.email,
                "mailbox": config.mailbox,
                "via_proxy": config.proxy is not None,
                "duration_seconds": round(duration, 2),
            },
        )
        return session

    async def get_session(self) -> IMAPProtocol:
        """Return the live session, opening a new one if it was lost.

        Raises:
            InboxWatchError: Configuration error after logout, otherwise any
                error from ``connect``
        """
        self._ensure_open()

        if self._session is not None and self._session.is_usable:
            return self._session

        if self._session is not None or self._stats.connections_created:
            return await self.reconnect()

        return await self.connect()

    async def reconnect(self) -> IMAPProtocol:
        """Drop the current session and open a fresh one."""
        self._ensure_open()
        self.discard()
        self._stats.reconnections += 1

        logger.info(
            "Reconnecting to IMAP server",
            extra={"server": self.host, "reconnections": self._stats.reconnections},
        )
        return await self.connect()

    def discard(self) -> None:
        """Close the current session's transport without LOGOUT."""
        session, self._session = self._session, None
        if session is not None:
            session.abort()

    async def logout(self) -> None:
        """Log out and close the session; the connection cannot be reused.

        Idempotent. Raises if LOGOUT itself fails, after the transport has
        been closed.
        """
        if self._closed:
            return

        self._closed = True
        session, self._session = self._session, None
        if session is None:
            return

        await session.logout()
        logger.debug("IMAP connection closed successfully")
