"""Transport establishment: direct or SOCKS5-proxied TCP, upgraded to TLS.

The resulting stream is handed to an aioimaplib protocol, so the rest of the
package talks IMAP through the regular aioimaplib client API.
"""

import asyncio
import socket
import ssl
from typing import Optional

import socks
from aioimaplib import aioimaplib

from inbox_watch.utils.config_manager import Socks5Proxy
from inbox_watch.utils.errors import ErrorClassifier, FailureCause
from inbox_watch.utils.logging import get_logger, log_span

from .constants import COMMAND_TIMEOUT

logger = get_logger(__name__)


class TunneledIMAP4(aioimaplib.IMAP4):
    """aioimaplib client whose transport is attached by ``open_tunnel``.

    The stock client schedules its own ``create_connection`` in a background
    task, which hides connection errors and cannot use a pre-connected proxy
    socket. Here only the protocol object is created.

    aioimaplib leaves in-flight commands pending when the stream drops, so
    commands are awaited through ``until_lost``, which fails as soon as the
    transport reports connection loss.
    """

    def create_client(self, host, port, loop, conn_lost_cb=None, ssl_context=None):
        local_loop = loop if loop is not None else asyncio.get_running_loop()
        self.lost = local_loop.create_future()

        def on_connection_lost(exc):
            if not self.lost.done():
                self.lost.set_result(exc)
            if conn_lost_cb is not None:
                conn_lost_cb(exc)

        self.protocol = aioimaplib.IMAP4ClientProtocol(local_loop, on_connection_lost)

    @property
    def is_connection_lost(self) -> bool:
        transport = self.protocol.transport
        return self.lost.done() or (transport is not None and transport.is_closing())

    async def until_lost(self, awaitable):
        """Await ``awaitable`` unless the connection drops first.

        Raises:
            ConnectionResetError: If the stream closes before the awaitable
                completes
        """
        task = asyncio.ensure_future(awaitable)
        try:
            await asyncio.wait({task, self.lost}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise

        if task.done():
            return task.result()

        task.cancel()
        raise ConnectionResetError(
            f"IMAP connection to {self.host}:{self.port} was closed"
        ) from self.lost.result()

    def close_transport(self) -> None:
        """Drop the underlying stream without sending LOGOUT."""
        transport = getattr(self.protocol, "transport", None)
        if transport is not None and not transport.is_closing():
            transport.close()


def create_ssl_context() -> ssl.SSLContext:
    """TLS context with system trust roots and hostname verification."""
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


def open_socks_socket(
    proxy: Socks5Proxy, host: str, port: int, timeout: float
) -> socket.socket:
    """Open a TCP stream to ``host:port`` through a SOCKS5 proxy (blocking).

    The target hostname is resolved by the proxy.
    """
    sock = socks.socksocket(socket.AF_INET, socket.SOCK_STREAM)
    sock.set_proxy(
        socks.SOCKS5,
        proxy.host,
        proxy.port,
        rdns=True,
        username=proxy.username,
        password=proxy.password.get_secret_value() if proxy.password else None,
    )
    sock.settimeout(timeout)

    try:
        sock.connect((host, port))
    except BaseException:
        sock.close()
        raise

    return sock


async def open_tunnel(
    host: str,
    port: int,
    proxy: Optional[Socks5Proxy] = None,
    connect_timeout: float = 30.0,
    ssl_context: Optional[ssl.SSLContext] = None,
    command_timeout: float = COMMAND_TIMEOUT,
) -> TunneledIMAP4:
    """Connect to an IMAP server and wait for its greeting.

    Args:
        host: IMAP server hostname (also used for SNI and certificate checks)
        port: IMAP server port, normally 993
        proxy: Optional SOCKS5 proxy to route the connection through
        connect_timeout: Budget for proxy hop, TLS handshake and greeting
        ssl_context: TLS context, defaults to ``create_ssl_context()``

    Returns:
        Connected client in the non-authenticated state

    Raises:
        InboxWatchError: Timeout if the budget is exceeded, Network for
            transport, proxy and TLS failures, Configuration if the proxy
            rejects its credentials
    """
    target = f"{host}:{port}"
    context = ssl_context or create_ssl_context()

    async def establish() -> TunneledIMAP4:
        loop = asyncio.get_running_loop()
        client = TunneledIMAP4(host=host, port=port, timeout=command_timeout)

        try:
            if proxy is not None:
                logger.debug(f"Connecting to {target} via SOCKS5 proxy {proxy}")
                sock = await loop.run_in_executor(
                    None, open_socks_socket, proxy, host, port, connect_timeout
                )
                try:
                    await loop.create_connection(
                        lambda: client.protocol,
                        sock=sock,
                        ssl=context,
                        server_hostname=host,
                    )
                except BaseException:
                    sock.close()
                    raise
            else:
                logger.debug(f"Connecting directly to {target}")
                await loop.create_connection(
                    lambda: client.protocol, host, port, ssl=context
                )

            await client.until_lost(client.protocol.wait("AUTH|NONAUTH"))

        except BaseException:
            client.close_transport()
            raise

        return client

    async with log_span(
        "tunnel.open", target=target, proxy_enabled=proxy is not None
    ):
        try:
            return await asyncio.wait_for(establish(), timeout=connect_timeout)

        except asyncio.TimeoutError as e:
            raise ErrorClassifier.error(
                FailureCause.OPERATION_TIMEOUT,
                f"Connection to {target} timed out after {connect_timeout:.1f}s",
                source=e,
                target=target,
                timeout=connect_timeout,
            ) from e

        except Exception as e:
            error = ErrorClassifier.classify(
                e,
                f"Connection to {target}",
                target=target,
                proxy=str(proxy) if proxy else None,
            )
            logger.warning(
                f"Could not connect to {target}: {error.message}",
                extra={"category": error.category.value, "retryable": error.retryable},
            )
            raise error from e
