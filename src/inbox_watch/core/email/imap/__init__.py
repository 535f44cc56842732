from .client import ClientGuard, IMAPEmailClient, connect
from .connection import ConnectionStats, IMAPConnection
from .protocol import IMAPProtocol

__all__ = [
    "IMAPEmailClient",
    "ClientGuard",
    "connect",
    "IMAPConnection",
    "ConnectionStats",
    "IMAPProtocol",
]
