"""Centralized error classification for inbox-watch.

Every failure surfaced by the library is an ``InboxWatchError`` carrying an
``ErrorCategory`` and a ``retryable`` flag. Both are decided in exactly one
place: the ``CLASSIFICATION_RULES`` table below, keyed by ``FailureCause``.
Low-level exceptions are mapped to a cause by ``ErrorClassifier.classify``;
failures detected by the library itself are built with
``ErrorClassifier.error``. Adding a new failure path means adding one cause
and one rule.
"""

import asyncio
import re
import ssl
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import socks
from aioimaplib import aioimaplib

## Error Categories


class ErrorCategory(str, Enum):
    """Categories of errors for retry decisions and reporting."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    PARSE = "parse"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"


class FailureCause(str, Enum):
    """Concrete reasons an operation can fail."""

    # Transport
    CONNECTION_FAILED = "connection_failed"
    CONNECTION_LOST = "connection_lost"
    PROXY_FAILED = "proxy_failed"
    PROXY_AUTH_REJECTED = "proxy_auth_rejected"
    TLS_RESET = "tls_reset"
    TLS_TRUST_FAILURE = "tls_trust_failure"
    TLS_HANDSHAKE_FAILED = "tls_handshake_failed"

    # Deadlines
    OPERATION_TIMEOUT = "operation_timeout"
    WAIT_EXPIRED = "wait_expired"

    # Server replies
    LOGIN_REJECTED = "login_rejected"
    COMMAND_REJECTED = "command_rejected"
    UNEXPECTED = "unexpected"

    # Content
    MALFORMED_RESPONSE = "malformed_response"
    MALFORMED_MESSAGE = "malformed_message"
    MATCHER_FAILED = "matcher_failed"

    # Caller input
    INVALID_ADDRESS = "invalid_address"
    INVALID_PATTERN = "invalid_pattern"
    INVALID_CONFIG = "invalid_config"
    SESSION_CLOSED = "session_closed"

    # Results
    NO_MATCH = "no_match"


CLASSIFICATION_RULES: Dict[FailureCause, Tuple[ErrorCategory, bool]] = {
    FailureCause.CONNECTION_FAILED: (ErrorCategory.NETWORK, True),
    FailureCause.CONNECTION_LOST: (ErrorCategory.NETWORK, True),
    FailureCause.PROXY_FAILED: (ErrorCategory.NETWORK, True),
    FailureCause.PROXY_AUTH_REJECTED: (ErrorCategory.CONFIGURATION, False),
    FailureCause.TLS_RESET: (ErrorCategory.NETWORK, True),
    FailureCause.TLS_TRUST_FAILURE: (ErrorCategory.NETWORK, False),
    FailureCause.TLS_HANDSHAKE_FAILED: (ErrorCategory.NETWORK, False),
    FailureCause.OPERATION_TIMEOUT: (ErrorCategory.TIMEOUT, True),
    FailureCause.WAIT_EXPIRED: (ErrorCategory.TIMEOUT, True),
    FailureCause.LOGIN_REJECTED: (ErrorCategory.PROTOCOL, False),
    FailureCause.COMMAND_REJECTED: (ErrorCategory.PROTOCOL, False),
    FailureCause.UNEXPECTED: (ErrorCategory.PROTOCOL, False),
    FailureCause.MALFORMED_RESPONSE: (ErrorCategory.PARSE, False),
    FailureCause.MALFORMED_MESSAGE: (ErrorCategory.PARSE, False),
    FailureCause.MATCHER_FAILED: (ErrorCategory.PARSE, False),
    FailureCause.INVALID_ADDRESS: (ErrorCategory.CONFIGURATION, False),
    FailureCause.INVALID_PATTERN: (ErrorCategory.CONFIGURATION, False),
    FailureCause.INVALID_CONFIG: (ErrorCategory.CONFIGURATION, False),
    FailureCause.SESSION_CLOSED: (ErrorCategory.CONFIGURATION, False),
    FailureCause.NO_MATCH: (ErrorCategory.NOT_FOUND, False),
}

# OpenSSL reasons that mean the peer went away mid-handshake
TRANSIENT_TLS_REASONS = frozenset(
    {
        "UNEXPECTED_EOF_WHILE_READING",
        "UNEXPECTED_RECORD",
        "CONNECTION_RESET",
    }
)

TRUST_TLS_REASONS = frozenset(
    {
        "CERTIFICATE_VERIFY_FAILED",
        "HOSTNAME_MISMATCH",
        "SSLV3_ALERT_BAD_CERTIFICATE",
        "TLSV1_ALERT_UNKNOWN_CA",
        "CERTIFICATE_EXPIRED",
    }
)


## Custom Exception


class InboxWatchError(Exception):
    """The single error type raised by inbox-watch public operations."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        retryable: bool,
        cause: FailureCause = FailureCause.UNEXPECTED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.category = category
        self.retryable = retryable
        self.cause = cause
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return (
            f"InboxWatchError({self.message!r}, category={self.category.value}, "
            f"retryable={self.retryable})"
        )

    @property
    def is_retryable(self) -> bool:
        return self.retryable

    def to_dict(self) -> Dict[str, Any]:
        """Convert error details to a dictionary."""
        return {
            "category": self.category.value,
            "cause": self.cause.value,
            "retryable": self.retryable,
            "message": self.message,
            "details": self.details,
            "source": repr(self.__cause__) if self.__cause__ else None,
        }


## Classifier


class ErrorClassifier:
    """Maps failures to typed errors using ``CLASSIFICATION_RULES``."""

    @staticmethod
    def error(
        cause: FailureCause,
        message: str,
        source: Optional[BaseException] = None,
        **details,
    ) -> InboxWatchError:
        """Build the error for a known failure cause."""
        category, retryable = CLASSIFICATION_RULES[cause]
        err = InboxWatchError(message, category, retryable, cause, details)
        if source is not None:
            err.__cause__ = source
        return err

    @classmethod
    def classify(
        cls, exc: BaseException, operation: str = "", **details
    ) -> InboxWatchError:
        """Wrap any exception into an ``InboxWatchError``.

        Errors that are already classified are returned unchanged.
        """
        if isinstance(exc, InboxWatchError):
            return exc

        cause = cls.cause_of(exc)
        reason = str(exc) or type(exc).__name__
        message = f"{operation} failed: {reason}" if operation else reason
        if operation:
            details.setdefault("operation", operation)

        return cls.error(cause, message, source=exc, **details)

    @staticmethod
    def cause_of(exc: BaseException) -> FailureCause:
        """Determine the failure cause of a low-level exception.

        Order matters: ``TimeoutError``, ``ssl.SSLError`` and PySocks errors
        are all ``OSError`` subclasses.
        """
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, aioimaplib.CommandTimeout)):
            return FailureCause.OPERATION_TIMEOUT

        if isinstance(exc, socks.SOCKS5AuthError):
            return FailureCause.PROXY_AUTH_REJECTED

        if isinstance(exc, socks.ProxyError):
            return FailureCause.PROXY_FAILED

        if isinstance(exc, ssl.SSLError):
            return _tls_cause(exc)

        if isinstance(exc, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
            return FailureCause.CONNECTION_LOST

        if isinstance(exc, aioimaplib.Abort):
            return FailureCause.CONNECTION_LOST

        if isinstance(exc, aioimaplib.IncompleteRead):
            return FailureCause.MALFORMED_RESPONSE

        if isinstance(exc, OSError):
            return FailureCause.CONNECTION_FAILED

        if isinstance(exc, re.error):
            return FailureCause.INVALID_PATTERN

        return FailureCause.UNEXPECTED


def _tls_cause(exc: ssl.SSLError) -> FailureCause:
    """Split TLS failures into transient resets and permanent handshake failures."""
    if isinstance(exc, ssl.SSLCertVerificationError):
        return FailureCause.TLS_TRUST_FAILURE

    if isinstance(exc, (ssl.SSLEOFError, ssl.SSLZeroReturnError)):
        return FailureCause.TLS_RESET

    reason = (getattr(exc, "reason", None) or "").upper()
    if reason in TRUST_TLS_REASONS:
        return FailureCause.TLS_TRUST_FAILURE
    if reason in TRANSIENT_TLS_REASONS:
        return FailureCause.TLS_RESET

    return FailureCause.TLS_HANDSHAKE_FAILED


def format_error_message(error: BaseException) -> str:
    """Format an error message for display."""
    if isinstance(error, InboxWatchError):
        return f"[{error.category.value}] {error.message}"

    return f"Unexpected error: {error}"
