"""Email protocol handling: IMAP sessions, message parsing and matchers.

Usage Examples
----------------

Wait for a one-time code:
    >>> from inbox_watch.core.email.imap import IMAPEmailClient
    >>> from inbox_watch.core.email.matchers import OtpMatcher
    >>>
    >>> client = await IMAPEmailClient.connect(config)
    >>> async with client.into_guard() as guard:
    ...     code = await guard.wait_for_match(OtpMatcher.six_digit())

Parse a raw message:
    >>> from inbox_watch.core.email.parser import EmailParser
    >>>
    >>> envelope = EmailParser.parse_from_bytes(raw_bytes, uid=123)
    >>> print(envelope.subject)

Connection statistics:
    >>> stats = client.get_stats()
    >>> print(f"Reconnections: {stats.reconnections}")

Notes
-----
- All network operations are asynchronous and require 'await'
- Lost connections are re-established during waits
- Malformed emails are logged and skipped
"""

from .matchers import (
    ClosureMatcher,
    DigitCodeMatcher,
    FunctionMatcher,
    Matcher,
    OtpMatcher,
    RegexMatcher,
    UrlMatcher,
)
from .parser import EmailParser

__all__ = [
    # Matchers
    "Matcher",
    "DigitCodeMatcher",
    "OtpMatcher",
    "UrlMatcher",
    "RegexMatcher",
    "FunctionMatcher",
    "ClosureMatcher",
    # Parser
    "EmailParser",
]
