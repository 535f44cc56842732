"""inbox-watch: wait for verification emails over IMAP and extract codes or links.

Usage Examples
----------------

    >>> import inbox_watch
    >>>
    >>> config = inbox_watch.ImapConfig.build(email="me@gmail.com", password="app-password")
    >>> client = await inbox_watch.connect(config)
    >>> async with client.into_guard() as guard:
    ...     code = await guard.wait_for_match(inbox_watch.OtpMatcher.six_digit())
"""

from .utils.config_manager import (
    ImapConfig,
    PollingConfig,
    Socks5Proxy,
    TimeoutConfig,
    load_config,
)
from .utils.email_autodiscover import (
    KNOWN_PROVIDERS,
    EmailServerConfig,
    ServerRegistry,
    discover_imap_host,
)
from .utils.errors import ErrorCategory, ErrorClassifier, FailureCause, InboxWatchError
from .core.email.matchers import (
    ClosureMatcher,
    DigitCodeMatcher,
    FunctionMatcher,
    Matcher,
    OtpMatcher,
    RegexMatcher,
    UrlMatcher,
)
from .core.email.imap import ClientGuard, IMAPEmailClient, connect
from .core.models import MatchResult, MessageEnvelope

__version__ = "0.1.0"

__all__ = [
    # Client
    "connect",
    "IMAPEmailClient",
    "ClientGuard",
    # Configuration
    "ImapConfig",
    "Socks5Proxy",
    "TimeoutConfig",
    "PollingConfig",
    "load_config",
    # Server discovery
    "KNOWN_PROVIDERS",
    "EmailServerConfig",
    "ServerRegistry",
    "discover_imap_host",
    # Matchers
    "Matcher",
    "DigitCodeMatcher",
    "OtpMatcher",
    "UrlMatcher",
    "RegexMatcher",
    "FunctionMatcher",
    "ClosureMatcher",
    # Models
    "MatchResult",
    "MessageEnvelope",
    # Errors
    "InboxWatchError",
    "ErrorCategory",
    "FailureCause",
    "ErrorClassifier",
]
