"""Content matchers that extract a value from a message body.

A matcher is a stateless strategy with one operation, ``find_match(text)``,
returning the extracted value or ``None``. Matchers are safe to share between
poll cycles and between concurrent clients.

Usage Examples
----------------

    >>> OtpMatcher.six_digit().find_match("Your code is 482913.")
    '482913'
    >>> UrlMatcher("example.com").find_match('<a href="https://app.example.com/v?t=1">')
    'https://app.example.com/v?t=1'
    >>> RegexMatcher(r"token=([a-f0-9]+)").find_match("?token=abc123")
    'abc123'
"""

import html
import re
from abc import ABC, abstractmethod
from typing import Callable, Optional, Pattern, Union
from urllib.parse import urlsplit

from inbox_watch.utils.errors import ErrorClassifier, FailureCause, InboxWatchError

URL_CANDIDATE_RE = re.compile(r"""https?://[^\s"'<>()\[\]{}]+""", re.IGNORECASE)

# Punctuation that ends a sentence rather than a URL
URL_TRAILING_CHARS = ".,;:!?'\""


class Matcher(ABC):
    """Extracts at most one value from a message body."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable summary used in logs and errors."""

    @abstractmethod
    def find_match(self, text: str) -> Optional[str]:
        """Return the extracted value, or None if the text does not match."""

    def __call__(self, text: str) -> Optional[str]:
        return self.find_match(text)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.description!r})"


class RegexMatcher(Matcher):
    """Matches a regular expression.

    Returns the first capture group of the first match when the pattern has
    groups, otherwise the whole match.

    Raises:
        InboxWatchError: Configuration error if the pattern does not compile
    """

    def __init__(
        self,
        pattern: Union[str, Pattern[str]],
        flags: int = 0,
        description: Optional[str] = None,
    ):
        if isinstance(pattern, re.Pattern):
            self._regex = pattern
        else:
            try:
                self._regex = re.compile(pattern, flags)
            except (re.error, TypeError) as e:
                raise ErrorClassifier.error(
                    FailureCause.INVALID_PATTERN,
                    f"Invalid regular expression {pattern!r}: {e}",
                    source=e,
                    pattern=str(pattern),
                ) from e

        self._description = description or f"regex pattern: {self._regex.pattern}"

    @property
    def description(self) -> str:
        return self._description

    @property
    def pattern(self) -> str:
        return self._regex.pattern

    def find_match(self, text: str) -> Optional[str]:
        match = self._regex.search(text)
        if match is None:
            return None
        if self._regex.groups == 0:
            return match.group(0)
        # None when group 1 did not participate in the first match
        return match.group(1)


class DigitCodeMatcher(RegexMatcher):
    """Matches a run of exactly ``digits`` ASCII digits not touching other digits."""

    def __init__(self, digits: int = 6):
        if isinstance(digits, bool) or not isinstance(digits, int) or digits < 1:
            raise ErrorClassifier.error(
                FailureCause.INVALID_CONFIG,
                f"Digit count must be a positive integer, got {digits!r}",
                digits=digits,
            )

        self.digits = digits
        super().__init__(
            rf"(?<![0-9])([0-9]{{{digits}}})(?![0-9])",
            description=f"{digits}-digit code",
        )


class OtpMatcher(DigitCodeMatcher):
    """Convenience constructors for one-time password codes."""

    @classmethod
    def six_digit(cls) -> "OtpMatcher":
        return cls(6)

    @classmethod
    def n_digit(cls, digits: int) -> "OtpMatcher":
        return cls(digits)

    @staticmethod
    def custom(pattern: Union[str, Pattern[str]]) -> RegexMatcher:
        """OTP matcher for codes that are not a plain run of digits."""
        return RegexMatcher(pattern, description="custom OTP pattern")


class UrlMatcher(Matcher):
    """Matches the first http(s) URL whose host is ``domain`` or a subdomain of it."""

    def __init__(self, domain: str):
        domain = (domain or "").strip().lower().rstrip(".")
        if domain.startswith(("http://", "https://")):
            domain = urlsplit(domain).hostname or ""
        if not domain or any(c.isspace() for c in domain) or "/" in domain:
            raise ErrorClassifier.error(
                FailureCause.INVALID_CONFIG,
                f"Invalid URL domain: {domain!r}",
                domain=domain,
            )
        self.domain = domain

    @staticmethod
    def custom(pattern: Union[str, Pattern[str]], description: str) -> RegexMatcher:
        """Link matcher driven by a caller-supplied URL pattern."""
        return RegexMatcher(pattern, description=description)

    @property
    def description(self) -> str:
        return f"URL from {self.domain}"

    def find_match(self, text: str) -> Optional[str]:
        for candidate in URL_CANDIDATE_RE.findall(text):
            url = html.unescape(candidate).rstrip(URL_TRAILING_CHARS)
            if self._host_matches(url):
                return url

        return None

    def _host_matches(self, url: str) -> bool:
        try:
            host = urlsplit(url).hostname
        except ValueError:
            return False

        if not host:
            return False

        host = host.rstrip(".")
        return host == self.domain or host.endswith("." + self.domain)


class FunctionMatcher(Matcher):
    """Delegates to caller-supplied logic.

    Exceptions raised by the function, and results that are neither a string
    nor None, are reported as Parse errors so that one bad message cannot
    break a polling loop.
    """

    def __init__(self, func: Callable[[str], Optional[str]], description: str = ""):
        if not callable(func):
            raise ErrorClassifier.error(
                FailureCause.INVALID_CONFIG,
                "FunctionMatcher requires a callable",
            )
        self._func = func
        self._description = description or getattr(func, "__name__", "custom matcher")

    @property
    def description(self) -> str:
        return self._description

    def find_match(self, text: str) -> Optional[str]:
        try:
            result = self._func(text)
        except InboxWatchError:
            raise
        except Exception as e:
            raise ErrorClassifier.error(
                FailureCause.MATCHER_FAILED,
                f"Matcher '{self._description}' raised {type(e).__name__}: {e}",
                source=e,
                matcher=self._description,
            ) from e

        if result is None or isinstance(result, str):
            return result or None

        raise ErrorClassifier.error(
            FailureCause.MATCHER_FAILED,
            f"Matcher '{self._description}' returned {type(result).__name__}, expected str",
            matcher=self._description,
        )


ClosureMatcher = FunctionMatcher


def as_matcher(matcher: Union[Matcher, Callable[[str], Optional[str]]]) -> Matcher:
    """Accept a Matcher or a plain callable."""
    if isinstance(matcher, Matcher):
        return matcher
    return FunctionMatcher(matcher)
