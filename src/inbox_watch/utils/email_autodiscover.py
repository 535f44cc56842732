"""IMAP server auto-discovery for common email providers."""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .errors import ErrorClassifier, FailureCause


@dataclass(frozen=True)
class EmailServerConfig:
    """IMAP server location for a provider."""

    imap_server: str
    imap_port: int = 993


_GMAIL = EmailServerConfig("imap.gmail.com")
_OUTLOOK = EmailServerConfig("imap-mail.outlook.com")
_YAHOO = EmailServerConfig("imap.mail.yahoo.com")
_ICLOUD = EmailServerConfig("imap.mail.me.com")
_YANDEX = EmailServerConfig("imap.yandex.ru")
_MAIL_RU = EmailServerConfig("imap.mail.ru")
_GMX = EmailServerConfig("imap.gmx.net")
_PROTON = EmailServerConfig("imap.protonmail.com")
_ZOHO = EmailServerConfig("imap.zoho.com")
_FIRSTMAIL = EmailServerConfig("imap.firstmail.ltd")

# Known email provider configurations. Read-only after import.
KNOWN_PROVIDERS: Mapping[str, EmailServerConfig] = MappingProxyType(
    {
        # Google
        "gmail.com": _GMAIL,
        "googlemail.com": _GMAIL,
        # Microsoft
        "outlook.com": _OUTLOOK,
        "hotmail.com": _OUTLOOK,
        "live.com": _OUTLOOK,
        "msn.com": _OUTLOOK,
        # Yahoo / AOL
        "yahoo.com": _YAHOO,
        "ymail.com": _YAHOO,
        "aol.com": EmailServerConfig("imap.aol.com"),
        # Apple
        "icloud.com": _ICLOUD,
        "me.com": _ICLOUD,
        "mac.com": _ICLOUD,
        # Yandex
        "yandex.ru": _YANDEX,
        "yandex.com": _YANDEX,
        # Mail.ru network
        "mail.ru": _MAIL_RU,
        "internet.ru": _MAIL_RU,
        "bk.ru": _MAIL_RU,
        "inbox.ru": _MAIL_RU,
        "list.ru": _MAIL_RU,
        "rambler.ru": EmailServerConfig("imap.rambler.ru"),
        # German providers
        "web.de": EmailServerConfig("imap.web.de"),
        "gmx.de": _GMX,
        "gmx.at": _GMX,
        "gmx.ch": _GMX,
        "gmx.net": _GMX,
        "gmx.com": _GMX,
        "t-online.de": EmailServerConfig("secureimap.t-online.de"),
        "firemail.de": EmailServerConfig("imap.firemail.de"),
        # Polish providers
        "gazeta.pl": EmailServerConfig("imap.gazeta.pl"),
        "wp.pl": EmailServerConfig("imap.wp.pl"),
        "onet.pl": EmailServerConfig("imap.poczta.onet.pl"),
        # Privacy-focused providers
        "protonmail.com": _PROTON,
        "proton.me": _PROTON,
        "fastmail.com": EmailServerConfig("imap.fastmail.com"),
        "zoho.com": _ZOHO,
        "zohomail.com": _ZOHO,
        "gmx.us": _GMX,
        "1and1.com": EmailServerConfig("imap.1and1.com"),
        # FirstMail network
        "firstmail.ltd": _FIRSTMAIL,
        "streetwormail.com": _FIRSTMAIL,
        "bonsoirmail.com": _FIRSTMAIL,
        "aurevoirmail.com": _FIRSTMAIL,
        "bonjourfmail.com": _FIRSTMAIL,
        "bientotmail.com": _FIRSTMAIL,
    }
)


def extract_domain(email: str) -> str:
    """Return the lowercased domain of an email address.

    Raises:
        InboxWatchError: Configuration error if there is no ``@`` or no domain
    """
    if not email or "@" not in email:
        raise ErrorClassifier.error(
            FailureCause.INVALID_ADDRESS,
            "Email address has no '@'",
            email=email,
        )

    domain = email.rsplit("@", 1)[1].strip().lower()
    if not domain:
        raise ErrorClassifier.error(
            FailureCause.INVALID_ADDRESS,
            "Email address has an empty domain",
            email=email,
        )

    return domain


def autodiscover_email_config(email: str) -> Optional[EmailServerConfig]:
    """Look up the server configuration of a well-known provider.

    Args:
        email: Email address (e.g., user@gmail.com)

    Returns:
        EmailServerConfig if provider is known, None otherwise
    """
    return KNOWN_PROVIDERS.get(extract_domain(email))


def discover_imap_host(email: str) -> str:
    """Derive the IMAP host for an address, falling back to ``imap.<domain>``."""
    domain = extract_domain(email)
    known = KNOWN_PROVIDERS.get(domain)

    return known.imap_server if known else f"imap.{domain}"


class ServerRegistry:
    """Custom domain -> IMAP host mappings layered over the known providers.

    Resolution order: custom mappings, then the built-in table (when
    ``use_defaults`` is set), then ``imap.<domain>``.
    """

    def __init__(self, use_defaults: bool = True):
        self.use_defaults = use_defaults
        self._custom: Dict[str, str] = {}

    @classmethod
    def with_defaults(cls) -> "ServerRegistry":
        return cls(use_defaults=True)

    def register(self, domain: str, imap_host: str) -> None:
        """Register (or override) the IMAP host for a domain."""
        if not domain or not imap_host:
            raise ErrorClassifier.error(
                FailureCause.INVALID_CONFIG,
                "Domain and IMAP host must both be non-empty",
                domain=domain,
            )
        self._custom[domain.strip().lower()] = imap_host.strip()

    def register_many(self, mappings: Iterable[Tuple[str, str]]) -> None:
        for domain, imap_host in mappings:
            self.register(domain, imap_host)

    def unregister(self, domain: str) -> Optional[str]:
        """Remove a custom mapping. Built-in defaults are unaffected."""
        return self._custom.pop(domain.strip().lower(), None)

    def discover(self, email: str) -> str:
        domain = extract_domain(email)

        if domain in self._custom:
            return self._custom[domain]

        if self.use_defaults and domain in KNOWN_PROVIDERS:
            return KNOWN_PROVIDERS[domain].imap_server

        return f"imap.{domain}"

    def __contains__(self, domain: str) -> bool:
        domain = domain.lower()
        return domain in self._custom or (
            self.use_defaults and domain in KNOWN_PROVIDERS
        )

    def __len__(self) -> int:
        return len(self._custom)
