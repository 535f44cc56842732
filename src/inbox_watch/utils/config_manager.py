"""Connection configuration models.

The core trusts a fully validated ``ImapConfig``; validation happens here,
through pydantic, and every validation failure is reported as a
``Configuration`` error.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from .email_autodiscover import ServerRegistry, discover_imap_host, extract_domain
from .errors import ErrorClassifier, FailureCause, InboxWatchError
from .logging import get_logger
from .paths import CONFIG_PATH

logger = get_logger(__name__)

ENV_PREFIX = "INBOX_WATCH_"


class Socks5Proxy(BaseModel):
    """SOCKS5 proxy descriptor."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(default=1080, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[SecretStr] = None

    @property
    def requires_auth(self) -> bool:
        return self.username is not None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        if self.requires_auth:
            return f"socks5://{self.username}:***@{self.address}"
        return f"socks5://{self.address}"


class TimeoutConfig(BaseModel):
    """Timeouts for individual operations (in seconds)."""

    model_config = ConfigDict(frozen=True)

    connect: float = Field(default=30.0, gt=0)
    auth: float = Field(default=30.0, gt=0)
    select: float = Field(default=10.0, gt=0)
    search: float = Field(default=10.0, gt=0)
    fetch: float = Field(default=30.0, gt=0)
    logout: float = Field(default=5.0, gt=0)


class PollingConfig(BaseModel):
    """Polling behaviour of wait operations (in seconds)."""

    model_config = ConfigDict(frozen=True)

    interval: float = Field(default=2.0, gt=0)
    max_wait: float = Field(default=300.0, ge=0)
    reconnect_on_parse_error: bool = False


class ImapConfig(BaseModel):
    """Everything needed to open and watch one mailbox."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    email: str
    password: SecretStr
    imap_host: Optional[str] = None
    imap_port: int = Field(default=993, ge=1, le=65535)
    mailbox: str = Field(default="INBOX", min_length=1)
    proxy: Optional[Socks5Proxy] = None
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    server_registry: Optional[ServerRegistry] = Field(default=None, exclude=True)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = value.strip()
        local, _, _ = value.partition("@")
        if not local:
            raise ValueError("email must have a local part")
        try:
            extract_domain(value)
        except InboxWatchError as e:
            raise ValueError(e.message) from e
        return value

    @field_validator("imap_host")
    @classmethod
    def _validate_host(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("imap_host must not be blank")
        return value

    @classmethod
    def build(cls, **fields: Any) -> "ImapConfig":
        """Validate fields into a config, raising Configuration errors."""
        try:
            return cls(**fields)
        except ValidationError as e:
            raise ErrorClassifier.error(
                FailureCause.INVALID_CONFIG,
                f"Invalid configuration: {e.error_count()} error(s)",
                source=e,
                errors=[
                    {"field": ".".join(str(p) for p in err["loc"]), "error": err["msg"]}
                    for err in e.errors()
                ],
            ) from e

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides: Any) -> "ImapConfig":
        """Build a config from ``<prefix>*`` environment variables."""

        def env(name: str) -> Optional[str]:
            return os.environ.get(f"{prefix}{name}") or None

        fields: Dict[str, Any] = {
            "email": env("EMAIL") or "",
            "password": env("PASSWORD") or "",
        }
        if env("IMAP_HOST"):
            fields["imap_host"] = env("IMAP_HOST")
        if env("IMAP_PORT"):
            fields["imap_port"] = env("IMAP_PORT")
        if env("MAILBOX"):
            fields["mailbox"] = env("MAILBOX")

        if env("PROXY_HOST"):
            fields["proxy"] = {
                "host": env("PROXY_HOST"),
                "port": env("PROXY_PORT") or 1080,
                "username": env("PROXY_USER"),
                "password": env("PROXY_PASS"),
            }

        polling = {}
        if env("POLL_INTERVAL"):
            polling["interval"] = env("POLL_INTERVAL")
        if env("MAX_WAIT"):
            polling["max_wait"] = env("MAX_WAIT")
        if polling:
            fields["polling"] = polling

        if env("CONNECT_TIMEOUT"):
            fields["timeouts"] = {"connect": env("CONNECT_TIMEOUT")}

        fields.update(overrides)
        return cls.build(**fields)

    def with_polling(self, **updates: Any) -> "ImapConfig":
        """Copy of this config with some polling values replaced."""
        try:
            polling = PollingConfig(**{**self.polling.model_dump(), **updates})
        except ValidationError as e:
            raise ErrorClassifier.error(
                FailureCause.INVALID_CONFIG,
                f"Invalid polling configuration: {e.error_count()} error(s)",
                source=e,
            ) from e

        return self.model_copy(update={"polling": polling})

    def effective_imap_host(self) -> str:
        """Explicit host if configured, otherwise discovered from the email domain."""
        if self.imap_host:
            return self.imap_host
        if self.server_registry is not None:
            return self.server_registry.discover(self.email)
        return discover_imap_host(self.email)

    def server_address(self) -> str:
        return f"{self.effective_imap_host()}:{self.imap_port}"

    def safe_dict(self) -> Dict[str, Any]:
        """Config summary suitable for logging."""
        return {
            "email": self.email,
            "imap_host": self.effective_imap_host(),
            "imap_port": self.imap_port,
            "mailbox": self.mailbox,
            "proxy": str(self.proxy) if self.proxy else None,
            "poll_interval": self.polling.interval,
            "max_wait": self.polling.max_wait,
        }


def load_config(path: Optional[Path] = None, **overrides: Any) -> ImapConfig:
    """Load an ``ImapConfig`` from a JSON file.

    Args:
        path: JSON file to read (default: ~/.inbox_watch/config.json)
        **overrides: Field values that take precedence over the file

    Raises:
        InboxWatchError: Configuration error if the file is missing or invalid
    """
    config_path = Path(path) if path else CONFIG_PATH

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ErrorClassifier.error(
            FailureCause.INVALID_CONFIG,
            f"Configuration file not found: {config_path}",
            source=e,
        ) from e
    except (OSError, json.JSONDecodeError) as e:
        raise ErrorClassifier.error(
            FailureCause.INVALID_CONFIG,
            f"Could not read configuration file {config_path}: {e}",
            source=e,
        ) from e

    if not isinstance(data, dict):
        raise ErrorClassifier.error(
            FailureCause.INVALID_CONFIG,
            f"Configuration file {config_path} must contain a JSON object",
        )

    data.update(overrides)
    logger.debug("Loaded configuration", extra={"path": str(config_path)})
    return ImapConfig.build(**data)
