"""Logging utility for inbox-watch.

Every module logs through ``get_logger(__name__)``. Observability events
(``log_event``) and timed spans (``log_span``) are a side channel: emitting
them never changes the outcome of the operation being observed.
"""

import json
import logging
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from rich.logging import RichHandler

from .paths import configured_log_dir

ROOT_LOGGER_NAME = "inbox_watch"


## Custom JSON Formatter


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with extras nested under ``context``."""

    RESERVED = frozenset(
        logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self.RESERVED and not key.startswith("_")
        }
        if extra:
            log_entry["context"] = extra

        return json.dumps(log_entry, default=str)


## Secret Masking


class SecretMasker:
    """Redacts credentials and one-time secrets from log text.

    Verification mail is full of bearer secrets: magic-link query tokens,
    proxy credentials embedded in URLs, and passwords echoed in errors.
    """

    REDACTED = "[REDACTED]"

    PATTERNS = (
        re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE),
        re.compile(
            r"([?&](?:token|code|otp|key|sig|signature|auth)=)([^&#\s\"'<>]+)",
            re.IGNORECASE,
        ),
        re.compile(r"(socks5h?://[^:@/\s]+:)([^@/\s]+)(?=@)", re.IGNORECASE),
    )

    EMAIL_PATTERN = re.compile(r"\b([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")

    SENSITIVE_FIELDS = frozenset(
        {"password", "passwd", "secret", "token", "authorization", "proxy_password"}
    )

    def mask_string(self, text: str) -> str:
        for pattern in self.PATTERNS:
            text = pattern.sub(lambda m: m.group(1) + self.REDACTED, text)

        return self.EMAIL_PATTERN.sub(self._mask_email, text)

    def mask_value(self, key: str, value: Any) -> Any:
        """Mask one structured field, recursing into dicts."""
        if key.lower() in self.SENSITIVE_FIELDS:
            return self.REDACTED
        if isinstance(value, str):
            return self.mask_string(value)
        if isinstance(value, dict):
            return {k: self.mask_value(str(k), v) for k, v in value.items()}
        return value

    @staticmethod
    def _mask_email(match: re.Match) -> str:
        local, domain = match.group(1), match.group(2)
        return f"{local[0]}***@{domain}" if len(local) > 1 else f"***@{domain}"


class SecretFilter(logging.Filter):
    """Applies ``SecretMasker`` to the message and extras of every record."""

    SKIPPED = frozenset({"msg", "args", "exc_info", "exc_text", "stack_info"})

    def __init__(self):
        super().__init__()
        self.masker = SecretMasker()

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        if isinstance(record.msg, str):
            record.msg = self.masker.mask_string(record.msg)

        for key, value in list(record.__dict__.items()):
            if key in self.SKIPPED or key in JSONFormatter.RESERVED:
                continue
            setattr(record, key, self.masker.mask_value(key, value))

        return True


## Main Log Manager


class LogManager:
    """Owns the ``inbox_watch`` logger tree and its handlers."""

    def __init__(self, log_level: str = "WARNING", log_dir: Optional[Path] = None):
        self.log_level = getattr(logging, log_level.upper())
        self.log_dir = log_dir
        self.root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        self.root_logger.setLevel(logging.DEBUG)
        self._setup_handlers()

    def _setup_handlers(self) -> None:
        """Setup console and optional file handlers with sensitive data filtering."""

        sensitive_filter = SecretFilter()

        self.root_logger.handlers.clear()

        console_handler = RichHandler(
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )

        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        console_handler.addFilter(sensitive_filter)
        self.root_logger.addHandler(console_handler)

        if self.log_dir is None:
            return

        self.log_dir.mkdir(parents=True, exist_ok=True)

        app_handler = RotatingFileHandler(
            self.log_dir / "app.log",
            maxBytes=5_242_880,
            backupCount=5,
            encoding="utf-8",
        )
        app_handler.setLevel(logging.DEBUG)
        app_handler.setFormatter(JSONFormatter())
        app_handler.addFilter(sensitive_filter)

        event_handler = RotatingFileHandler(
            self.log_dir / "events.log",
            maxBytes=2_048_000,
            backupCount=3,
            encoding="utf-8",
        )
        event_handler.setLevel(logging.INFO)
        event_handler.setFormatter(JSONFormatter())
        event_handler.addFilter(lambda record: hasattr(record, "event_type"))
        event_handler.addFilter(sensitive_filter)

        self.root_logger.addHandler(app_handler)
        self.root_logger.addHandler(event_handler)

    def get_logger(self, name: Optional[str] = None) -> logging.Logger:
        """Get a logger under the package root."""

        if name and name.startswith(ROOT_LOGGER_NAME):
            logger = logging.getLogger(name)
        else:
            logger = logging.getLogger(
                f"{ROOT_LOGGER_NAME}.{name}" if name else ROOT_LOGGER_NAME
            )

        return logger

    def set_level(self, level: str) -> None:
        """Set the console logging level at runtime."""

        try:
            self.log_level = getattr(logging, level.upper())
        except AttributeError as e:
            raise ValueError(f"Invalid logging level: {level}") from e

        for handler in self.root_logger.handlers:
            if isinstance(handler, RichHandler):
                handler.setLevel(self.log_level)

    def log_event(self, event_type: str, message: str, level: str = "INFO", **extra):
        """Emit a record tagged with ``event_type`` for the events log."""

        extra_dict = {"event_type": event_type}
        extra_dict.update(extra)

        log_level = getattr(logging, level.upper(), logging.INFO)
        self.root_logger.log(log_level, message, extra=extra_dict)


## Decorators for Logging


def async_log_call(func):
    """Async decorator to log entry, exit and duration of a coroutine."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        logger = logging.getLogger(ROOT_LOGGER_NAME)
        func_name = f"{func.__module__}.{func.__qualname__}"
        logger.debug(f"-> Entering {func_name} (async)")
        start_time = time.monotonic()

        try:
            result = await func(*args, **kwargs)
            duration = time.monotonic() - start_time
            logger.debug(f"<- Exiting {func_name} (Duration: {duration:.3f}s)")
            return result

        except Exception as e:
            duration = time.monotonic() - start_time
            logger.debug(f"<- Error in {func_name} after {duration:.3f}s: {e}")
            raise

    return wrapper


@asynccontextmanager
async def log_span(name: str, **fields):
    """Emit start/finish events with a duration around an async block.

    Failures are reported and re-raised unchanged.
    """

    start_time = time.monotonic()
    log_event("span_start", f"{name} started", span=name, level="DEBUG", **fields)

    try:
        yield

    except BaseException as e:
        log_event(
            "span_error",
            f"{name} failed",
            span=name,
            level="DEBUG",
            duration_seconds=round(time.monotonic() - start_time, 3),
            error=str(e) or type(e).__name__,
            **fields,
        )
        raise

    log_event(
        "span_end",
        f"{name} finished",
        span=name,
        level="DEBUG",
        duration_seconds=round(time.monotonic() - start_time, 3),
        **fields,
    )


## Module-level LogManager Instance and Helper Functions

_log_manager: Optional[LogManager] = None


def init_logging(
    log_level: str = "WARNING", log_dir: Optional[Path] = None
) -> LogManager:
    """Create the shared LogManager on first use."""

    global _log_manager

    if _log_manager is None:
        _log_manager = LogManager(log_level, log_dir or configured_log_dir())

    return _log_manager


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger instance."""

    return init_logging().get_logger(name)


def log_event(event_type: str, message, level: str = "INFO", **extra):
    """Emit an observability event through the shared LogManager."""

    if isinstance(message, dict):
        extra.update(message)
        message = f"Event: {event_type}"

    return init_logging().log_event(event_type, message, level=level, **extra)
