"""Centralized path definitions for inbox-watch.

Nothing is written to disk unless a log directory is configured explicitly,
either through ``INBOX_WATCH_LOG_DIR`` or ``init_logging(log_dir=...)``.
"""

import os
from pathlib import Path
from typing import Optional

# Base application directory
INBOX_WATCH_DIR = Path.home() / ".inbox_watch"

# Subdirectories
LOGS_DIR = INBOX_WATCH_DIR / "logs"

# Specific files
CONFIG_PATH = INBOX_WATCH_DIR / "config.json"


def configured_log_dir() -> Optional[Path]:
    """Return the log directory requested through the environment, if any."""
    value = os.environ.get("INBOX_WATCH_LOG_DIR")
    if not value:
        return None

    return LOGS_DIR if value.lower() == "default" else Path(value).expanduser()
