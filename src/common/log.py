"""
Centralized logging for wingman.

Provides:
- An area-prefixed console format (e.g. ``[WINGMAN.storage] 14:32:15 INFO  ...``)
- Optional file logging with full timestamps for post-mortem analysis
- Privacy helpers so identities and message bodies never hit the log verbatim
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


ROOT_LOGGER_NAME = "wingman"
_PREVIEW_CHARS = 50
_JID_SUFFIX = "@s.whatsapp.net"


class ConsoleFormatter(logging.Formatter):
    """Format: [WINGMAN.area] HH:MM:SS LEVEL    message"""

    def format(self, record: logging.LogRecord) -> str:
        area = record.name.split(".", 1)[1] if "." in record.name else "main"
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"[WINGMAN.{area}] {timestamp} {record.levelname:<8} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class FileFormatter(logging.Formatter):
    """Format: TIMESTAMP [area] LEVEL: message (extra)"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        extra = ""
        for attr in ("identity", "entity_id"):
            if hasattr(record, attr):
                extra += f" {attr}={getattr(record, attr)}"
        line = f"{timestamp} [{record.name}] {record.levelname}: {record.getMessage()}{extra}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: int = logging.INFO,
    *,
    log_file: Optional[str | Path] = None,
    file_level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Initialize the ``wingman`` logger tree.

    Args:
        level: Minimum level for console output
        log_file: Optional path for a detailed log file
        file_level: Minimum level for file output

    Returns:
        The root ``wingman`` logger
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(FileFormatter())
        root.addHandler(file_handler)

    root.propagate = False
    return root


def get_logger(area: str = "main") -> logging.Logger:
    """
    Get a logger for an application area.

    Example:
        logger = get_logger("storage")
        logger.info("Archived old messages")
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{area}")


def mask_identity(identity: Optional[str]) -> Optional[str]:
    """Mask a phone-number style identity: 919876543210 -> 9198*****210.

    A trailing ``@s.whatsapp.net`` suffix is preserved. Short values are
    returned unchanged.
    """
    if not identity or not isinstance(identity, str):
        return identity
    cleaned = identity.replace(_JID_SUFFIX, "")
    if len(cleaned) < 8:
        return cleaned
    masked = cleaned[:4] + "*****" + cleaned[-3:]
    return masked + _JID_SUFFIX if "@" in identity else masked


def preview_text(text: Optional[str]) -> str:
    """Return at most the first 50 characters of a message for logging."""
    if not text:
        return ""
    preview = text[:_PREVIEW_CHARS]
    return preview + ("..." if len(text) > _PREVIEW_CHARS else "")
