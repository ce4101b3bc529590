"""
Secure Logging Module
=====================

Every Rollcall module logs through ``logging.getLogger(__name__)``. The
entry point calls ``configure_root_logger`` once, which installs the
handlers and puts ``SecureLogFilter`` in front of each of them.

What gets redacted:
- Form fields carrying credentials (``unhashed_password``,
  ``password_link_id``, ``cf-turnstile-response``)
- Session cookies, session fingerprints and other long hex digests
- Argon2 encoded hashes
- Database URLs, which may embed a password
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, Iterable, Optional, Pattern

from rollcall.core.config import LoggingConfig
from rollcall.security.constants import SESSION_COOKIE_NAME


REDACTED: Final[str] = "[REDACTED]"

LOG_FILE_NAME: Final[str] = "rollcall.log"

# key=value pairs whose value must never reach a handler
_KEYED_FIELDS: Final[tuple[str, ...]] = (
    "unhashed_password",
    "password_link_id",
    "recovery_code",
    "cf-turnstile-response",
    "auth_hash",
    SESSION_COOKIE_NAME,
    "password",
    "passwd",
    "secret",
    "token",
    "code",
)

_KEYED_VALUE: Final[Pattern[str]] = re.compile(
    r"(?i)\b(" + "|".join(re.escape(k) for k in _KEYED_FIELDS) + r")(\s*[=:]\s*)[\"']?[^\s\"',;&]+[\"']?"
)

# Bare values recognisable on their own
_BARE_VALUES: Final[tuple[Pattern[str], ...]] = (
    re.compile(r"\$argon2(?:id|i|d)\$[^\s\"']+"),
    re.compile(r"(?i)\bpostgres(?:ql)?://[^\s\"']+"),
    re.compile(r"(?i)\b[a-f0-9]{32,}\b"),
)


def redact(text: str, extra: Iterable[Pattern[str]] = ()) -> str:
    """Return ``text`` with credentials replaced by [REDACTED]."""
    text = _KEYED_VALUE.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
    for pattern in (*_BARE_VALUES, *extra):
        text = pattern.sub(REDACTED, text)
    return text


class SecureLogFilter(logging.Filter):
    """
    Redacts a record's message and string arguments in place.

    The filter never drops a record; it only rewrites it.
    """

    def __init__(self, name: str = "", additional_patterns: Optional[list[Pattern[str]]] = None) -> None:
        super().__init__(name)
        self._extra = tuple(additional_patterns or ())

    def _clean(self, value):
        return redact(value, self._extra) if isinstance(value, str) else value

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._clean(record.msg)

        if isinstance(record.args, dict):
            record.args = {key: self._clean(value) for key, value in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._clean(arg) for arg in record.args)

        return True


class StructuredLogFormatter(logging.Formatter):
    """One JSON object per line. ``extra={"fields": {...}}`` is merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            entry.update(fields)

        if record.exc_info:
            entry["exception"] = redact(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", datefmt="%H:%M:%S",
    ))
    return handler


def _file_handler(config: LoggingConfig, log_dir: Path) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=config.max_file_size_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    if config.enable_json:
        handler.setFormatter(StructuredLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    return handler


def configure_root_logger(
    config: LoggingConfig,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    Install Rollcall's handlers on the root logger.

    Existing root handlers are replaced, so calling this twice does not
    duplicate output. The file handler is only added when enabled and a
    log directory is given.

    Returns:
        The configured root logger
    """
    root = logging.getLogger()
    root.setLevel(config.level.upper())
    root.handlers.clear()

    handlers = []
    if config.enable_console:
        handlers.append(_console_handler())
    if config.enable_file and log_dir is not None:
        handlers.append(_file_handler(config, Path(log_dir)))

    secure_filter = SecureLogFilter()
    for handler in handlers:
        handler.addFilter(secure_filter)
        root.addHandler(handler)

    return root
