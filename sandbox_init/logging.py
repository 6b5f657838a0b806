# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Centralized logging configuration with secret redaction.

Every stage transition is written to standard output with a timestamp
and a plain marker (``pass``, ``info``, ``warn``, ``fail``).  Records
that report a completed step pass ``extra=PASS``; all other markers are
derived from the record level.

Usage:
    # In the entry point
    from sandbox_init.logging import configure_logging
    configure_logging(level=logging.INFO)

    # In library modules
    import logging
    from sandbox_init.logging import PASS
    logger = logging.getLogger(__name__)
    logger.info("Proxy API is ready", extra=PASS)
"""

import logging
import re
import sys
from typing import ClassVar


#: ``extra`` mapping that marks a record as a passed step.
PASS = {"marker": "pass"}

_LEVEL_MARKERS = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "fail",
    logging.CRITICAL: "fail",
}

DEFAULT_FORMAT = "%(asctime)s [%(marker)s] %(message)s"


class SecretFilter(logging.Filter):
    """Logging filter that redacts registered secrets from log output.

    Secrets can be registered at runtime using register_secret().
    Any registered secret appearing in a log message will be replaced
    with '[REDACTED]'.

    Example:
        filter = SecretFilter()
        filter.register_secret("my-api-key-12345")
        logger.addFilter(filter)
        logger.info("Using key: my-api-key-12345")
        # Output: "Using key: [REDACTED]"
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter log record by redacting any registered secrets.

        Args:
            record: The log record to filter.

        Returns:
            Always True (record is never suppressed, only modified).
        """
        if self._pattern is not None:
            record.msg = self._pattern.sub("[REDACTED]", str(record.msg))
            if record.args:
                record.args = tuple(
                    self._pattern.sub("[REDACTED]", str(arg))
                    if isinstance(arg, str)
                    else arg
                    for arg in record.args
                )
        return True

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Register a secret to be redacted from all log output.

        Args:
            secret: The secret string to redact. Empty strings are ignored.
        """
        if secret:
            cls._secrets.add(secret)
            cls._rebuild_pattern()

    @classmethod
    def clear_secrets(cls) -> None:
        """Clear all registered secrets. Primarily for testing."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def _rebuild_pattern(cls) -> None:
        """Rebuild the compiled regex pattern from registered secrets."""
        if cls._secrets:
            # Longest first so overlapping secrets are fully redacted
            ordered = sorted(cls._secrets, key=len, reverse=True)
            escaped = [re.escape(s) for s in ordered]
            cls._pattern = re.compile("|".join(escaped))
        else:
            cls._pattern = None


class MarkerFormatter(logging.Formatter):
    """Formatter that fills ``%(marker)s`` from the record or its level."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "marker"):
            record.marker = _LEVEL_MARKERS.get(record.levelno, "info")
        return super().format(record)


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Configure logging for the application.

    Sets up the root logger with a single stdout handler and optional
    secret redaction filter.

    Args:
        level: The logging level (e.g., logging.INFO, logging.DEBUG).
        format_string: Custom format string. If None, uses default format.
        add_secret_filter: Whether to add the SecretFilter to redact secrets.
    """
    if format_string is None:
        format_string = DEFAULT_FORMAT

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        MarkerFormatter(format_string, datefmt="%Y-%m-%dT%H:%M:%S")
    )

    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)

    # httpx logs every request at INFO; keep those out of startup output
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def parse_level(name: str | None) -> int:
    """Map a level name such as ``"debug"`` to a logging level.

    Unknown or empty names fall back to ``logging.INFO``.
    """
    if not name:
        return logging.INFO
    value = logging.getLevelName(name.strip().upper())
    return value if isinstance(value, int) else logging.INFO
