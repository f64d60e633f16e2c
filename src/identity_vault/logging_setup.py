"""Process-wide structlog and stdlib logging configuration."""

from __future__ import annotations

import logging

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import Settings

_LOGGING_CONFIGURED = False


class _ExpectedErrorFilter(logging.Filter):
    """Drop tracebacks for routine storage conditions.

    Lock contention and fallback activation are logged as warnings already; a
    full stack trace adds nothing.
    """

    _EXPECTED_PATTERNS = (
        "database is locked",
        "database is busy",
        "unable to open database",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info and record.exc_info[1] is not None:
            message = str(record.exc_info[1]).lower()
            if any(pattern in message for pattern in self._EXPECTED_PATTERNS):
                record.exc_info = None
                record.exc_text = None
        return True


def configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    # Idempotent setup
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "id", "pending"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if settings.log_rich_enabled and not settings.log_json_enabled:
        rich_handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_path=False,
        )
        logging.basicConfig(level=level, handlers=[rich_handler], format="%(message)s")
    else:
        logging.basicConfig(level=level)
    for handler in logging.getLogger().handlers:
        handler.addFilter(_ExpectedErrorFilter())

    # Suppress verbose aiosqlite DEBUG logs (functools.partial cursor/operation noise)
    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    # Suppress filelock DEBUG logs (lock acquire/release routine operations)
    logging.getLogger("filelock").setLevel(logging.INFO)

    _LOGGING_CONFIGURED = True


def reset_logging_state() -> None:
    """Allow configure_logging() to run again (tests)."""
    global _LOGGING_CONFIGURED
    _LOGGING_CONFIGURED = False
