"""
Centralized logging manager for the application.

Every module obtains its logger through get_logger(). All loggers share the
handlers of the application logger:

- A console StreamHandler on stdout is always attached.
- When LOKI_ENABLED is set, a LokiLoggerHandler pushes records to Loki as well.
  If Loki becomes unavailable at runtime, records sent to the Loki handler may
  be dropped; console output is unaffected.

Usage:
    logger = get_logger(prefix="[FamilyManager]")
    logger.info("Family created: %s", family_id)
"""

import logging
import sys
import threading

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from expense_tracker.config import settings

APP_LOGGER_NAME: str = "expense_tracker"
LOG_LEVEL: str = settings.LOG_LEVEL.upper()
LOKI_TAGS: dict[str, str] = {"app": settings.APP_NAME, "env": settings.ENV}
_SETUP_LOCK = threading.Lock()


class PrefixFilter(logging.Filter):
    """Prepend a fixed prefix such as "[FamilyManager]" to each record message."""

    def __init__(self, prefix: str) -> None:
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logger.level)
    logger.addHandler(console_handler)
    return True


def _ensure_loki_handler(logger: logging.Logger) -> None:
    if any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        return
    try:
        loki_handler = LokiLoggerHandler(
            url=settings.LOKI_URL,
            labels=LOKI_TAGS,
            auth=None,
            compressed=settings.LOKI_COMPRESS,
        )
        logger.addHandler(loki_handler)
        logger.info("[LoggingManager] LokiLoggerHandler attached (url=%s, labels=%s)", settings.LOKI_URL, LOKI_TAGS)
    except (ValueError, OSError) as e:
        logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s", e, exc_info=True)


def _configure_app_logger() -> logging.Logger:
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    with _SETUP_LOCK:
        app_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")
        _ensure_console_handler(app_logger, formatter)
        if settings.LOKI_ENABLED:
            _ensure_loki_handler(app_logger)
    return app_logger


def get_logger(name: str = APP_LOGGER_NAME, prefix: str = "") -> logging.Logger:
    """
    Get a configured logger.

    Args:
        name: Logger name. Names outside the application namespace are nested under it
            so that they share its handlers.
        prefix: Optional message prefix, e.g. "[DATABASE]". Each distinct prefix gets its
            own child logger.

    Returns:
        logging.Logger: The configured logger instance.
    """
    app_logger = _configure_app_logger()
    if name != APP_LOGGER_NAME and not name.startswith(f"{APP_LOGGER_NAME}."):
        name = f"{APP_LOGGER_NAME}.{name}"
    if prefix:
        slug = prefix.strip("[]").strip().replace(" ", "_").lower()
        name = f"{name}.{slug}"
    if name == APP_LOGGER_NAME:
        return app_logger

    logger = logging.getLogger(name)
    if prefix and not any(isinstance(f, PrefixFilter) for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))
    return logger
