"""Structured logging for electron-pilot.

structlog writes to stderr, rendered for a console or as JSON lines
(PILOT_LOG_FORMAT). Components take their logger from Loggers, and the
security manager binds execution_id around each request.
"""

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from electron_pilot.config import PilotSettings


def configure_logging(settings: "PilotSettings | None" = None) -> None:
    """Configure structured logging based on settings.

    Args:
        settings: Application settings. If None, uses defaults.
    """
    log_level = logging.WARNING
    log_format = "console"

    if settings is not None:
        log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
        log_format = settings.log_format

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name) if name else structlog.get_logger()


@contextmanager
def execution_context(**kwargs: object) -> Iterator[None]:
    """Bind logging context for one operation and restore it afterwards.

    Example:
        with execution_context(execution_id="abc123"):
            logger.info("validating")  # Will include execution_id
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


class Loggers:
    """Pre-configured logger instances for electron-pilot components."""

    @staticmethod
    def security() -> structlog.stdlib.BoundLogger:
        """Logger for the security manager and validator."""
        return get_logger("electron_pilot.security")

    @staticmethod
    def sandbox() -> structlog.stdlib.BoundLogger:
        """Logger for sandboxed execution."""
        return get_logger("electron_pilot.sandbox")

    @staticmethod
    def audit() -> structlog.stdlib.BoundLogger:
        """Logger for the audit sink (operator channel)."""
        return get_logger("electron_pilot.audit")

    @staticmethod
    def access() -> structlog.stdlib.BoundLogger:
        """Logger for authentication and sessions."""
        return get_logger("electron_pilot.access")

    @staticmethod
    def target() -> structlog.stdlib.BoundLogger:
        """Logger for the target connection and command layer."""
        return get_logger("electron_pilot.target")

    @staticmethod
    def config() -> structlog.stdlib.BoundLogger:
        """Logger for configuration."""
        return get_logger("electron_pilot.config")
