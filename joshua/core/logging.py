"""
Structured logging setup.

All modules log through ``structlog.get_logger(__name__)`` with snake_case
event names and key/value context; this module wires the processors once
per process.
"""

import logging
import sys

import structlog


def add_component(logger, method_name, event_dict):
    """Tag every log line with the engine component name."""
    event_dict.setdefault("component", "joshua")
    return event_dict


def ensure_logging(level: str = "INFO", fmt: str = "console") -> bool:
    """Configure logging unless the host process already did; True if configured here."""
    if structlog.is_configured():
        return False
    configure_logging(level, fmt)
    return True


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    """
    Configure stdlib logging and structlog.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        fmt: "json" for machine-readable output, anything else for console
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            add_component,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if fmt == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
