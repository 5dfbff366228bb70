"""
Structured logging setup using structlog directly.

No wrappers, just standard structlog configuration.
"""

import logging
from typing import Any

import structlog

from dotmac.entitlements.settings import settings


def setup_logging() -> None:
    """
    Setup structured logging with structlog.

    Uses settings from centralized configuration.
    """
    logging.basicConfig(format="%(message)s", level=settings.observability.log_level.value)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger.

    Args:
        name: Logger name, defaults to caller's module name

    Returns:
        Configured structured logger
    """
    return structlog.get_logger(name)


def get_audit_logger() -> structlog.stdlib.BoundLogger:
    """Get a logger specifically for audit events."""
    return structlog.get_logger("audit")


def log_audit_event(
    action: str,
    entity_type: str,
    entity_id: str,
    performed_by: str | None = None,
    **kwargs: Any,
) -> None:
    """
    Log an audit event as a structured log entry.

    Persisted audit records live in the audit log; this mirrors them
    into the log stream so they show up next to the request that caused them.
    """
    get_audit_logger().info(
        action,
        audit_entity_type=entity_type,
        audit_entity_id=entity_id,
        audit_performed_by=performed_by,
        **kwargs,
    )


# Initialize on import
setup_logging()
