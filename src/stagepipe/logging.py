"""Structured logging configuration for stagepipe.

This module configures structlog with:
- JSON output format for log aggregation
- Consistent context binding (session_id, operation, table)
- Timestamp formatting in ISO 8601
- Log level filtering
- Staging credentials masked before rendering

Usage:
    from stagepipe.logging import configure_logging, create_job_logger

    # Configure once at application startup
    configure_logging(log_level="INFO", json_output=True)

    # Get a logger bound to one write/read job
    logger = create_job_logger(session_id="abc-123", operation="write", table="sales")
    logger.info("commit_started")
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

from stagepipe.config import settings

# Option and config keys whose values never reach the log
CREDENTIAL_KEYS = frozenset(
    {
        "s3_secret_access_key",
        "s3_session_token",
        "aws_secret_access_key",
        "aws_session_token",
        "password",
    }
)
REDACTED = "***"


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add ISO 8601 timestamp to log entries."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_service_name(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add service name to log entries."""
    event_dict["service"] = "stagepipe"
    return event_dict


def redact_credentials(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mask staging credentials, including inside logged option maps."""
    for key, value in event_dict.items():
        if key.lower() in CREDENTIAL_KEYS and value is not None:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in CREDENTIAL_KEYS and v is not None else v
                for k, v in value.items()
            }
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
) -> None:
    """
    Configure structlog for the pipes.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Whether to output JSON (True) or human-readable (False)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Any] = [
        structlog.stdlib.add_log_level,
        add_timestamp,
        add_service_name,
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger() -> structlog.BoundLogger:
    """Get a structlog logger instance."""
    return structlog.get_logger()  # type: ignore[no-any-return]


def create_job_logger(
    session_id: str,
    operation: str,
    table: str | None = None,
) -> structlog.BoundLogger:
    """
    Create a logger with the job context bound to all entries.

    Args:
        session_id: Unique identifier of the write or read job
        operation: Operation type (e.g., "write", "read", "commit")
        table: Target or source table, omitted for query sources

    Returns:
        A logger with context bound
    """
    log = get_logger().bind(session_id=session_id, operation=operation)
    if table is not None:
        log = log.bind(table=table)
    return log


# Configure logging on module import from the environment defaults
# Can be reconfigured by calling configure_logging() again
configure_logging(log_level=settings.log_level, json_output=settings.log_json)
