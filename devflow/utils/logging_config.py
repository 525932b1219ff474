"""
Logging configuration using structlog for structured, JSON-based logging.

This module provides centralized logging setup for the engine and the CLI,
with support for contextual logging and structured output.
"""

import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging with JSON output on stderr.

    Sets up structlog with a pipeline of processors that add timestamps,
    log levels, stack traces and bound context to every event. Logs go to
    stderr so command results on stdout stay machine-readable.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Example:
        >>> configure_logging("DEBUG")
        >>> log = structlog.get_logger(__name__)
        >>> log.info("branch_created", repository="acme/api", branch="feature/x")
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.lower()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=True,
    )


@contextmanager
def operation_context(operation: str, operation_id: str | None = None, **fields: Any) -> Iterator[str]:
    """Tag every log event emitted inside the block with one operation id.

    Coordinated calls touch many repositories; the shared ``operation_id``
    ties their gateway, rollback and event logs together.

    Yields:
        The operation id (generated when not given)
    """
    operation_id = operation_id or uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(operation=operation, operation_id=operation_id, **fields):
        yield operation_id
