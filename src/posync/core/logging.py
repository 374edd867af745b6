"""Structured logging configuration for PO sync alerts.

Uses structlog for JSON-formatted logs to stdout. Every alert cycle gets a
correlation ID (alert_cycle_id) stored in a contextvar so that all entries
written during the cycle, including those from the store and the accounting
client, can be traced together.

Usage:
    from posync.core.logging import get_logger, set_correlation_id

    logger = get_logger(__name__)

    set_correlation_id(str(uuid.uuid4()))
    logger.info("alert_created", alert_id=12, alert_type="po_detected")
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

_correlation_id: ContextVar[str | None] = ContextVar("alert_cycle_id", default=None)

# Contact addresses are PII; only this many characters reach the logs
PII_TRUNCATE_LENGTH = 20


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the alert cycle ID for the current context.

    Args:
        correlation_id: UUID string for this cycle, or None to clear
    """
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get the current alert cycle ID, if set."""
    return _correlation_id.get()


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor that stamps entries with the alert cycle ID."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict.setdefault("alert_cycle_id", correlation_id)
    return event_dict


def truncate_pii(value: str | None, length: int = PII_TRUNCATE_LENGTH) -> str:
    """Shorten an email address or name before it is logged."""
    if not value:
        return ""
    return value[:length]


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_correlation_id,
    ]


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog output through stdlib logging on stdout.

    Safe to call again with different settings; ``watch`` does so once the
    config file has been read.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: JSON lines for scheduled runs, coloured console output otherwise
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    if json_output:
        renderers: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=_shared_processors() + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Logger bound to ``name``, usually the calling module's ``__name__``."""
    return structlog.get_logger(name)
