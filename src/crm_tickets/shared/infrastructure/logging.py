"""
Structured Logging
==================

JSON logs on stdout. The request correlation id lives in a context variable
so every record emitted while serving a request (repositories and the
escalation sweep included) carries it without threading it through calls.

Usage:
    from crm_tickets.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Ticket escalated", extra={"ticket_id": "..."})
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from pythonjsonlogger import jsonlogger

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_REDACTED = "***REDACTED***"
_SENSITIVE_MARKERS = ("password", "api_key", "webhook_url", "token", "secret")

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "apscheduler", "httpx")


class CorrelationIdFilter(logging.Filter):
    """Stamps the current correlation id onto records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_var.get()
        return True


class TicketJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp and environment, and masking secrets."""

    def __init__(self, *args: Any, environment: str = "unknown", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._environment = environment

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        log_record["environment"] = self._environment
        if log_record.get("correlation_id") is None:
            log_record.pop("correlation_id", None)

        for key, value in log_record.items():
            if isinstance(value, str) and any(m in key.lower() for m in _SENSITIVE_MARKERS):
                log_record[key] = _REDACTED


def setup_logging(level: str = "INFO", environment: str = "development") -> None:
    """
    Replace root handlers with a single JSON stdout handler.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        environment: Written into every record
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(
        TicketJsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
            environment=environment,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


@contextmanager
def log_latency(logger: logging.Logger, operation: str, **extra_context: Any) -> Iterator[None]:
    """
    Log how long the wrapped block took, and whether it raised.

    Usage:
        with log_latency(logger, "escalation_sweep"):
            await sweep.process_escalations()
    """
    start = time.perf_counter()
    outcome = "ok"
    try:
        yield
    except BaseException:
        outcome = "error"
        raise
    finally:
        logger.info(
            f"{operation} finished",
            extra={
                "operation": operation,
                "outcome": outcome,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                **extra_context,
            },
        )
