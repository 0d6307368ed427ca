"""Logging configuration for sync and backup events.

Sync components log through loggers below ``vroom_sync``. Structured
context travels in the record's ``extra`` and is appended to each line by
``SyncEventFormatter``.
"""

import logging
import sys
import time
from datetime import datetime
from typing import Mapping, Optional, TextIO

ROOT_LOGGER = "vroom_sync"

LINE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Latency thresholds for performance records, in milliseconds
SLOW_OPERATION_MS = 10000
NOTABLE_OPERATION_MS = 2000


class SyncEventFormatter(logging.Formatter):
    """Appends the structured sync fields present on a record as ``[key=value, ...]``."""

    STRUCTURED_FIELDS = ('user_id', 'sync_type', 'event_type', 'table', 'mode')

    def format(self, record: logging.LogRecord) -> str:
        base_msg = super().format(record)
        context = [f"{name}={record.__dict__[name]}"
                   for name in self.STRUCTURED_FIELDS if name in record.__dict__]
        if not context:
            return base_msg
        return f"{base_msg} [{', '.join(context)}]"


def setup_sync_logging(log_level: str = "INFO",
                       stream: Optional[TextIO] = None) -> logging.Logger:
    """Attach the sync handler to the package logger, once.

    Lines go to stderr by default so command output on stdout stays
    machine readable.

    Args:
        log_level: Level for the package logger and its handler
        stream: Stream to write to instead of stderr

    Returns:
        The package logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    if logger.handlers:
        return logger

    level = getattr(logging, log_level.upper())
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(SyncEventFormatter(fmt=LINE_FORMAT, datefmt=DATE_FORMAT))

    logger.setLevel(level)
    logger.addHandler(handler)
    return logger


def _event_extra(event_type: str, user_id: str, **fields) -> dict:
    return {'event_type': event_type, 'user_id': user_id,
            'timestamp': datetime.now().isoformat(), **fields}


def log_sync_event(logger: logging.Logger, event_type: str, user_id: str,
                   message: str, **kwargs) -> None:
    """Log a sync event; events ending in ``_failed`` are warnings.

    Args:
        logger: Logger instance
        event_type: sync_started, mirror_synced, sync_failed, ...
        user_id: User the sync runs for
        message: Human-readable message
        **kwargs: Additional fields to include in log
    """
    level = logging.WARNING if event_type.endswith('_failed') else logging.INFO
    logger.log(level, message, extra=_event_extra(event_type, user_id, **kwargs))


def log_restore_event(logger: logging.Logger, user_id: str, mode: str,
                      outcome: str, counts: Optional[Mapping[str, int]] = None,
                      **kwargs) -> None:
    """Log the outcome of a restore with its per-table counts.

    Failed restores are errors, aborted merges are warnings.
    """
    counts = dict(counts or {})
    summary = ", ".join(f"{name}={value}" for name, value in counts.items()) or "no records"

    if outcome == "failed":
        level = logging.ERROR
    elif outcome == "conflicts":
        level = logging.WARNING
    else:
        level = logging.INFO

    logger.log(level, f"Restore {outcome} in {mode} mode ({summary})",
               extra=_event_extra(f"restore_{outcome}", user_id, mode=mode,
                                  **counts, **kwargs))


def log_performance_metrics(logger: logging.Logger, operation: str,
                            latency_ms: float, **kwargs) -> None:
    """Log how long an operation took.

    Args:
        logger: Logger instance
        operation: Name of the operation being measured
        latency_ms: Operation latency in milliseconds
        **kwargs: Additional performance metrics
    """
    extra = {
        'event_type': 'performance_metrics',
        'operation': operation,
        'latency_ms': round(latency_ms, 2),
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    if latency_ms > SLOW_OPERATION_MS:
        logger.warning(f"Slow operation detected: {operation} took {latency_ms:.2f}ms", extra=extra)
    elif latency_ms > NOTABLE_OPERATION_MS:
        logger.info(f"Performance: {operation} took {latency_ms:.2f}ms", extra=extra)
    else:
        logger.debug(f"Performance: {operation} took {latency_ms:.2f}ms", extra=extra)


class PerformanceTimer:
    """Times a block and logs it with ``log_performance_metrics``.

    A failing block is logged with its error and error type; the exception
    still propagates.
    """

    def __init__(self, logger: logging.Logger, operation: str, **kwargs):
        self.logger = logger
        self.operation = operation
        self.kwargs = kwargs
        self.elapsed_ms: Optional[float] = None
        self._started: Optional[float] = None

    def __enter__(self) -> "PerformanceTimer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        fields = dict(self.kwargs)
        if exc_type is not None:
            fields['error'] = str(exc_val)
            fields['error_type'] = exc_type.__name__
        log_performance_metrics(self.logger, self.operation, self.elapsed_ms, **fields)
        return False


def get_logger(name: str, log_level: str = "INFO") -> logging.Logger:
    """Logger for a sync component, making sure the package handler exists."""
    setup_sync_logging(log_level)
    return logging.getLogger(name)
