"""Logging configuration and Prometheus metrics."""

from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from typing import Iterator

import structlog
from prometheus_client import REGISTRY, Counter, Histogram

from clinictabs.errors import TabConfigError


def configure_logging(level: str | None = None) -> None:
    """Configure stdlib logging and structlog for JSON output."""

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "clinictabs_requests_total",
    "Total HTTP requests processed by the service",
    ("method", "endpoint", "status"),
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "clinictabs_request_latency_seconds",
    "Latency of HTTP requests",
    ("method", "endpoint"),
)
TAB_WRITES = _get_or_create_metric(
    Counter,
    "clinictabs_tab_writes_total",
    "Tab configuration write operations by outcome",
    ("operation", "outcome"),
)


_PATH_PARAM_RE = re.compile(r"/(?:[0-9]+|[0-9a-fA-F]{8,})(?=/|$)")


def normalise_path_for_metrics(path: str) -> str:
    """Reduce high-cardinality segments in request paths for metrics labels."""

    if not path:
        return "/"
    return _PATH_PARAM_RE.sub("/:param", path)


@contextmanager
def track_write(operation: str) -> Iterator[None]:
    """Count a write operation as ``ok``, ``rejected`` or ``error``."""

    try:
        yield
    except TabConfigError:
        TAB_WRITES.labels(operation, "rejected").inc()
        raise
    except Exception:
        TAB_WRITES.labels(operation, "error").inc()
        raise
    TAB_WRITES.labels(operation, "ok").inc()


__all__ = [
    "configure_logging",
    "normalise_path_for_metrics",
    "track_write",
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
    "TAB_WRITES",
]
