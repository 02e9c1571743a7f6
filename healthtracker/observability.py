"""Logging configuration and metrics for the visit service."""

from __future__ import annotations

import logging
from typing import Callable, Optional

import structlog
from prometheus_client import REGISTRY, Counter, Gauge

from healthtracker.events import ConcurrencyEvent, EventBus


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames=()):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


CONCURRENCY_EVENTS = _get_or_create_metric(
    Counter,
    "healthtracker_concurrency_events_total",
    "Concurrency lifecycle events by type",
    ["type"],
)
OFFLINE_QUEUE_DEPTH = _get_or_create_metric(
    Gauge,
    "healthtracker_offline_queue_depth",
    "Visit updates waiting in the offline queue",
)
REPORT_FALLBACKS = _get_or_create_metric(
    Counter,
    "healthtracker_report_fallbacks_total",
    "Generated text replaced by the templated default",
    ["kind"],
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through stdlib logging with JSON output."""

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
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


class ConcurrencyMonitor:
    """Bus subscriber that logs and counts every concurrency event."""

    def __init__(self, logger: Optional[structlog.stdlib.BoundLogger] = None) -> None:
        self._logger = logger or structlog.get_logger("healthtracker.concurrency_monitor")
        self._unsubscribe: Optional[Callable[[], None]] = None

    def __call__(self, event: ConcurrencyEvent) -> None:
        CONCURRENCY_EVENTS.labels(type=event.type.value).inc()
        log = self._logger.warning if event.type.value == "conflict" else self._logger.info
        log(
            "concurrency_event",
            event_id=event.id,
            event_type=event.type.value,
            resource=event.resource,
            details=event.details,
        )

    def attach(self, bus: EventBus) -> "ConcurrencyMonitor":
        self.detach()
        self._unsubscribe = bus.subscribe(self)
        return self

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


__all__ = [
    "CONCURRENCY_EVENTS",
    "OFFLINE_QUEUE_DEPTH",
    "REPORT_FALLBACKS",
    "ConcurrencyMonitor",
    "configure_logging",
]
