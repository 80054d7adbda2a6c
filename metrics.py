"""Prometheus metrics for ledger operations."""
from __future__ import annotations

import os
import time
from typing import Iterable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

REGISTRY = CollectorRegistry()

_ENV = (os.getenv("APP_ENV") or "prod").strip() or "prod"
_SERVICE = "credit-ledger"


def _labels(**extra: str) -> dict[str, str]:
    return {"env": _ENV, "service": _SERVICE, **extra}


ledger_operations_total = Counter(
    "ledger_operations_total",
    "Ledger operations grouped by operation and outcome",
    labelnames=("op", "outcome", "env", "service"),
    registry=REGISTRY,
)

ledger_operation_seconds = Histogram(
    "ledger_operation_seconds",
    "Wall time of ledger operations including retries",
    labelnames=("op", "env", "service"),
    registry=REGISTRY,
)

ledger_pages_total = Counter(
    "ledger_pages_total",
    "Pages moved through the ledger grouped by direction",
    labelnames=("direction", "env", "service"),
    registry=REGISTRY,
)

support_actions_total = Counter(
    "support_actions_total",
    "Administrator support actions grouped by action and final status",
    labelnames=("action", "status", "env", "service"),
    registry=REGISTRY,
)

_START_TIME = time.time()

process_uptime_seconds = Gauge(
    "process_uptime_seconds",
    "Process uptime in seconds",
    labelnames=("env", "service"),
    registry=REGISTRY,
)


def record_operation(op: str, outcome: str, duration: float) -> None:
    ledger_operations_total.labels(**_labels(op=op, outcome=outcome)).inc()
    ledger_operation_seconds.labels(**_labels(op=op)).observe(max(0.0, duration))


def record_pages(direction: str, pages: int) -> None:
    if pages > 0:
        ledger_pages_total.labels(**_labels(direction=direction)).inc(pages)


def record_support_action(action: str, status: str) -> None:
    support_actions_total.labels(**_labels(action=action, status=status)).inc()


def render_metrics() -> bytes:
    """Return the current metrics payload in Prometheus text format."""

    process_uptime_seconds.labels(**_labels()).set(max(0.0, time.time() - _START_TIME))
    return generate_latest(REGISTRY)


__all__: Iterable[str] = [
    "REGISTRY",
    "ledger_operations_total",
    "ledger_operation_seconds",
    "ledger_pages_total",
    "support_actions_total",
    "process_uptime_seconds",
    "record_operation",
    "record_pages",
    "record_support_action",
    "render_metrics",
]
