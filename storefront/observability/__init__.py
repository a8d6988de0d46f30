"""Observability helpers: logging, metrics, and health checks."""

from .logging_config import configure_logging, ensure_request_id
from .metrics import (
    increment_counter,
    set_gauge,
    observe_latency,
    record_event,
    timed,
    get_metrics_snapshot,
)
from .health import check_database_health, build_health_report

__all__ = [
    "configure_logging",
    "ensure_request_id",
    "increment_counter",
    "set_gauge",
    "observe_latency",
    "record_event",
    "timed",
    "get_metrics_snapshot",
    "check_database_health",
    "build_health_report",
]
