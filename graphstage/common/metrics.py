"""
Prometheus metrics for staging and querying.

Provides counters, histograms, and gauges for tracking:
- Staging and query calls by outcome
- Rows materialized
- Call latency
- Live sessions
"""

import time
from functools import wraps
from typing import Callable

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
)

from graphstage.config.settings import get_settings

REGISTRY = CollectorRegistry()

# ========== Counters ==========

requests_total = Counter(
    "graphstage_requests_total",
    "Total number of engine calls",
    ["operation", "status"],  # stage/query, success/failure
    registry=REGISTRY,
)

staged_rows_total = Counter(
    "graphstage_staged_rows_total",
    "Total number of rows materialized into session stores",
    registry=REGISTRY,
)

rejected_statements_total = Counter(
    "graphstage_rejected_statements_total",
    "Total number of SQL statements rejected before execution",
    registry=REGISTRY,
)

# ========== Histograms ==========

operation_latency_seconds = Histogram(
    "graphstage_operation_latency_seconds",
    "Time to complete an engine call",
    ["operation"],  # stage/query
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

# ========== Gauges ==========

active_sessions = Gauge(
    "graphstage_active_sessions",
    "Number of session stores held by the registry",
    registry=REGISTRY,
)


# ========== Metric Decorators ==========

def track_operation(operation: str):
    """
    Decorator to track latency and outcome of an engine call.

    Args:
        operation: Name of the call (stage/query)
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not get_settings().metrics_enabled:
                return func(*args, **kwargs)

            start_time = time.perf_counter()
            status = "success"
            try:
                result = func(*args, **kwargs)
                if isinstance(result, dict) and result.get("success") is False:
                    status = "failure"
                return result
            except Exception:
                status = "failure"
                raise
            finally:
                duration = time.perf_counter() - start_time
                operation_latency_seconds.labels(
                    operation=operation).observe(duration)
                requests_total.labels(
                    operation=operation, status=status).inc()

        return wrapper
    return decorator


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus format.

    Returns:
        Metrics as bytes
    """
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get content type for metrics response."""
    return CONTENT_TYPE_LATEST
