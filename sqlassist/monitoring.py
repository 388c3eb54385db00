# sqlassist/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple, Dict, Any, Optional

from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)

# Optional imports, degrade gracefully if not installed
try:
    from pythonjsonlogger import jsonlogger
    _HAS_JSON_LOGGER = True
except ImportError:
    _HAS_JSON_LOGGER = False

try:
    import sentry_sdk
    _HAS_SENTRY = True
except ImportError:
    _HAS_SENTRY = False

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "sql-assistant", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper()) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON and _HAS_JSON_LOGGER:
            fmt = jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            )
            handler.setFormatter(fmt)
        logger.addHandler(handler)
    return logger


logger = setup_logger()

# --- Sentry (optional)
if SENTRY_DSN and _HAS_SENTRY:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "sqlassist_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "sqlassist_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

EVENT_COUNTER = Counter(
    "sqlassist_events_total",
    "Pipeline events (generate_rest, generate_ws, execute_sql, ...)",
    ["event", "outcome"],
)

EVENT_LATENCY = Histogram(
    "sqlassist_event_duration_seconds",
    "Pipeline event duration in seconds",
    ["event"],
)

SQL_REJECTIONS = Counter(
    "sqlassist_sql_rejections_total",
    "SQL statements rejected by the safety validator",
    ["reason"],
)

SCHEMA_TABLES_INCLUDED = Gauge(
    "sqlassist_schema_tables_included",
    "Tables embedded in the last schema context",
)

PROGRESS_ENTRIES = Gauge(
    "sqlassist_progress_entries",
    "Entries held by the progress tracker",
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def record(event: str, duration: float, success: bool, metadata: Optional[Dict[str, Any]] = None):
    """Fire-and-forget event record: one counter tick, one latency sample, one log line."""
    outcome = "success" if success else "failure"
    try:
        EVENT_COUNTER.labels(event=event, outcome=outcome).inc()
        EVENT_LATENCY.labels(event=event).observe(max(0.0, duration))
    except Exception:
        pass
    try:
        extra = {"event": event, "outcome": outcome, "duration_ms": int(duration * 1000)}
        for k, v in (metadata or {}).items():
            extra.setdefault(k, v)
        logger.info("event recorded", extra=extra)
    except Exception:
        pass


def inc_sql_rejection(reason: str):
    try:
        SQL_REJECTIONS.labels(reason=reason[:80]).inc()
    except Exception:
        pass


def set_schema_tables_included(n: int):
    try:
        SCHEMA_TABLES_INCLUDED.set(n)
    except Exception:
        pass


def set_progress_entries(n: int):
    try:
        PROGRESS_ENTRIES.set(n)
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
