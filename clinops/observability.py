"""Logging configuration and Prometheus metrics for the job pipeline."""

from __future__ import annotations

import logging
import os
from typing import Optional

import structlog
from prometheus_client import REGISTRY, Counter, Histogram, start_http_server


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames, **kwargs):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames, **kwargs)


JOBS_PROCESSED = _get_or_create_metric(
    Counter,
    "clinops_jobs_processed_total",
    "Queue jobs processed by job type and outcome",
    ("job_type", "outcome"),
)
JOB_DURATION = _get_or_create_metric(
    Histogram,
    "clinops_job_duration_seconds",
    "Wall-clock duration of queue jobs",
    ("job_type",),
)
RETRIES_SCHEDULED = _get_or_create_metric(
    Counter,
    "clinops_retries_scheduled_total",
    "Jobs re-enqueued after a transient failure",
    ("job_type",),
)
AI_CHECK_CALLS = _get_or_create_metric(
    Counter,
    "clinops_ai_check_calls_total",
    "AI check invocations by check type and outcome",
    ("check_type", "outcome"),
)
FINGERPRINT_REUSE = _get_or_create_metric(
    Counter,
    "clinops_fingerprint_reuse_total",
    "Note checks answered from a stored result with the same fingerprint",
    (),
)
UPSTREAM_FAILURES = _get_or_create_metric(
    Counter,
    "clinops_upstream_failures_total",
    "Failed calls to the upstream EHR",
    ("reason",),
)
VITALS_PROCESSED = _get_or_create_metric(
    Counter,
    "clinops_vitals_processed_total",
    "Encounters recorded by the vital-signs carry-forward by outcome",
    ("outcome",),
)

_CONFIGURED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging and structlog once per process."""

    global _CONFIGURED
    if _CONFIGURED:
        return

    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), format="%(message)s")

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
    _CONFIGURED = True


def start_metrics_server(port: Optional[int]) -> bool:
    """Expose the default registry over HTTP when ``port`` is set."""

    if not port:
        return False
    start_http_server(port)
    structlog.get_logger(__name__).info("metrics_server_started", port=port)
    return True


__all__ = [
    "AI_CHECK_CALLS",
    "FINGERPRINT_REUSE",
    "JOBS_PROCESSED",
    "JOB_DURATION",
    "RETRIES_SCHEDULED",
    "UPSTREAM_FAILURES",
    "VITALS_PROCESSED",
    "configure_logging",
    "start_metrics_server",
]
