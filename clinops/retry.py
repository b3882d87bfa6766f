"""Transient-failure classification and capped exponential backoff.

A failed attempt is either transient (provider overload, upstream timeout,
connection reset) or fatal.  Transient failures fail the current job and
re-enqueue a fresh one under the same job key after
``min(base * 2**attempts, cap)`` seconds with ``attemptsMade`` incremented in
the payload; once the attempt limit is reached they are
surfaced as :class:`~clinops.errors.RetryExhaustedError`.  Fatal failures are
never retried here; the next discovery cycle picks the item up again if it is
still eligible.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

import requests

from clinops.config import RetrySettings
from clinops.errors import AIProviderError, EHRTransientError, RetryExhaustedError
from clinops.observability import RETRIES_SCHEDULED
from clinops.queue import ATTEMPTS_KEY, Job, SqlJobQueue

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504, 529})
TRANSIENT_MESSAGES = ("overloaded", "timeout", "timed out", "etimedout", "econnreset", "rate limit")


class FailureKind(enum.Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class RetryDecision:
    retried: bool
    delay: float = 0.0
    attempts_made: int = 0
    job: Optional[Job] = None


def classify(exc: BaseException) -> FailureKind:
    """Return whether ``exc`` matches a known transient signature."""

    if isinstance(exc, (EHRTransientError, requests.Timeout, requests.ConnectionError)):
        return FailureKind.TRANSIENT
    if isinstance(exc, AIProviderError) and exc.transient:
        return FailureKind.TRANSIENT
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int) and status_code in TRANSIENT_STATUS_CODES:
        return FailureKind.TRANSIENT
    message = str(exc).lower()
    if any(signature in message for signature in TRANSIENT_MESSAGES):
        return FailureKind.TRANSIENT
    return FailureKind.FATAL


class RetryController:
    def __init__(self, queue: SqlJobQueue, settings: RetrySettings) -> None:
        self.queue = queue
        self.settings = settings

    def backoff_delay(self, attempts: int) -> float:
        """Delay in seconds before attempt ``attempts + 1``."""

        return float(min(self.settings.base_seconds * (2 ** max(attempts, 0)), self.settings.cap_seconds))

    def handle_failure(self, job: Job, exc: BaseException) -> RetryDecision:
        """Re-enqueue ``job`` for a transient ``exc`` or raise.

        Raises :class:`RetryExhaustedError` when a transient failure has used
        up the attempt budget and re-raises ``exc`` for fatal failures.
        """

        kind = classify(exc)
        attempts = job.attempts_made
        if kind is FailureKind.FATAL:
            logger.error("Job %s (%s) failed fatally: %s", job.id, job.job_type, exc)
            raise exc

        if attempts >= self.settings.max_attempts:
            logger.error(
                "Job %s (%s) exhausted %d retry attempts: %s", job.id, job.job_type, attempts, exc
            )
            raise RetryExhaustedError(
                f"{job.job_type} failed after {attempts} retries: {exc}", attempts=attempts
            ) from exc

        delay = self.backoff_delay(attempts)
        payload = dict(job.payload)
        payload[ATTEMPTS_KEY] = attempts + 1
        retry_job = self.queue.retry(job, payload, delay=delay, error=f"retry scheduled in {delay:.0f}s: {exc}")
        RETRIES_SCHEDULED.labels(job_type=job.job_type).inc()
        logger.warning(
            "Transient failure for job %s (%s); retry %d/%d in %.0fs: %s",
            job.id,
            job.job_type,
            attempts + 1,
            self.settings.max_attempts,
            delay,
            exc,
        )
        return RetryDecision(retried=True, delay=delay, attempts_made=attempts + 1, job=retry_job)


__all__ = ["FailureKind", "RetryController", "RetryDecision", "classify"]
