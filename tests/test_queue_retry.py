from datetime import timedelta

import pytest
import requests

from clinops.config import RetrySettings
from clinops.errors import AIProviderError, EHRAuthError, EHRTransientError, RetryExhaustedError
from clinops.queue import ATTEMPTS_KEY, NOTE_CHECK, STATE_ACTIVE, STATE_FAILED, STATE_WAITING, SqlJobQueue
from clinops.retry import FailureKind, RetryController, classify
from clinops.time_utils import utc_now


@pytest.fixture
def queue(database) -> SqlJobQueue:
    return SqlJobQueue(database)


@pytest.fixture
def controller(queue) -> RetryController:
    return RetryController(queue, RetrySettings(base_seconds=30.0, cap_seconds=600.0, max_attempts=3))


def test_enqueue_and_dequeue_in_schedule_order(queue):
    later = queue.enqueue(NOTE_CHECK, {"n": 2}, delay=5)
    first = queue.enqueue(NOTE_CHECK, {"n": 1})

    claimed = queue.dequeue(NOTE_CHECK)
    assert claimed.id == first.id
    assert claimed.attempts_made == 0
    assert queue.dequeue(NOTE_CHECK) is None

    claimed_later = queue.dequeue(NOTE_CHECK, now=utc_now() + timedelta(seconds=10))
    assert claimed_later.id == later.id


def test_job_key_dedups_pending_jobs(queue):
    assert queue.enqueue(NOTE_CHECK, {}, job_key="enc-1") is not None
    assert queue.enqueue(NOTE_CHECK, {}, job_key="enc-1") is None

    job = queue.dequeue(NOTE_CHECK)
    assert queue.enqueue(NOTE_CHECK, {}, job_key="enc-1") is None
    queue.complete(job.id)
    assert queue.enqueue(NOTE_CHECK, {}, job_key="enc-1") is not None


def test_claimed_job_cannot_be_claimed_twice(queue):
    queue.enqueue(NOTE_CHECK, {})
    assert queue.dequeue(NOTE_CHECK) is not None
    assert queue.dequeue(NOTE_CHECK) is None
    assert queue.pending_count(NOTE_CHECK) == 0


def test_release_active_returns_jobs_to_waiting(queue):
    job = queue.enqueue(NOTE_CHECK, {})
    queue.dequeue(NOTE_CHECK)
    assert queue.get(job.id).state == STATE_ACTIVE

    assert queue.release_active() == 1
    assert queue.get(job.id).state == STATE_WAITING


def test_prune_removes_old_finished_jobs(queue):
    job = queue.enqueue(NOTE_CHECK, {})
    queue.dequeue(NOTE_CHECK)
    queue.fail(job.id, "boom")
    assert queue.prune(timedelta(seconds=-1)) == 1
    assert queue.get(job.id) is None


@pytest.mark.parametrize(
    "exc",
    [
        EHRTransientError("GET x timed out"),
        requests.Timeout("slow"),
        requests.ConnectionError("reset"),
        AIProviderError("busy", status_code=529, transient=True),
        RuntimeError("Upstream overloaded"),
        RuntimeError("connect ECONNRESET 10.0.0.1:443"),
    ],
)
def test_transient_signatures(exc):
    assert classify(exc) is FailureKind.TRANSIENT


@pytest.mark.parametrize(
    "exc",
    [EHRAuthError("rejected", status_code=401), AIProviderError("bad request", status_code=400), KeyError("x")],
)
def test_fatal_failures(exc):
    assert classify(exc) is FailureKind.FATAL


def test_backoff_is_capped_exponential(controller):
    assert [controller.backoff_delay(n) for n in range(6)] == [30.0, 60.0, 120.0, 240.0, 480.0, 600.0]


def test_transient_failure_reenqueues_with_incremented_attempts(queue, controller):
    queue.enqueue(NOTE_CHECK, {"item": {"encounterId": "enc-1"}})
    job = queue.dequeue(NOTE_CHECK)

    decision = controller.handle_failure(job, EHRTransientError("timed out"))

    assert decision.retried is True
    assert decision.delay == 30.0
    assert decision.attempts_made == 1
    assert decision.job.payload[ATTEMPTS_KEY] == 1
    assert decision.job.payload["item"] == {"encounterId": "enc-1"}
    assert queue.dequeue(NOTE_CHECK) is None
    retried = queue.dequeue(NOTE_CHECK, now=utc_now() + timedelta(seconds=31))
    assert retried.attempts_made == 1


def test_retry_fails_original_and_keeps_job_key(queue, controller):
    queue.enqueue(NOTE_CHECK, {"item": {"encounterId": "enc-1"}}, job_key="enc-1")
    job = queue.dequeue(NOTE_CHECK)

    decision = controller.handle_failure(job, EHRTransientError("timed out"))

    original = queue.get(job.id)
    assert original.state == STATE_FAILED
    assert original.error == "retry scheduled in 30s: timed out"
    assert decision.job.job_key == "enc-1"
    assert queue.enqueue(NOTE_CHECK, {"item": {"encounterId": "enc-1"}}, job_key="enc-1") is None
    assert queue.pending_count(NOTE_CHECK) == 1


def test_retry_limit_surfaces_as_exhausted(queue, controller):
    queue.enqueue(NOTE_CHECK, {ATTEMPTS_KEY: 3})
    job = queue.dequeue(NOTE_CHECK)

    with pytest.raises(RetryExhaustedError) as excinfo:
        controller.handle_failure(job, EHRTransientError("timed out"))

    assert excinfo.value.attempts == 3
    assert queue.pending_count() == 0


def test_fatal_failure_is_reraised_without_retry(queue, controller):
    queue.enqueue(NOTE_CHECK, {})
    job = queue.dequeue(NOTE_CHECK)

    with pytest.raises(EHRAuthError):
        controller.handle_failure(job, EHRAuthError("rejected", status_code=401))
    assert queue.pending_count() == 0
