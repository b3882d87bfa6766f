"""Background job runtime.

Recurring jobs are enqueued on a fixed interval, and one consumer loop per
job type claims jobs from the durable queue, honouring that job type's
concurrency ceiling.  Discovery, vital-signs carry-forward and completion
polling run strictly one at a time; note checks and eligibility checks run
with bounded parallelism.

Stopping the worker stops claiming new jobs and waits for in-flight jobs to
finish; nothing is preempted mid-job.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import requests
import structlog

from clinops.checks import AI_CHECK_TYPES, CheckRunner
from clinops.config import Settings, get_settings
from clinops.db.session import Database
from clinops.discovery import DiscoveryScheduler
from clinops.ehr_client import EHRClient
from clinops.eligibility import EligibilityService
from clinops.observability import JOB_DURATION, JOBS_PROCESSED
from clinops.openai_client import AIClient
from clinops.orchestrator import AnalysisOrchestrator
from clinops.prompts import PromptLibrary
from clinops.queue import (
    ELIGIBILITY_CHECK,
    ELIGIBILITY_DISCOVERY,
    NOTE_CHECK,
    NOTE_DISCOVERY,
    TASK_POLL,
    VITAL_SIGNS,
    Job,
    SqlJobQueue,
)
from clinops.remediation import RemediationTracker
from clinops.repository import Repository
from clinops.retry import RetryController
from clinops.tokens import TokenManager
from clinops.vital_signs import VitalSignsService
from clinops.work_items import WorkItem

logger = structlog.get_logger(__name__)

Handler = Callable[[Job], Awaitable[Any]]

FINISHED_JOB_RETENTION = timedelta(days=7)


@dataclass
class Runtime:
    """Service objects built once per process and shared by every job."""

    settings: Settings
    database: Database
    repository: Repository
    queue: SqlJobQueue
    client: EHRClient
    tokens: TokenManager
    ai: AIClient
    prompts: PromptLibrary
    runner: CheckRunner
    orchestrator: AnalysisOrchestrator
    retry: RetryController
    discovery: DiscoveryScheduler
    tracker: RemediationTracker
    eligibility: EligibilityService
    vitals: VitalSignsService

    def close(self) -> None:
        self.client.close()
        self.database.dispose()


def build_runtime(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    *,
    http_session: Optional[requests.Session] = None,
    ehr_client: Optional[EHRClient] = None,
    ai_client: Any = None,
) -> Runtime:
    """Wire every service object for one process."""

    settings = settings or get_settings()
    database = database or Database.from_settings()
    repository = Repository(database)
    queue = SqlJobQueue(database)
    client = ehr_client or EHRClient(settings, session=http_session)
    tokens = TokenManager(repository, client, settings)
    ai = AIClient(settings, client=ai_client)
    prompts = PromptLibrary(AI_CHECK_TYPES, settings.prompt_dir)
    runner = CheckRunner(ai, prompts, settings)
    return Runtime(
        settings=settings,
        database=database,
        repository=repository,
        queue=queue,
        client=client,
        tokens=tokens,
        ai=ai,
        prompts=prompts,
        runner=runner,
        orchestrator=AnalysisOrchestrator(repository, client, tokens, runner, settings),
        retry=RetryController(queue, settings.retry),
        discovery=DiscoveryScheduler(repository, client, tokens, queue, settings),
        tracker=RemediationTracker(repository, client, tokens, queue, settings),
        eligibility=EligibilityService(repository, client, tokens, settings),
        vitals=VitalSignsService(repository, client, tokens, settings),
    )


class Worker:
    """Consumer loops and recurring-job timers over a :class:`Runtime`."""

    def __init__(self, runtime: Runtime) -> None:
        self.runtime = runtime
        settings = runtime.settings
        self.handlers: Dict[str, Handler] = {
            NOTE_DISCOVERY: self.handle_note_discovery,
            NOTE_CHECK: self.handle_note_check,
            ELIGIBILITY_DISCOVERY: self.handle_eligibility_discovery,
            ELIGIBILITY_CHECK: self.handle_eligibility_check,
            TASK_POLL: self.handle_task_poll,
            VITAL_SIGNS: self.handle_vital_signs,
        }
        self.concurrency: Dict[str, int] = {
            NOTE_DISCOVERY: 1,
            NOTE_CHECK: max(settings.note_check_concurrency, 1),
            ELIGIBILITY_DISCOVERY: 1,
            ELIGIBILITY_CHECK: max(settings.eligibility_concurrency, 1),
            TASK_POLL: 1,
            VITAL_SIGNS: 1,
        }
        self.intervals: Dict[str, float] = {
            NOTE_DISCOVERY: settings.note_discovery_interval,
            ELIGIBILITY_DISCOVERY: settings.eligibility_discovery_interval,
            TASK_POLL: settings.task_poll_interval,
            VITAL_SIGNS: settings.vitals_interval,
        }
        # Only analysis failures go through the retry controller; the other
        # job types are re-driven by their next scheduled cycle.
        self.retryable: Set[str] = {NOTE_CHECK}
        self._stop = asyncio.Event()
        self._loops: List[asyncio.Task] = []
        self._timers: List[asyncio.Task] = []
        self._inflight: Set[asyncio.Task] = set()

    # -- handlers ------------------------------------------------------

    async def handle_note_discovery(self, job: Job) -> Dict[str, Any]:
        report = await self.runtime.discovery.run_note_discovery_cycle()
        return report.as_dict()

    async def handle_eligibility_discovery(self, job: Job) -> Dict[str, Any]:
        report = await self.runtime.discovery.run_eligibility_discovery_cycle()
        return report.as_dict()

    async def handle_note_check(self, job: Job) -> Dict[str, Any]:
        item = WorkItem.from_payload(job.payload["item"])
        stored = await self.runtime.orchestrator.analyze(
            item,
            force=bool(job.payload.get("force")),
            checked_by=str(job.payload.get("checkedBy") or "system"),
        )
        task_id = None
        if stored.issues:
            task_id = await self.runtime.tracker.create_task(stored, item)
        return {"encounterId": stored.encounter_id, "status": stored.result_status, "taskId": task_id}

    async def handle_eligibility_check(self, job: Job) -> Dict[str, Any]:
        item = WorkItem.from_payload(job.payload["item"])
        ok = await self.runtime.eligibility.process(item)
        return {"encounterId": item.encounter_id, "success": ok}

    async def handle_task_poll(self, job: Job) -> Dict[str, Any]:
        report = await self.runtime.tracker.poll_completions()
        return report.as_dict()

    async def handle_vital_signs(self, job: Job) -> Dict[str, Any]:
        batch = await self.runtime.vitals.run_cycle()
        return batch.as_dict()

    # -- job execution -------------------------------------------------

    async def process_job(self, job: Job) -> Optional[Any]:
        """Run one claimed job and settle its queue row."""

        queue = self.runtime.queue
        handler = self.handlers[job.job_type]
        structlog.contextvars.bind_contextvars(job_id=job.id, job_type=job.job_type)
        started = time.perf_counter()
        try:
            result = await handler(job)
        except Exception as exc:
            outcome = await self._settle_failure(job, exc)
            JOBS_PROCESSED.labels(job_type=job.job_type, outcome=outcome).inc()
            return None
        else:
            await asyncio.to_thread(queue.complete, job.id)
            JOBS_PROCESSED.labels(job_type=job.job_type, outcome="completed").inc()
            logger.info("job_completed", result=result)
            return result
        finally:
            JOB_DURATION.labels(job_type=job.job_type).observe(time.perf_counter() - started)
            structlog.contextvars.unbind_contextvars("job_id", "job_type")

    async def _settle_failure(self, job: Job, exc: Exception) -> str:
        queue = self.runtime.queue
        if job.job_type not in self.retryable:
            logger.error("job_failed", error=str(exc), error_type=type(exc).__name__)
            await asyncio.to_thread(queue.fail, job.id, str(exc) or type(exc).__name__)
            return "failed"
        try:
            decision = await asyncio.to_thread(self.runtime.retry.handle_failure, job, exc)
        except Exception as final:
            logger.error("job_failed", error=str(final), error_type=type(final).__name__)
            await asyncio.to_thread(queue.fail, job.id, str(final) or type(final).__name__)
            return "failed"
        logger.info("job_retry_scheduled", retry_job_id=decision.job.id, delay=decision.delay)
        return "retried"

    # -- loops ---------------------------------------------------------

    async def _consume(self, job_type: str) -> None:
        """Claim and run ``job_type`` jobs up to its concurrency ceiling."""

        slots = asyncio.Semaphore(self.concurrency[job_type])
        poll = self.runtime.settings.queue_poll_interval
        while not self._stop.is_set():
            await slots.acquire()
            try:
                job = await asyncio.to_thread(self.runtime.queue.dequeue, job_type)
            except Exception:
                slots.release()
                logger.exception("queue_dequeue_failed", job_type=job_type)
                await self._idle(poll)
                continue
            if job is None:
                slots.release()
                await self._idle(poll)
                continue
            task = asyncio.create_task(self._run_claimed(job, slots))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _run_claimed(self, job: Job, slots: asyncio.Semaphore) -> None:
        try:
            await self.process_job(job)
        finally:
            slots.release()

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_periodic(self, interval: float, job_type: str) -> None:
        """Enqueue ``job_type`` every ``interval`` seconds (one pending at a time)."""
        while not self._stop.is_set():
            try:
                await asyncio.to_thread(self.runtime.queue.enqueue, job_type, {}, job_key=job_type)
            except Exception:
                logger.exception("recurring_job_enqueue_failed", job_type=job_type)
            await self._idle(interval)

    def start(self) -> None:
        """Start recurring timers and one consumer loop per job type."""

        released = self.runtime.queue.release_active()
        if released:
            logger.info("released_stale_jobs", count=released)
        pruned = self.runtime.queue.prune(FINISHED_JOB_RETENTION)
        if pruned:
            logger.info("pruned_finished_jobs", count=pruned)
        self._stop.clear()
        for job_type, interval in self.intervals.items():
            self._timers.append(asyncio.create_task(self._run_periodic(interval, job_type)))
        for job_type in self.handlers:
            self._loops.append(asyncio.create_task(self._consume(job_type)))
        logger.info("worker_started", concurrency=self.concurrency)

    def request_stop(self) -> None:
        self._stop.set()

    async def stop(self) -> None:
        """Stop claiming jobs, then wait for in-flight jobs to finish."""

        self._stop.set()
        await asyncio.gather(*self._timers, *self._loops, return_exceptions=True)
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._timers.clear()
        self._loops.clear()
        logger.info("worker_stopped")

    async def run_forever(self) -> None:
        self.start()
        try:
            await self._stop.wait()
        finally:
            await self.stop()


__all__ = ["Runtime", "Worker", "build_runtime"]
