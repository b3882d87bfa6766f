"""Durable job queue stored in the ``queue_jobs`` table.

Jobs are claimed with a conditional ``UPDATE ... WHERE state = 'waiting'`` so
that concurrent workers (threads or processes sharing the database) never
claim the same row.  The queue itself never retries anything: the delivery
attempt counter travels in the payload as ``attemptsMade`` and the retry
controller decides whether to enqueue a fresh job.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

import sqlalchemy as sa

from clinops.db.models import QueueJob
from clinops.db.session import Database
from clinops.time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

STATE_WAITING = "waiting"
STATE_ACTIVE = "active"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

ATTEMPTS_KEY = "attemptsMade"

NOTE_DISCOVERY = "note-discovery"
NOTE_CHECK = "note-check"
ELIGIBILITY_DISCOVERY = "eligibility-discovery"
ELIGIBILITY_CHECK = "eligibility-check"
TASK_POLL = "task-completion-poll"
VITAL_SIGNS = "vital-signs"


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    scheduled_at: Optional[datetime] = None
    job_key: Optional[str] = None

    @property
    def attempts_made(self) -> int:
        try:
            return int(self.payload.get(ATTEMPTS_KEY, 0))
        except (TypeError, ValueError):
            return 0


class SqlJobQueue:
    """Queue operations over the shared :class:`Database`."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def enqueue(
        self,
        job_type: str,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        delay: float = 0.0,
        job_key: Optional[str] = None,
    ) -> Optional[Job]:
        """Add a job; returns ``None`` when ``job_key`` is already pending."""

        with self.database.session_scope() as session:
            if job_key is not None:
                pending = session.execute(
                    sa.select(QueueJob.id).where(
                        QueueJob.job_type == job_type,
                        QueueJob.job_key == job_key,
                        QueueJob.state.in_((STATE_WAITING, STATE_ACTIVE)),
                    )
                ).first()
                if pending is not None:
                    logger.debug("Skipping %s job %s: already pending", job_type, job_key)
                    return None
            return self._insert(session, job_type, payload, delay=delay, job_key=job_key)

    def retry(self, job: Job, payload: Mapping[str, Any], *, delay: float, error: str) -> Job:
        """Fail ``job`` and enqueue its successor under the same key.

        Both writes share one transaction so the key is never left without a
        pending row between them.
        """

        with self.database.session_scope() as session:
            session.execute(
                sa.update(QueueJob)
                .where(QueueJob.id == job.id)
                .values(state=STATE_FAILED, finished_at=utc_now(), error=error[:2000])
            )
            return self._insert(session, job.job_type, payload, delay=delay, job_key=job.job_key)

    def _insert(
        self,
        session: Any,
        job_type: str,
        payload: Optional[Mapping[str, Any]],
        *,
        delay: float,
        job_key: Optional[str],
    ) -> Job:
        body = dict(payload or {})
        body.setdefault(ATTEMPTS_KEY, 0)
        now = utc_now()
        scheduled_at = now + timedelta(seconds=max(delay, 0.0))
        job_id = uuid.uuid4().hex
        session.add(
            QueueJob(
                id=job_id,
                job_type=job_type,
                job_key=job_key,
                payload=body,
                attempts_made=int(body[ATTEMPTS_KEY]),
                state=STATE_WAITING,
                scheduled_at=scheduled_at,
                created_at=now,
            )
        )
        return Job(id=job_id, job_type=job_type, payload=body, scheduled_at=scheduled_at, job_key=job_key)

    def dequeue(self, job_type: str, now: Optional[datetime] = None) -> Optional[Job]:
        """Claim the oldest due job of ``job_type`` or return ``None``."""

        now = now or utc_now()
        with self.database.session_scope() as session:
            candidates = session.execute(
                sa.select(QueueJob)
                .where(
                    QueueJob.job_type == job_type,
                    QueueJob.state == STATE_WAITING,
                    QueueJob.scheduled_at <= now,
                )
                .order_by(QueueJob.scheduled_at.asc(), QueueJob.created_at.asc())
                .limit(5)
            ).scalars().all()
            for row in candidates:
                claimed = session.execute(
                    sa.update(QueueJob)
                    .where(QueueJob.id == row.id, QueueJob.state == STATE_WAITING)
                    .values(state=STATE_ACTIVE, started_at=now)
                )
                if claimed.rowcount == 1:
                    return Job(
                        id=row.id,
                        job_type=row.job_type,
                        payload=dict(row.payload or {}),
                        scheduled_at=ensure_utc(row.scheduled_at),
                        job_key=row.job_key,
                    )
        return None

    def _finish(self, job_id: str, state: str, error: Optional[str] = None) -> None:
        with self.database.session_scope() as session:
            session.execute(
                sa.update(QueueJob)
                .where(QueueJob.id == job_id)
                .values(state=state, finished_at=utc_now(), error=error)
            )

    def complete(self, job_id: str) -> None:
        self._finish(job_id, STATE_COMPLETED)

    def fail(self, job_id: str, error: str) -> None:
        self._finish(job_id, STATE_FAILED, error[:2000])

    def pending_count(self, job_type: Optional[str] = None) -> int:
        stmt = sa.select(sa.func.count(QueueJob.id)).where(QueueJob.state == STATE_WAITING)
        if job_type is not None:
            stmt = stmt.where(QueueJob.job_type == job_type)
        with self.database.session_scope() as session:
            return int(session.execute(stmt).scalar_one())

    def get(self, job_id: str) -> Optional[QueueJob]:
        with self.database.session_scope() as session:
            return session.get(QueueJob, job_id)

    def release_active(self) -> int:
        """Return jobs left ``active`` by a previous process to ``waiting``."""

        with self.database.session_scope() as session:
            result = session.execute(
                sa.update(QueueJob)
                .where(QueueJob.state == STATE_ACTIVE)
                .values(state=STATE_WAITING, started_at=None)
            )
            released = result.rowcount or 0
        if released:
            logger.warning("Released %d job(s) left active by a previous worker", released)
        return released

    def prune(self, older_than: timedelta) -> int:
        """Delete finished jobs older than ``older_than``."""

        cutoff = utc_now() - older_than
        with self.database.session_scope() as session:
            result = session.execute(
                sa.delete(QueueJob).where(
                    QueueJob.state.in_((STATE_COMPLETED, STATE_FAILED)),
                    QueueJob.finished_at < cutoff,
                )
            )
            return result.rowcount or 0


__all__ = [
    "ATTEMPTS_KEY",
    "ELIGIBILITY_CHECK",
    "ELIGIBILITY_DISCOVERY",
    "NOTE_CHECK",
    "NOTE_DISCOVERY",
    "TASK_POLL",
    "VITAL_SIGNS",
    "Job",
    "STATE_ACTIVE",
    "STATE_COMPLETED",
    "STATE_FAILED",
    "STATE_WAITING",
    "SqlJobQueue",
]
