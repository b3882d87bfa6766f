"""Persistence operations shared by every pipeline stage.

All writes are upserts keyed by stable identifiers (encounter id, task id,
service identity) so that duplicate job delivery converges on the same rows.
Each method opens and closes its own session; no session is held across a
call to an external service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from clinops.analysis import CorrectionsNeeded, OkResult, issue_hash, result_from_record
from clinops.db.models import (
    CreatedTask,
    EligibilityProcessing,
    InvalidIssue,
    NoteCheck,
    ProcessedVitalSigns,
    ResolvedIssue,
    TaskCompletion,
    UpstreamCredential,
    UpstreamToken,
)
from clinops.db.session import Database
from clinops.time_utils import ensure_utc, utc_now
from clinops.work_items import WorkItem

logger = logging.getLogger(__name__)

LIFECYCLE_PENDING = "pending"
LIFECYCLE_COMPLETED = "completed"
LIFECYCLE_ERROR = "error"


@dataclass(frozen=True)
class StoredCheck:
    """Detached view of a ``note_checks`` row."""

    id: int
    encounter_id: str
    patient_id: Optional[str]
    patient_name: Optional[str]
    chief_complaint: Optional[str]
    date_of_service: Optional[datetime]
    lifecycle: str
    result_status: Optional[str]
    summary: Optional[str]
    issues: List[Dict[str, Any]]
    fingerprint: Optional[str]
    content: Optional[str]
    error_message: Optional[str]
    checked_by: Optional[str]
    checked_at: datetime

    @property
    def issues_found(self) -> bool:
        return bool(self.issues)

    @property
    def result(self) -> "OkResult | CorrectionsNeeded":
        return result_from_record(self.result_status or "ok", self.summary, self.issues)

    @classmethod
    def from_row(cls, row: NoteCheck) -> "StoredCheck":
        return cls(
            id=row.id,
            encounter_id=row.encounter_id,
            patient_id=row.patient_id,
            patient_name=row.patient_name,
            chief_complaint=row.chief_complaint,
            date_of_service=ensure_utc(row.date_of_service) if row.date_of_service else None,
            lifecycle=row.status,
            result_status=row.result_status,
            summary=row.summary,
            issues=list(row.issues or []),
            fingerprint=row.fingerprint,
            content=row.content,
            error_message=row.error_message,
            checked_by=row.checked_by,
            checked_at=ensure_utc(row.checked_at),
        )


@dataclass(frozen=True)
class StoredToken:
    identity: str
    access_token: str
    refresh_token: Optional[str]
    endpoint: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())


@dataclass(frozen=True)
class TrackedTask:
    encounter_id: str
    task_id: str
    check_id: Optional[int]
    patient_id: Optional[str]
    patient_name: Optional[str]
    subject: str
    created_at: datetime


@dataclass(frozen=True)
class IssueOverride:
    """A reviewer's invalid/resolved mark on one stored issue."""

    check_id: int
    issue_index: int
    issue_type: str
    assessment: str
    issue_hash: str
    marked_by: str
    marked_at: datetime
    reason: Optional[str]


@dataclass(frozen=True)
class VitalsRecord:
    encounter_id: str
    patient_id: str
    success: bool
    source_encounter_id: Optional[str]
    error_message: Optional[str]
    processed_at: datetime


class Repository:
    """Typed access to the clinops tables for one :class:`Database`."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # -- upsert helper -------------------------------------------------

    def _upsert(
        self,
        session: Session,
        model: Any,
        values: Mapping[str, Any],
        keys: Sequence[str],
        update: Optional[Iterable[str]] = None,
    ) -> None:
        update_columns = list(update) if update is not None else [k for k in values if k not in keys]
        dialect = session.get_bind().dialect.name
        if dialect in {"sqlite", "postgresql"}:
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            stmt = insert(model).values(**values)
            if update_columns:
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(keys),
                    set_={column: stmt.excluded[column] for column in update_columns},
                )
            else:
                stmt = stmt.on_conflict_do_nothing()
            session.execute(stmt)
            return

        criteria = [getattr(model, key) == values[key] for key in keys]
        existing = session.execute(sa.select(model).where(*criteria)).scalar_one_or_none()
        if existing is None:
            session.add(model(**values))
        else:
            for column in update_columns:
                setattr(existing, column, values[column])

    # -- note checks ---------------------------------------------------

    def save_check_result(
        self,
        item: WorkItem,
        *,
        lifecycle: str,
        checked_by: str,
        result: "OkResult | CorrectionsNeeded | None" = None,
        fingerprint: Optional[str] = None,
        content: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> StoredCheck:
        """Upsert the check row for ``item.encounter_id`` and return it."""

        issues = [issue.as_dict() for issue in result.issues] if result is not None else []
        values = {
            "encounter_id": item.encounter_id,
            "patient_id": item.patient_id,
            "patient_name": item.patient_name,
            "chief_complaint": item.chief_complaint,
            "date_of_service": item.date_of_service,
            "status": lifecycle,
            "result_status": result.status if result is not None else None,
            "summary": result.summary if result is not None else None,
            "issues": issues,
            "issues_found": bool(issues),
            "fingerprint": fingerprint,
            "content": content,
            "error_message": error_message,
            "checked_by": checked_by,
            "checked_at": utc_now(),
        }
        with self.database.session_scope() as session:
            self._upsert(session, NoteCheck, values, keys=("encounter_id",))
            row = session.execute(
                sa.select(NoteCheck).where(NoteCheck.encounter_id == item.encounter_id)
            ).scalar_one()
            stored = StoredCheck.from_row(row)
        logger.info(
            "Saved note check for encounter %s (lifecycle=%s, issues=%d)",
            item.encounter_id,
            lifecycle,
            len(issues),
        )
        return stored

    def find_by_fingerprint(self, fingerprint: str, *, patient_id: Optional[str] = None) -> Optional[StoredCheck]:
        """Return the newest completed check whose content hashed to ``fingerprint``."""

        stmt = (
            sa.select(NoteCheck)
            .where(NoteCheck.fingerprint == fingerprint, NoteCheck.status == LIFECYCLE_COMPLETED)
            .order_by(NoteCheck.checked_at.desc())
            .limit(1)
        )
        if patient_id is not None:
            stmt = stmt.where(NoteCheck.patient_id == patient_id)
        with self.database.session_scope() as session:
            row = session.execute(stmt).scalar_one_or_none()
            return StoredCheck.from_row(row) if row is not None else None

    def get_check_result(self, encounter_id: str) -> Optional[StoredCheck]:
        with self.database.session_scope() as session:
            row = session.execute(
                sa.select(NoteCheck).where(NoteCheck.encounter_id == encounter_id)
            ).scalar_one_or_none()
            return StoredCheck.from_row(row) if row is not None else None

    def list_check_results(self, limit: int = 50, offset: int = 0) -> List[StoredCheck]:
        stmt = sa.select(NoteCheck).order_by(NoteCheck.checked_at.desc()).limit(limit).offset(offset)
        with self.database.session_scope() as session:
            return [StoredCheck.from_row(row) for row in session.execute(stmt).scalars()]

    def has_recent_result(self, encounter_id: str, window: timedelta, now: Optional[datetime] = None) -> bool:
        """Return ``True`` when a completed check younger than ``window`` exists."""

        cutoff = (now or utc_now()) - window
        stmt = sa.select(NoteCheck.id).where(
            NoteCheck.encounter_id == encounter_id,
            NoteCheck.status == LIFECYCLE_COMPLETED,
            NoteCheck.checked_at > cutoff,
        )
        with self.database.session_scope() as session:
            return session.execute(stmt).first() is not None

    def check_stats(self) -> Dict[str, int]:
        stmt = sa.select(
            sa.func.count(NoteCheck.id),
            sa.func.sum(sa.case((NoteCheck.status == LIFECYCLE_COMPLETED, 1), else_=0)),
            sa.func.sum(sa.case((NoteCheck.status == LIFECYCLE_ERROR, 1), else_=0)),
            sa.func.sum(sa.case((NoteCheck.issues_found.is_(True), 1), else_=0)),
        )
        with self.database.session_scope() as session:
            total, completed, errored, with_issues = session.execute(stmt).one()
        return {
            "total": int(total or 0),
            "completed": int(completed or 0),
            "error": int(errored or 0),
            "issues_found": int(with_issues or 0),
        }

    # -- issue overrides -----------------------------------------------
    #
    # Overrides are keyed by issue position but carry a hash of the issue
    # content; a re-check that puts a different issue at that position
    # leaves the override inert.

    def _mark_issue(
        self,
        model: Any,
        encounter_id: str,
        check_id: int,
        issue_index: int,
        *,
        marked_by: str,
        reason: Optional[str],
    ) -> str:
        with self.database.session_scope() as session:
            row = session.get(NoteCheck, check_id)
            issues = list(row.issues or []) if row is not None and row.encounter_id == encounter_id else []
            if not 0 <= issue_index < len(issues):
                raise LookupError(f"Check {check_id} for encounter {encounter_id} has no issue #{issue_index}")
            issue = issues[issue_index]
            digest = issue_hash(issue)
            values = {
                "encounter_id": encounter_id,
                "check_id": check_id,
                "issue_index": issue_index,
                "issue_type": str(issue.get("issue") or ""),
                "assessment": str(issue.get("assessment") or ""),
                "issue_hash": digest,
                "marked_by": marked_by,
                "marked_at": utc_now(),
                "reason": reason,
            }
            self._upsert(
                session,
                model,
                values,
                keys=("encounter_id", "check_id", "issue_index"),
                update=("issue_type", "assessment", "issue_hash", "marked_by", "marked_at", "reason"),
            )
        logger.info(
            "Marked issue %d of encounter %s in %s by %s", issue_index, encounter_id, model.__tablename__, marked_by
        )
        return digest

    def _unmark_issue(self, model: Any, encounter_id: str, check_id: int, issue_index: int) -> bool:
        with self.database.session_scope() as session:
            result = session.execute(
                sa.delete(model).where(
                    model.encounter_id == encounter_id,
                    model.check_id == check_id,
                    model.issue_index == issue_index,
                )
            )
            return bool(result.rowcount)

    def _current_overrides(self, model: Any, encounter_id: str, check_id: Optional[int] = None) -> List[IssueOverride]:
        """Return overrides whose hash still matches the stored issue at their index."""

        stmt = (
            sa.select(model, NoteCheck.issues)
            .join(NoteCheck, NoteCheck.id == model.check_id)
            .where(model.encounter_id == encounter_id)
            .order_by(model.marked_at.asc(), model.issue_index.asc())
        )
        if check_id is not None:
            stmt = stmt.where(model.check_id == check_id)
        overrides: List[IssueOverride] = []
        with self.database.session_scope() as session:
            for row, issues in session.execute(stmt):
                issues = list(issues or [])
                if row.issue_index >= len(issues) or issue_hash(issues[row.issue_index]) != row.issue_hash:
                    continue
                overrides.append(
                    IssueOverride(
                        check_id=row.check_id,
                        issue_index=row.issue_index,
                        issue_type=row.issue_type,
                        assessment=row.assessment,
                        issue_hash=row.issue_hash,
                        marked_by=row.marked_by,
                        marked_at=ensure_utc(row.marked_at),
                        reason=row.reason,
                    )
                )
        return overrides

    def mark_issue_invalid(
        self,
        encounter_id: str,
        check_id: int,
        issue_index: int,
        *,
        marked_by: str,
        reason: Optional[str] = None,
    ) -> str:
        """Exclude the issue at ``issue_index`` from remediation; returns its hash."""

        return self._mark_issue(
            InvalidIssue, encounter_id, check_id, issue_index, marked_by=marked_by, reason=reason
        )

    def unmark_issue_invalid(self, encounter_id: str, check_id: int, issue_index: int) -> bool:
        return self._unmark_issue(InvalidIssue, encounter_id, check_id, issue_index)

    def invalid_issues(self, encounter_id: str) -> List[IssueOverride]:
        return self._current_overrides(InvalidIssue, encounter_id)

    def invalid_issue_indexes(self, encounter_id: str, check_id: int) -> Set[int]:
        return {override.issue_index for override in self._current_overrides(InvalidIssue, encounter_id, check_id)}

    def has_valid_issues(self, encounter_id: str) -> bool:
        """Return ``True`` if the latest check has an issue nobody marked invalid."""

        check = self.get_check_result(encounter_id)
        if check is None or not check.issues:
            return False
        invalid = self.invalid_issue_indexes(encounter_id, check.id)
        return any(index not in invalid for index in range(len(check.issues)))

    def mark_issue_resolved(
        self,
        encounter_id: str,
        check_id: int,
        issue_index: int,
        *,
        marked_by: str,
        reason: Optional[str] = None,
    ) -> str:
        """Record that a reviewer fixed the issue at ``issue_index`` by hand."""

        return self._mark_issue(
            ResolvedIssue, encounter_id, check_id, issue_index, marked_by=marked_by, reason=reason
        )

    def unmark_issue_resolved(self, encounter_id: str, check_id: int, issue_index: int) -> bool:
        return self._unmark_issue(ResolvedIssue, encounter_id, check_id, issue_index)

    def resolved_issues(self, encounter_id: str) -> List[IssueOverride]:
        return self._current_overrides(ResolvedIssue, encounter_id)

    def is_issue_resolved(self, encounter_id: str, check_id: int, issue_index: int) -> bool:
        return any(
            override.issue_index == issue_index
            for override in self._current_overrides(ResolvedIssue, encounter_id, check_id)
        )

    # -- remediation tasks ---------------------------------------------

    def has_created_task(self, encounter_id: str, check_id: Optional[int]) -> bool:
        stmt = sa.select(CreatedTask.id).where(
            CreatedTask.encounter_id == encounter_id, CreatedTask.check_id == check_id
        )
        with self.database.session_scope() as session:
            return session.execute(stmt).first() is not None

    def save_created_task(
        self,
        *,
        encounter_id: str,
        check_id: Optional[int],
        task_id: str,
        subject: str,
        description: str,
        patient_id: Optional[str],
        patient_name: Optional[str],
        assignee_id: Optional[str],
        assignee_name: Optional[str],
        watchers: Sequence[Mapping[str, Any]],
        issue_count: int,
        created_by: str,
    ) -> None:
        values = {
            "encounter_id": encounter_id,
            "check_id": check_id,
            "task_id": task_id,
            "subject": subject,
            "description": description,
            "patient_id": patient_id,
            "patient_name": patient_name,
            "assignee_id": assignee_id,
            "assignee_name": assignee_name,
            "watchers": [dict(watcher) for watcher in watchers],
            "issue_count": issue_count,
            "created_by": created_by,
            "created_at": utc_now(),
        }
        with self.database.session_scope() as session:
            self._upsert(session, CreatedTask, values, keys=("task_id",), update=())

    def created_tasks_for_encounter(self, encounter_id: str) -> List[TrackedTask]:
        stmt = (
            sa.select(CreatedTask)
            .where(CreatedTask.encounter_id == encounter_id)
            .order_by(CreatedTask.created_at.desc())
        )
        with self.database.session_scope() as session:
            return [_tracked(row) for row in session.execute(stmt).scalars()]

    def tasks_for_status_check(
        self, *, max_age: timedelta = timedelta(days=30), limit: int = 50, now: Optional[datetime] = None
    ) -> List[TrackedTask]:
        """Return tracked tasks with no completion row yet, oldest first."""

        cutoff = (now or utc_now()) - max_age
        stmt = (
            sa.select(CreatedTask)
            .outerjoin(
                TaskCompletion,
                sa.and_(
                    TaskCompletion.encounter_id == CreatedTask.encounter_id,
                    TaskCompletion.task_id == CreatedTask.task_id,
                ),
            )
            .where(TaskCompletion.id.is_(None), CreatedTask.created_at > cutoff)
            .order_by(CreatedTask.created_at.asc())
            .limit(limit)
        )
        with self.database.session_scope() as session:
            return [_tracked(row) for row in session.execute(stmt).scalars()]

    def record_task_completion(
        self,
        encounter_id: str,
        task_id: str,
        completed_status: str,
        *,
        followup_job_id: Optional[str] = None,
    ) -> None:
        values = {
            "encounter_id": encounter_id,
            "task_id": task_id,
            "completed_status": completed_status[:20],
            "detected_at": utc_now(),
            "followup_triggered": followup_job_id is not None,
            "followup_job_id": followup_job_id,
        }
        with self.database.session_scope() as session:
            self._upsert(session, TaskCompletion, values, keys=("encounter_id", "task_id"))

    # -- tokens and credentials ----------------------------------------

    def get_token(self, identity: str, *, ignore_expiry: bool = False) -> Optional[StoredToken]:
        with self.database.session_scope() as session:
            row = session.get(UpstreamToken, identity)
            if row is None:
                return None
            token = StoredToken(
                identity=row.identity,
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                endpoint=row.endpoint,
                expires_at=ensure_utc(row.expires_at),
            )
        if not ignore_expiry and token.is_expired():
            return None
        return token

    def store_token(
        self,
        identity: str,
        *,
        access_token: str,
        refresh_token: Optional[str],
        endpoint: str,
        expires_at: datetime,
    ) -> None:
        values = {
            "identity": identity,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "endpoint": endpoint,
            "expires_at": ensure_utc(expires_at),
            "updated_at": utc_now(),
        }
        with self.database.session_scope() as session:
            self._upsert(session, UpstreamToken, values, keys=("identity",))

    def store_credentials(self, identity: str, secret: str, *, emr_provider: str = "EZDERM") -> None:
        values = {
            "identity": identity,
            "secret": secret,
            "emr_provider": emr_provider,
            "active": True,
            "updated_at": utc_now(),
        }
        with self.database.session_scope() as session:
            self._upsert(session, UpstreamCredential, values, keys=("identity",))

    def get_credentials(self, identity: str) -> Optional[str]:
        """Return the stored secret for ``identity``."""

        with self.database.session_scope() as session:
            row = session.get(UpstreamCredential, identity)
            if row is None or not row.active:
                return None
            return row.secret

    def get_active_identity(self) -> Optional[str]:
        stmt = (
            sa.select(UpstreamCredential.identity)
            .where(UpstreamCredential.active.is_(True))
            .order_by(UpstreamCredential.updated_at.desc())
            .limit(1)
        )
        with self.database.session_scope() as session:
            return session.execute(stmt).scalar_one_or_none()

    # -- eligibility ---------------------------------------------------

    def eligibility_processed(self, encounter_id: str) -> bool:
        with self.database.session_scope() as session:
            return session.get(EligibilityProcessing, encounter_id) is not None

    def mark_eligibility_processed(
        self,
        encounter_id: str,
        patient_id: Optional[str],
        *,
        checks_enqueued: int = 0,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> None:
        values = {
            "encounter_id": encounter_id,
            "patient_id": patient_id or "unknown",
            "checks_enqueued": checks_enqueued,
            "success": success,
            "error_message": error_message,
            "processed_at": utc_now(),
        }
        with self.database.session_scope() as session:
            self._upsert(session, EligibilityProcessing, values, keys=("encounter_id",))
        logger.info("Marked encounter %s as processed for eligibility", encounter_id)

    def eligibility_stats(self) -> Dict[str, int]:
        stmt = sa.select(
            sa.func.count(EligibilityProcessing.encounter_id),
            sa.func.sum(sa.case((EligibilityProcessing.success.is_(True), 1), else_=0)),
            sa.func.sum(sa.case((EligibilityProcessing.success.is_(False), 1), else_=0)),
            sa.func.sum(EligibilityProcessing.checks_enqueued),
        )
        with self.database.session_scope() as session:
            total, successful, failed, enqueued = session.execute(stmt).one()
        return {
            "total": int(total or 0),
            "successful": int(successful or 0),
            "failed": int(failed or 0),
            "total_checks_enqueued": int(enqueued or 0),
        }

    # -- vital-signs carry-forward -------------------------------------

    def vitals_processed(self, encounter_id: str) -> bool:
        with self.database.session_scope() as session:
            return session.get(ProcessedVitalSigns, encounter_id) is not None

    def mark_vitals_processed(
        self,
        encounter_id: str,
        patient_id: str,
        *,
        success: bool,
        source_encounter_id: Optional[str] = None,
        height_value: Optional[float] = None,
        weight_value: Optional[float] = None,
        height_unit: Optional[str] = None,
        weight_unit: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        values = {
            "encounter_id": encounter_id,
            "patient_id": patient_id,
            "source_encounter_id": source_encounter_id,
            "height_value": height_value,
            "weight_value": weight_value,
            "height_unit": height_unit,
            "weight_unit": weight_unit,
            "success": success,
            "error_message": error_message,
            "processed_at": utc_now(),
        }
        with self.database.session_scope() as session:
            self._upsert(session, ProcessedVitalSigns, values, keys=("encounter_id",))
        logger.info("Marked encounter %s as processed for vital signs (success=%s)", encounter_id, success)

    def get_vitals_record(self, encounter_id: str) -> Optional[VitalsRecord]:
        with self.database.session_scope() as session:
            row = session.get(ProcessedVitalSigns, encounter_id)
            if row is None:
                return None
            return VitalsRecord(
                encounter_id=row.encounter_id,
                patient_id=row.patient_id,
                success=bool(row.success),
                source_encounter_id=row.source_encounter_id,
                error_message=row.error_message,
                processed_at=ensure_utc(row.processed_at),
            )

    def vitals_stats(self) -> Dict[str, int]:
        stmt = sa.select(
            sa.func.count(ProcessedVitalSigns.encounter_id),
            sa.func.sum(sa.case((ProcessedVitalSigns.success.is_(True), 1), else_=0)),
            sa.func.sum(sa.case((ProcessedVitalSigns.success.is_(False), 1), else_=0)),
        )
        with self.database.session_scope() as session:
            total, successful, failed = session.execute(stmt).one()
        return {"total": int(total or 0), "successful": int(successful or 0), "failed": int(failed or 0)}


def _tracked(row: CreatedTask) -> TrackedTask:
    return TrackedTask(
        encounter_id=row.encounter_id,
        task_id=row.task_id,
        check_id=row.check_id,
        patient_id=row.patient_id,
        patient_name=row.patient_name,
        subject=row.subject,
        created_at=ensure_utc(row.created_at),
    )


__all__ = [
    "LIFECYCLE_COMPLETED",
    "LIFECYCLE_ERROR",
    "LIFECYCLE_PENDING",
    "IssueOverride",
    "Repository",
    "StoredCheck",
    "StoredToken",
    "TrackedTask",
    "VitalsRecord",
]
