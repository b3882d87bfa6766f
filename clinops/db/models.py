"""SQLAlchemy models for check results, overrides, tasks, tokens and queue bookkeeping."""

from __future__ import annotations

from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UpstreamCredential(Base):
    __tablename__ = "upstream_credentials"

    identity = sa.Column(String, primary_key=True)
    secret = sa.Column(Text, nullable=False)
    emr_provider = sa.Column(String, nullable=False, server_default="EZDERM", default="EZDERM")
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class UpstreamToken(Base):
    __tablename__ = "upstream_tokens"

    identity = sa.Column(String, primary_key=True)
    access_token = sa.Column(Text, nullable=False)
    refresh_token = sa.Column(Text, nullable=True)
    endpoint = sa.Column(String, nullable=False)
    expires_at = sa.Column(DateTime(timezone=True), nullable=False)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class NoteCheck(Base):
    __tablename__ = "note_checks"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False, unique=True)
    patient_id = sa.Column(String, nullable=True)
    patient_name = sa.Column(String, nullable=True)
    chief_complaint = sa.Column(String, nullable=True)
    date_of_service = sa.Column(DateTime(timezone=True), nullable=True)
    status = sa.Column(String, nullable=False)
    result_status = sa.Column(String, nullable=True)
    summary = sa.Column(Text, nullable=True)
    issues = sa.Column(sa.JSON, nullable=False, default=list)
    issues_found = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    fingerprint = sa.Column(String(64), nullable=True)
    content = sa.Column(Text, nullable=True)
    error_message = sa.Column(Text, nullable=True)
    checked_by = sa.Column(String, nullable=True)
    checked_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.Index("idx_note_checks_fingerprint", "fingerprint", "status"),
        sa.Index("idx_note_checks_checked_at", "checked_at"),
    )


class InvalidIssue(Base):
    __tablename__ = "invalid_issues"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False)
    check_id = sa.Column(Integer, ForeignKey("note_checks.id", ondelete="CASCADE"), nullable=False)
    issue_index = sa.Column(Integer, nullable=False)
    issue_type = sa.Column(String(100), nullable=False)
    assessment = sa.Column(Text, nullable=False)
    issue_hash = sa.Column(String(64), nullable=False)
    marked_by = sa.Column(String, nullable=False)
    marked_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    reason = sa.Column(Text, nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("encounter_id", "check_id", "issue_index", name="uq_invalid_issues_position"),
    )


class ResolvedIssue(Base):
    __tablename__ = "resolved_issues"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False)
    check_id = sa.Column(Integer, ForeignKey("note_checks.id", ondelete="CASCADE"), nullable=False)
    issue_index = sa.Column(Integer, nullable=False)
    issue_type = sa.Column(String(100), nullable=False)
    assessment = sa.Column(Text, nullable=False)
    issue_hash = sa.Column(String(64), nullable=False)
    marked_by = sa.Column(String, nullable=False)
    marked_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    reason = sa.Column(Text, nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("encounter_id", "check_id", "issue_index", name="uq_resolved_issues_position"),
    )


class CreatedTask(Base):
    __tablename__ = "created_tasks"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False, index=True)
    check_id = sa.Column(Integer, ForeignKey("note_checks.id"), nullable=True)
    patient_id = sa.Column(String, nullable=True)
    patient_name = sa.Column(String, nullable=True)
    task_id = sa.Column(String, nullable=False, unique=True)
    subject = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=False)
    assignee_id = sa.Column(String, nullable=True)
    assignee_name = sa.Column(String, nullable=True)
    watchers = sa.Column(sa.JSON, nullable=False, default=list)
    issue_count = sa.Column(Integer, nullable=False, default=0)
    created_by = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("encounter_id", "check_id", name="uq_created_tasks_encounter_check"),
    )


class TaskCompletion(Base):
    __tablename__ = "task_completions"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = sa.Column(String, nullable=False)
    task_id = sa.Column(String, nullable=False)
    completed_status = sa.Column(String(20), nullable=False)
    detected_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    followup_triggered = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    followup_job_id = sa.Column(String, nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("encounter_id", "task_id", name="uq_task_completions_encounter_task"),
    )


class EligibilityProcessing(Base):
    __tablename__ = "eligibility_processing"

    encounter_id = sa.Column(String, primary_key=True)
    patient_id = sa.Column(String, nullable=True)
    checks_enqueued = sa.Column(Integer, nullable=False, default=0)
    success = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    error_message = sa.Column(Text, nullable=True)
    processed_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ProcessedVitalSigns(Base):
    __tablename__ = "processed_vital_signs"

    encounter_id = sa.Column(String, primary_key=True)
    patient_id = sa.Column(String, nullable=False)
    source_encounter_id = sa.Column(String, nullable=True)
    height_value = sa.Column(sa.Float, nullable=True)
    weight_value = sa.Column(sa.Float, nullable=True)
    height_unit = sa.Column(String(20), nullable=True)
    weight_unit = sa.Column(String(20), nullable=True)
    success = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    error_message = sa.Column(Text, nullable=True)
    processed_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class QueueJob(Base):
    __tablename__ = "queue_jobs"

    id = sa.Column(String, primary_key=True)
    job_type = sa.Column(String, nullable=False)
    job_key = sa.Column(String, nullable=True)
    payload = sa.Column(sa.JSON, nullable=False, default=dict)
    attempts_made = sa.Column(Integer, nullable=False, default=0)
    state = sa.Column(String, nullable=False, default="waiting")
    scheduled_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = sa.Column(DateTime(timezone=True), nullable=True)
    finished_at = sa.Column(DateTime(timezone=True), nullable=True)
    error = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.Index("idx_queue_jobs_ready", "job_type", "state", "scheduled_at"),
        sa.Index("idx_queue_jobs_key", "job_type", "job_key", "state"),
    )


__all__ = [
    "Base",
    "CreatedTask",
    "EligibilityProcessing",
    "InvalidIssue",
    "NoteCheck",
    "ProcessedVitalSigns",
    "QueueJob",
    "ResolvedIssue",
    "TaskCompletion",
    "UpstreamCredential",
    "UpstreamToken",
]
