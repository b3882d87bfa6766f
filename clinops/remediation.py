"""Remediation tasks: creation for notes with issues and completion polling.

A task is created upstream once per (encounter, check result) and addressed
to the care team.  A separate recurring job polls tracked tasks; when a task
reaches a done status the encounter is re-analysed with ``force=True`` so the
corrected documentation is evaluated afresh.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

import structlog

from clinops.analysis import Issue
from clinops.config import Settings
from clinops.ehr_client import EHRClient
from clinops.errors import EHRError, EHRNotFoundError
from clinops.queue import NOTE_CHECK, SqlJobQueue
from clinops.repository import Repository, StoredCheck
from clinops.time_utils import format_task_date, utc_now
from clinops.tokens import TokenManager
from clinops.work_items import CareTeamMember, WorkItem

logger = structlog.get_logger(__name__)

ASSIGNEE = "ASSIGNEE"
WATCHER = "WATCHER"

ROLE_PROVIDER = "PROVIDER"
ROLE_SECONDARY_PROVIDER = "SECONDARY_PROVIDER"
ROLE_STAFF = "STAFF"

DONE_STATUSES = frozenset({"COMPLETED", "DONE", "CLOSED", "RESOLVED"})
NOT_FOUND = "NOT_FOUND"

POLL_MAX_AGE = timedelta(days=30)
POLL_BATCH_SIZE = 50


@dataclass(frozen=True)
class Participants:
    assignee: Optional[CareTeamMember]
    watchers: List[CareTeamMember] = field(default_factory=list)

    def as_users(self) -> List[Dict[str, str]]:
        users: List[Dict[str, str]] = []
        if self.assignee is not None:
            users.append({"userId": self.assignee.provider_id, "userType": ASSIGNEE})
        users.extend({"userId": member.provider_id, "userType": WATCHER} for member in self.watchers)
        return users


def resolve_participants(care_team: Sequence[CareTeamMember]) -> Participants:
    """Pick the task assignee and watchers from the encounter care team.

    The first active secondary provider or staff member is the assignee and
    every other active provider, staff member or secondary provider watches.
    Without a secondary provider or staff member the first active provider is
    assigned instead.  Each provider id is considered once.
    """

    assignee: Optional[CareTeamMember] = None
    watchers: List[CareTeamMember] = []
    seen = set()
    for member in care_team:
        if not member.active or not member.provider_id or member.provider_id in seen:
            continue
        if member.role in (ROLE_SECONDARY_PROVIDER, ROLE_STAFF) and assignee is None:
            assignee = member
            seen.add(member.provider_id)
        elif member.role in (ROLE_PROVIDER, ROLE_STAFF, ROLE_SECONDARY_PROVIDER):
            watchers.append(member)
            seen.add(member.provider_id)

    if assignee is None:
        first_provider = next(
            (m for m in care_team if m.active and m.provider_id and m.role == ROLE_PROVIDER), None
        )
        if first_provider is not None:
            assignee = first_provider
            watchers = [w for w in watchers if w.provider_id != first_provider.provider_id]

    return Participants(assignee=assignee, watchers=watchers)


def render_description(issues: Sequence[Issue]) -> str:
    description = "The following issues were found in the clinical note:\n\n"
    for index, issue in enumerate(issues, start=1):
        description += f"{index}. {issue.assessment}:\n"
        description += f"   Issue: {issue.issue.replace('_', ' ')}\n"
        if issue.details.hpi:
            description += f"   HPI: {issue.details.hpi}\n"
        description += f"   A&P: {issue.details.a_and_p}\n"
        description += f"   Suggested Correction: {issue.details.correction}\n\n"
    return description


@dataclass
class PollReport:
    checked: int = 0
    completed: int = 0
    not_found: int = 0
    followups: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "not_found": self.not_found,
            "followups": self.followups,
            "failed": self.failed,
        }


class RemediationTracker:
    def __init__(
        self,
        repository: Repository,
        client: EHRClient,
        tokens: TokenManager,
        queue: SqlJobQueue,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.client = client
        self.tokens = tokens
        self.queue = queue
        self.settings = settings

    def _task_date(self, when: Optional[datetime]) -> str:
        if when is None:
            return format_task_date(None)
        return format_task_date(when.astimezone(ZoneInfo(self.settings.clinic_timezone)))

    async def create_task(
        self, check: StoredCheck, item: WorkItem, *, created_by: str = "system"
    ) -> Optional[str]:
        """Create the remediation task for ``check``; returns the task id.

        Nothing is created when every issue was marked invalid or a task for
        this check already exists.
        """

        log = logger.bind(encounter_id=check.encounter_id, check_id=check.id)
        if not check.issues:
            return None
        if not await asyncio.to_thread(self.repository.has_valid_issues, check.encounter_id):
            log.info("remediation_skipped_no_valid_issues")
            return None
        if await asyncio.to_thread(self.repository.has_created_task, check.encounter_id, check.id):
            log.info("remediation_task_exists")
            return None

        invalid = await asyncio.to_thread(
            self.repository.invalid_issue_indexes, check.encounter_id, check.id
        )
        issues = [issue for index, issue in enumerate(check.result.issues) if index not in invalid]

        token = await self.tokens.acquire()
        care_team = item.care_team
        if not care_team:
            encounter = await asyncio.to_thread(self.client.get_encounter, token, check.encounter_id)
            care_team = WorkItem.from_encounter(
                {"id": check.encounter_id, **encounter}, self.settings.clinic_timezone
            ).care_team
        participants = resolve_participants(care_team)

        patient_id = item.patient_id or check.patient_id
        patient_name = item.patient_name or check.patient_name or ""
        subject = f"Note Deficiencies - {self._task_date(item.date_of_service or check.date_of_service)}"
        description = render_description(issues)
        links = [{"order": 0, "linkEntityId": patient_id, "description": patient_name, "linkType": "PATIENT"}]

        task_id = await asyncio.to_thread(
            self.client.create_task,
            token,
            subject=subject,
            users=participants.as_users(),
            description=description,
            task_id=str(uuid.uuid4()),
            links=links,
            patient_id=patient_id,
        )
        await asyncio.to_thread(
            self.repository.save_created_task,
            encounter_id=check.encounter_id,
            check_id=check.id,
            task_id=task_id,
            subject=subject,
            description=description,
            patient_id=patient_id,
            patient_name=patient_name,
            assignee_id=participants.assignee.provider_id if participants.assignee else None,
            assignee_name=participants.assignee.name if participants.assignee else None,
            watchers=[member.to_payload() for member in participants.watchers],
            issue_count=len(issues),
            created_by=created_by,
        )
        log.info(
            "remediation_task_created",
            task_id=task_id,
            issues=len(issues),
            watchers=len(participants.watchers),
        )
        return task_id

    async def poll_completions(self, now: Optional[datetime] = None) -> PollReport:
        """Check every open task once and trigger forced re-analysis when done."""

        report = PollReport()
        tasks = await asyncio.to_thread(
            self.repository.tasks_for_status_check,
            max_age=POLL_MAX_AGE,
            limit=POLL_BATCH_SIZE,
            now=now or utc_now(),
        )
        if not tasks:
            return report

        token = await self.tokens.acquire()
        for task in tasks:
            report.checked += 1
            try:
                status = await asyncio.to_thread(self.client.get_task_status, token, task.task_id)
            except EHRNotFoundError:
                report.not_found += 1
                await asyncio.to_thread(
                    self.repository.record_task_completion, task.encounter_id, task.task_id, NOT_FOUND
                )
                logger.warning("remediation_task_not_found", task_id=task.task_id)
                continue
            except EHRError as exc:
                report.failed += 1
                logger.warning("remediation_status_check_failed", task_id=task.task_id, error=str(exc))
                continue

            if status not in DONE_STATUSES:
                continue

            report.completed += 1
            followup_job_id = None
            prior = await asyncio.to_thread(self.repository.get_check_result, task.encounter_id)
            if prior is not None:
                item = WorkItem(
                    encounter_id=prior.encounter_id,
                    patient_id=prior.patient_id,
                    patient_name=prior.patient_name or "",
                    chief_complaint=prior.chief_complaint or "",
                    date_of_service=prior.date_of_service,
                )
                job = await asyncio.to_thread(
                    self.queue.enqueue,
                    NOTE_CHECK,
                    {"item": item.to_payload(), "force": True, "checkedBy": "task-completion"},
                )
                followup_job_id = job.id if job is not None else None
                report.followups += 1
            await asyncio.to_thread(
                self.repository.record_task_completion,
                task.encounter_id,
                task.task_id,
                status,
                followup_job_id=followup_job_id,
            )
            logger.info(
                "remediation_task_completed",
                task_id=task.task_id,
                status=status,
                followup_job_id=followup_job_id,
            )

        logger.info("remediation_poll_completed", **report.as_dict())
        return report


__all__ = [
    "DONE_STATUSES",
    "NOT_FOUND",
    "Participants",
    "PollReport",
    "RemediationTracker",
    "render_description",
    "resolve_participants",
]
