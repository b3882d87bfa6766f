"""Recurring discovery of work items.

A discovery cycle lists candidates upstream, applies the workflow's
eligibility predicate and emits one staggered downstream job per eligible
item.  Any listing failure aborts the cycle and propagates; jobs already
enqueued stay queued and the next cycle starts again from the first page.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

import structlog

from clinops.config import Settings
from clinops.ehr_client import EHRClient
from clinops.queue import ELIGIBILITY_CHECK, NOTE_CHECK, SqlJobQueue
from clinops.repository import Repository
from clinops.time_utils import utc_now
from clinops.tokens import TokenManager
from clinops.work_items import WorkItem

logger = structlog.get_logger(__name__)


@dataclass
class DiscoveryReport:
    fetched_count: int = 0
    eligible_count: int = 0
    queued_count: int = 0
    skipped_recent: int = 0
    ineligible_recorded: int = 0
    capped: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "fetched": self.fetched_count,
            "eligible": self.eligible_count,
            "queued": self.queued_count,
            "skipped_recent": self.skipped_recent,
            "ineligible_recorded": self.ineligible_recorded,
            "capped": self.capped,
        }


def paginate(
    fetch_page: Callable[[int, int], List[Any]], page_size: int, cap: int
) -> Tuple[List[Any], bool]:
    """Fetch pages until a short or empty page, or ``cap`` items.

    Returns the accumulated items (never more than ``cap``) and whether the
    cap stopped the loop.
    """

    items: List[Any] = []
    offset = 0
    while True:
        page = fetch_page(offset, page_size)
        if not page:
            return items, False
        items.extend(page)
        offset += page_size
        if len(items) >= cap:
            logger.warning("discovery_cap_reached", cap=cap)
            return items[:cap], True
        if len(page) < page_size:
            return items, False


def is_note_check_eligible(item: WorkItem, settings: Settings, now: Optional[datetime] = None) -> bool:
    """Awaiting finalization and older than the staleness window."""

    if item.status not in settings.note_statuses:
        return False
    if item.date_of_service is None:
        return False
    threshold = (now or utc_now()) - timedelta(seconds=settings.note_min_age_seconds)
    return item.date_of_service < threshold


def start_of_day(now: datetime, tz_name: str) -> datetime:
    local = now.astimezone(ZoneInfo(tz_name))
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def eligibility_ineligibility_reason(
    item: WorkItem, settings: Settings, now: Optional[datetime] = None
) -> Optional[str]:
    """Return why ``item`` cannot get an eligibility check, or ``None``."""

    if not item.encounter_id:
        return "Missing encounter id"
    if not item.patient_id:
        return "No patient ID found in encounter"
    if item.date_of_service is None:
        return "Missing appointment time"
    window_start = start_of_day(now or utc_now(), settings.clinic_timezone)
    window_end = window_start + timedelta(seconds=settings.eligibility_window_seconds)
    if item.date_of_service < window_start:
        return "Appointment is in the past"
    if item.date_of_service >= window_end:
        return "Appointment is beyond the eligibility window"
    return None


class DiscoveryScheduler:
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

    async def run_note_discovery_cycle(self, now: Optional[datetime] = None) -> DiscoveryReport:
        now = now or utc_now()
        token = await self.tokens.acquire()
        patients, capped = await asyncio.to_thread(
            paginate,
            lambda offset, size: self.client.list_incomplete_notes(token, offset, size),
            self.settings.page_size,
            self.settings.discovery_cap,
        )
        report = DiscoveryReport(fetched_count=len(patients), capped=capped)
        reuse_window = timedelta(seconds=self.settings.reuse_window_seconds)
        seen: Set[str] = set()

        for patient in patients:
            for encounter in patient.get("incompleteEncounters") or []:
                item = WorkItem.from_incomplete(patient, encounter, self.settings.clinic_timezone)
                if not item.encounter_id or item.encounter_id in seen:
                    continue
                seen.add(item.encounter_id)
                if not is_note_check_eligible(item, self.settings, now):
                    continue
                report.eligible_count += 1

                recent = await asyncio.to_thread(
                    self.repository.has_recent_result, item.encounter_id, reuse_window, now
                )
                if recent:
                    report.skipped_recent += 1
                    continue

                job = await asyncio.to_thread(
                    self.queue.enqueue,
                    NOTE_CHECK,
                    {"item": item.to_payload(), "force": False, "checkedBy": "system"},
                    delay=report.queued_count * self.settings.stagger_seconds,
                    job_key=item.encounter_id,
                )
                if job is not None:
                    report.queued_count += 1

        logger.info("note_discovery_completed", **report.as_dict())
        return report

    async def run_eligibility_discovery_cycle(self, now: Optional[datetime] = None) -> DiscoveryReport:
        now = now or utc_now()
        token = await self.tokens.acquire()
        encounters = await asyncio.to_thread(self.client.list_encounters, token, now)
        report = DiscoveryReport(fetched_count=len(encounters))

        for encounter in encounters:
            item = WorkItem.from_encounter(encounter, self.settings.clinic_timezone)
            if item.encounter_id and await asyncio.to_thread(
                self.repository.eligibility_processed, item.encounter_id
            ):
                continue

            reason = eligibility_ineligibility_reason(item, self.settings, now)
            if reason is not None:
                if item.encounter_id:
                    await asyncio.to_thread(
                        self.repository.mark_eligibility_processed,
                        item.encounter_id,
                        item.patient_id,
                        checks_enqueued=0,
                        success=False,
                        error_message=f"Not eligible for eligibility check: {reason}",
                    )
                    report.ineligible_recorded += 1
                continue

            report.eligible_count += 1
            job = await asyncio.to_thread(
                self.queue.enqueue,
                ELIGIBILITY_CHECK,
                {"item": item.to_payload()},
                delay=report.queued_count * self.settings.stagger_seconds,
                job_key=item.encounter_id,
            )
            if job is not None:
                report.queued_count += 1

        logger.info("eligibility_discovery_completed", **report.as_dict())
        return report


__all__ = [
    "DiscoveryReport",
    "DiscoveryScheduler",
    "eligibility_ineligibility_reason",
    "is_note_check_eligible",
    "paginate",
    "start_of_day",
]
