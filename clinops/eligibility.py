"""Insurance eligibility verification ahead of today's appointments.

For each encounter the patient's active, non self-pay insurance profiles are
inspected and an upstream eligibility check is requested for every profile
holding a policy whose verification is missing, not ``ELIGIBLE`` or stale.
Definitive outcomes (ineligible encounter, no profiles, checks requested) are
recorded in ``eligibility_processing`` so the encounter is not evaluated
again.  Upstream failures are not recorded, so the next discovery cycle
retries the encounter.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog

from clinops.config import Settings
from clinops.discovery import eligibility_ineligibility_reason
from clinops.ehr_client import EHRClient
from clinops.errors import EHRError
from clinops.repository import Repository
from clinops.time_utils import parse_upstream_datetime, utc_now
from clinops.tokens import TokenManager
from clinops.work_items import WorkItem

logger = structlog.get_logger(__name__)

ELIGIBLE = "ELIGIBLE"
PENDING_RESPONSE = "PENDING_RESPONSE"
ENTITY_PRACTICE = "PRACTICE"
ENTITY_PROVIDER = "PROVIDER"


def needs_eligibility_check(policy: Mapping[str, Any], recheck_days: int, now: Optional[datetime] = None) -> bool:
    status = policy.get("eligibilityStatus")
    if not status or status != ELIGIBLE:
        return True
    checked_at = parse_upstream_datetime(policy.get("eligibilityDate"))
    if checked_at is not None and checked_at < (now or utc_now()) - timedelta(days=recheck_days):
        return True
    return False


@dataclass
class BatchStats:
    processed: int = 0
    successful: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "successful": self.successful, "failed": self.failed}


class EligibilityService:
    def __init__(
        self,
        repository: Repository,
        client: EHRClient,
        tokens: TokenManager,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.client = client
        self.tokens = tokens
        self.settings = settings

    def _entity_type(self, profile: Mapping[str, Any]) -> str:
        policy_ids = {str(policy.get("id")) for policy in profile.get("insurancePolicies") or []}
        if policy_ids & set(self.settings.provider_level_policy_ids):
            return ENTITY_PROVIDER
        return ENTITY_PRACTICE

    async def _mark(self, item: WorkItem, *, enqueued: int, success: bool, error: Optional[str]) -> None:
        await asyncio.to_thread(
            self.repository.mark_eligibility_processed,
            item.encounter_id,
            item.patient_id,
            checks_enqueued=enqueued,
            success=success,
            error_message=error,
        )

    async def process(self, item: WorkItem, now: Optional[datetime] = None) -> bool:
        """Request eligibility checks for ``item``; ``True`` when all succeeded.

        Upstream errors while listing profiles or entities propagate unrecorded.
        """

        now = now or utc_now()
        log = logger.bind(encounter_id=item.encounter_id, patient_id=item.patient_id)

        if item.encounter_id and await asyncio.to_thread(
            self.repository.eligibility_processed, item.encounter_id
        ):
            return False

        reason = eligibility_ineligibility_reason(item, self.settings, now)
        if reason is not None:
            if item.encounter_id:
                await self._mark(item, enqueued=0, success=False, error=f"Not eligible for eligibility check: {reason}")
            log.info("eligibility_not_applicable", reason=reason)
            return False

        token = await self.tokens.acquire()
        profiles = await asyncio.to_thread(self.client.get_active_insurance_profiles, token, item.patient_id)
        if not profiles:
            await self._mark(item, enqueued=0, success=False, error="No active insurance profiles found")
            log.info("eligibility_no_profiles")
            return False

        provider_id, practice_id = await asyncio.to_thread(self.client.get_eligibility_entities, token)

        enqueued = 0
        successful = 0
        for profile in profiles:
            policies = profile.get("insurancePolicies") or []
            if not any(needs_eligibility_check(p, self.settings.eligibility_recheck_days, now) for p in policies):
                continue
            entity_type = self._entity_type(profile)
            entity_id = provider_id if entity_type == ENTITY_PROVIDER else practice_id
            enqueued += 1
            try:
                responses = await asyncio.to_thread(
                    self.client.check_eligibility,
                    token,
                    profile_id=str(profile.get("id")),
                    entity_id=entity_id,
                    entity_type=entity_type,
                    check_date=now,
                )
            except EHRError as exc:
                log.warning("eligibility_check_request_failed", profile_id=profile.get("id"), error=str(exc))
                continue
            if responses and responses[0].get("eligibilityStatusValue") == PENDING_RESPONSE:
                successful += 1

        if enqueued == 0:
            await self._mark(item, enqueued=0, success=True, error=None)
            log.info("eligibility_already_current")
            return True

        all_successful = successful == enqueued
        await self._mark(
            item,
            enqueued=enqueued,
            success=all_successful,
            error=None if all_successful else f"{successful}/{enqueued} checks successful",
        )
        log.info("eligibility_checks_requested", enqueued=enqueued, successful=successful)
        return all_successful

    async def process_batch(self, items: Iterable[WorkItem], now: Optional[datetime] = None) -> BatchStats:
        """Process ``items`` one by one; a failing item never stops the batch."""

        stats = BatchStats()
        for item in items:
            applicable = eligibility_ineligibility_reason(item, self.settings, now) is None
            try:
                ok = await self.process(item, now)
            except Exception as exc:
                logger.warning("eligibility_item_failed", encounter_id=item.encounter_id, error=str(exc))
                stats.processed += 1
                stats.failed += 1
                continue
            if applicable:
                stats.processed += 1
                if ok:
                    stats.successful += 1
                else:
                    stats.failed += 1
        return stats

    def stats(self) -> Dict[str, int]:
        return self.repository.eligibility_stats()


__all__ = ["BatchStats", "EligibilityService", "needs_eligibility_check"]
