"""Per-encounter analysis: fetch, fingerprint, reuse or check, merge, persist."""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from clinops.analysis import combine_results
from clinops.checks import CheckRunner
from clinops.config import Settings
from clinops.ehr_client import EHRClient
from clinops.errors import IneligibleItemError
from clinops.fingerprint import fingerprint_text, render_note
from clinops.observability import FINGERPRINT_REUSE
from clinops.repository import LIFECYCLE_COMPLETED, LIFECYCLE_ERROR, Repository, StoredCheck
from clinops.tokens import TokenManager
from clinops.work_items import WorkItem

logger = structlog.get_logger(__name__)


class AnalysisOrchestrator:
    def __init__(
        self,
        repository: Repository,
        client: EHRClient,
        tokens: TokenManager,
        runner: CheckRunner,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.client = client
        self.tokens = tokens
        self.runner = runner
        self.settings = settings

    async def analyze(self, item: WorkItem, *, force: bool = False, checked_by: str = "system") -> StoredCheck:
        """Analyse ``item`` and persist the combined verdict.

        Unless ``force`` is set, a completed result for identical content is
        reused without calling the AI provider.  Any failure other than an
        unreadable model response is stored as an ``error`` row and re-raised
        for the retry controller.
        """

        if not item.encounter_id:
            raise IneligibleItemError("Work item has no encounter id")

        log = logger.bind(encounter_id=item.encounter_id, force=force)
        try:
            token = await self.tokens.acquire()
            note = await asyncio.to_thread(
                self.client.get_progress_note, token, item.encounter_id, item.patient_id
            )
            content = render_note(note)
            fingerprint = fingerprint_text(content)

            if not force:
                reused = await self._reuse(item, fingerprint, content, checked_by)
                if reused is not None:
                    log.info("note_check_reused", fingerprint=fingerprint, source_encounter=reused[1])
                    return reused[0]

            results = await self.runner.run_all(note, content)
            combined = combine_results(results)
            stored = await asyncio.to_thread(
                self.repository.save_check_result,
                item,
                lifecycle=LIFECYCLE_COMPLETED,
                checked_by=checked_by,
                result=combined,
                fingerprint=fingerprint,
                content=content,
            )
        except Exception as exc:
            log.warning("note_check_failed", error=str(exc), error_type=type(exc).__name__)
            await self._record_error(item, checked_by, exc)
            raise

        log.info("note_check_completed", status=combined.status, issues=len(combined.issues))
        return stored

    async def _reuse(
        self, item: WorkItem, fingerprint: str, content: str, checked_by: str
    ) -> Optional[tuple]:
        patient_scope = None if self.settings.cross_patient_reuse else item.patient_id
        existing = await asyncio.to_thread(
            self.repository.find_by_fingerprint, fingerprint, patient_id=patient_scope
        )
        if existing is None:
            return None
        FINGERPRINT_REUSE.inc()
        stored = await asyncio.to_thread(
            self.repository.save_check_result,
            item,
            lifecycle=LIFECYCLE_COMPLETED,
            checked_by=checked_by,
            result=existing.result,
            fingerprint=fingerprint,
            content=content,
        )
        return stored, existing.encounter_id

    async def _record_error(self, item: WorkItem, checked_by: str, exc: BaseException) -> None:
        try:
            await asyncio.to_thread(
                self.repository.save_check_result,
                item,
                lifecycle=LIFECYCLE_ERROR,
                checked_by=checked_by,
                error_message=str(exc) or type(exc).__name__,
            )
        except Exception:
            logger.exception("note_check_error_not_recorded", encounter_id=item.encounter_id)

    async def analyze_encounter(
        self, encounter_id: str, *, force: bool = False, checked_by: str = "system"
    ) -> StoredCheck:
        """Resolve ``encounter_id`` upstream, then :meth:`analyze` it."""

        token = await self.tokens.acquire()
        encounter = await asyncio.to_thread(self.client.get_encounter, token, encounter_id)
        item = WorkItem.from_encounter({"id": encounter_id, **encounter}, self.settings.clinic_timezone)
        return await self.analyze(item, force=force, checked_by=checked_by)


__all__ = ["AnalysisOrchestrator"]
