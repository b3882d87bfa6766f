"""Carry height and weight forward into today's encounters.

Established adult patients who are ready for staff get the height and weight
of their most recent earlier encounter that recorded both, with the BMI
recalculated, so staff only need to confirm the values.  Every definitive
outcome lands in ``processed_vital_signs`` and the encounter is not looked at
again.  Transient upstream failures are left unrecorded so the next cycle
tries the encounter once more.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog

from clinops.config import Settings
from clinops.ehr_client import EHRClient
from clinops.errors import EHRError, EHRTransientError
from clinops.observability import VITALS_PROCESSED
from clinops.repository import Repository
from clinops.time_utils import parse_upstream_datetime, utc_now
from clinops.tokens import TokenManager

logger = structlog.get_logger(__name__)

READY_FOR_STAFF = "READY_FOR_STAFF"

VITAL_FIELDS = (
    "id",
    "height1",
    "height2",
    "heightUnit",
    "weight1",
    "weight2",
    "weightUnit",
    "bmi",
    "temperature",
    "temperatureUnit",
    "bloodPressureSystolic",
    "bloodPressureDiastolic",
    "pulse",
    "respirations",
    "headCircumference",
)
CARRIED_FIELDS = ("height1", "height2", "heightUnit", "weight1", "weight2", "weightUnit")

INCHES_TO_METERS = 0.0254
POUNDS_TO_KG = 0.453592


def age_on(date_of_birth: Any, today: date) -> Optional[int]:
    """Whole years between ``date_of_birth`` and ``today``; ``None`` if unreadable."""

    if not date_of_birth:
        return None
    try:
        born = date.fromisoformat(str(date_of_birth)[:10])
    except ValueError:
        return None
    years = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        years -= 1
    return years


def carryforward_skip_reason(encounter: Mapping[str, Any], settings: Settings, today: date) -> Optional[str]:
    """Return why ``encounter`` does not get vitals carried forward, or ``None``."""

    if encounter.get("status") != READY_FOR_STAFF:
        return "not ready for staff"
    if not encounter.get("establishedPatient"):
        return "new patient"
    patient = encounter.get("patientInfo") or {}
    age = age_on(patient.get("dateOfBirth"), today)
    if age is None:
        return "date of birth unavailable"
    if age < settings.vitals_min_age_years:
        return f"patient is {age} years old"
    return None


def extract_vital_signs(encounter: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    info = encounter.get("vitalSignsInfo")
    if not isinstance(info, Mapping):
        return None
    vitals = {name: info.get(name) for name in VITAL_FIELDS}
    vitals["encounterId"] = encounter.get("id")
    return vitals


def _positive(value: Any) -> bool:
    try:
        return value is not None and float(value) > 0
    except (TypeError, ValueError):
        return False


def has_height_and_weight(vitals: Mapping[str, Any]) -> bool:
    has_height = _positive(vitals.get("height1")) or _positive(vitals.get("height2"))
    has_weight = _positive(vitals.get("weight1")) or _positive(vitals.get("weight2"))
    return has_height and has_weight


def calculate_bmi(vitals: Mapping[str, Any]) -> Optional[float]:
    """BMI from the first populated height and weight, rounded to 2 places.

    Heights are inches for unit ``IN`` and centimetres otherwise; weights are
    pounds for ``LB_OZ`` and kilograms otherwise.
    """

    height = vitals.get("height1") or vitals.get("height2")
    weight = vitals.get("weight1") or vitals.get("weight2")
    if not _positive(height) or not _positive(weight):
        return None
    meters = float(height) * INCHES_TO_METERS if vitals.get("heightUnit") == "IN" else float(height) / 100
    kilograms = float(weight) * POUNDS_TO_KG if vitals.get("weightUnit") == "LB_OZ" else float(weight)
    return round(kilograms / (meters * meters), 2)


def carry_forward(current: Mapping[str, Any], source: Mapping[str, Any]) -> Dict[str, Any]:
    """Return ``current`` with the populated height/weight fields of ``source``."""

    updated = dict(current)
    for name in CARRIED_FIELDS:
        if source.get(name):
            updated[name] = source[name]
    bmi = calculate_bmi(source)
    if bmi:
        updated["bmi"] = bmi
    return updated


@dataclass
class VitalsBatch:
    processed: int = 0
    successful: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "successful": self.successful, "failed": self.failed}


class VitalSignsService:
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

    def _today(self, now: Optional[datetime]) -> date:
        return (now or utc_now()).astimezone(ZoneInfo(self.settings.clinic_timezone)).date()

    async def _record(
        self,
        encounter_id: str,
        patient_id: str,
        *,
        success: bool,
        source: Optional[Mapping[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        source = source or {}
        await asyncio.to_thread(
            self.repository.mark_vitals_processed,
            encounter_id,
            patient_id,
            success=success,
            source_encounter_id=source.get("encounterId"),
            height_value=source.get("height1"),
            weight_value=source.get("weight1"),
            height_unit=source.get("heightUnit"),
            weight_unit=source.get("weightUnit"),
            error_message=error,
        )
        VITALS_PROCESSED.labels(outcome="carried_forward" if success else "failed").inc()

    async def _history(self, token: Any, patient_id: str, encounter_id: str) -> List[Dict[str, Any]]:
        encounters = await asyncio.to_thread(self.client.list_patient_encounters, token, patient_id)
        earlier = [enc for enc in encounters if str(enc.get("id")) != encounter_id]

        def service_date(enc: Mapping[str, Any]) -> Tuple[int, float]:
            when = parse_upstream_datetime(enc.get("dateOfService"), self.settings.clinic_timezone)
            return (1, when.timestamp()) if when is not None else (0, 0.0)

        return sorted(earlier, key=service_date, reverse=True)

    async def _latest_vitals(self, token: Any, history: Iterable[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
        for previous in history:
            previous_id = str(previous.get("id"))
            try:
                full = await asyncio.to_thread(self.client.get_encounter, token, previous_id)
            except EHRError as exc:
                logger.warning("vitals_history_fetch_failed", source_encounter_id=previous_id, error=str(exc))
                continue
            vitals = extract_vital_signs({"id": previous_id, **full})
            if vitals is not None and has_height_and_weight(vitals):
                return vitals
        return None

    async def process(self, encounter: Mapping[str, Any], now: Optional[datetime] = None) -> bool:
        """Carry vitals into ``encounter``; ``True`` when the upstream update succeeded."""

        encounter_id = str(encounter.get("id") or "")
        patient_id = str((encounter.get("patientInfo") or {}).get("id") or "unknown")
        log = logger.bind(encounter_id=encounter_id, patient_id=patient_id)

        reason = carryforward_skip_reason(encounter, self.settings, self._today(now))
        if reason is not None:
            log.debug("vitals_not_applicable", reason=reason)
            return False
        if await asyncio.to_thread(self.repository.vitals_processed, encounter_id):
            return False

        token = await self.tokens.acquire()
        try:
            history = await self._history(token, patient_id, encounter_id)
            if not history:
                await self._record(encounter_id, patient_id, success=False, error="No historical encounters found")
                log.info("vitals_no_history")
                return False

            source = await self._latest_vitals(token, history)
            if source is None:
                await self._record(encounter_id, patient_id, success=False, error="No historical vital signs found")
                log.info("vitals_no_historical_values")
                return False

            try:
                current = await asyncio.to_thread(self.client.get_encounter, token, encounter_id)
            except EHRTransientError:
                raise
            except EHRError as exc:
                log.warning("vitals_current_encounter_failed", error=str(exc))
                current = None
            if current is None:
                await self._record(
                    encounter_id,
                    patient_id,
                    success=False,
                    source={"encounterId": source["encounterId"]},
                    error="Could not get current encounter",
                )
                return False

            current_vitals = extract_vital_signs({"id": encounter_id, **current})
            if current_vitals is None:
                await self._record(
                    encounter_id,
                    patient_id,
                    success=False,
                    source={"encounterId": source["encounterId"]},
                    error="Current encounter has no vital signs record",
                )
                return False

            updated = carry_forward(current_vitals, source)
            try:
                await asyncio.to_thread(
                    self.client.update_vital_signs,
                    token,
                    updated,
                    encounter_id=encounter_id,
                    patient_id=patient_id,
                )
            except EHRTransientError:
                raise
            except EHRError as exc:
                log.warning("vitals_update_failed", error=str(exc))
                await self._record(
                    encounter_id, patient_id, success=False, source=source, error="Failed to update vital signs in EZDerm"
                )
                return False
        except EHRTransientError:
            raise
        except Exception as exc:
            log.warning("vitals_carryforward_error", error=str(exc))
            await self._record(encounter_id, patient_id, success=False, error=f"Error: {exc}")
            return False

        await self._record(encounter_id, patient_id, success=True, source=source)
        log.info("vitals_carried_forward", source_encounter_id=source["encounterId"], bmi=updated.get("bmi"))
        return True

    async def process_batch(self, encounters: Iterable[Mapping[str, Any]], now: Optional[datetime] = None) -> VitalsBatch:
        """Process ``encounters`` one by one; a failing encounter never stops the batch."""

        batch = VitalsBatch()
        today = self._today(now)
        for encounter in encounters:
            applicable = carryforward_skip_reason(encounter, self.settings, today) is None
            try:
                ok = await self.process(encounter, now)
            except Exception as exc:
                logger.warning("vitals_encounter_failed", encounter_id=encounter.get("id"), error=str(exc))
                batch.processed += 1
                batch.failed += 1
                continue
            if applicable:
                batch.processed += 1
                if ok:
                    batch.successful += 1
                else:
                    batch.failed += 1
        return batch

    async def run_cycle(self, now: Optional[datetime] = None) -> VitalsBatch:
        """List today's encounters awaiting staff and carry vitals into the new ones."""

        now = now or utc_now()
        token = await self.tokens.acquire()
        encounters = await asyncio.to_thread(self.client.list_encounters, token, now)
        pending = []
        for encounter in encounters:
            if encounter.get("status") not in self.settings.vitals_statuses:
                continue
            if await asyncio.to_thread(self.repository.vitals_processed, str(encounter.get("id") or "")):
                continue
            pending.append(encounter)
        batch = await self.process_batch(pending, now)
        logger.info("vitals_cycle_completed", found=len(pending), **batch.as_dict())
        return batch

    def stats(self) -> Dict[str, int]:
        return self.repository.vitals_stats()


__all__ = [
    "VitalSignsService",
    "VitalsBatch",
    "age_on",
    "calculate_bmi",
    "carry_forward",
    "carryforward_skip_reason",
    "extract_vital_signs",
    "has_height_and_weight",
]
