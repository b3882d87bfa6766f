"""The fixed set of note checks.

Four checks are delegated to the AI provider, each with its own prompt and
model; the vital-signs check is evaluated locally against the structured note.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, List, Mapping, Union

from clinops.analysis import CorrectionsNeeded, Issue, IssueDetails, OkResult, parse_check_response
from clinops.config import Settings
from clinops.errors import AIProviderError
from clinops.fingerprint import find_item
from clinops.observability import AI_CHECK_CALLS
from clinops.openai_client import AIClient
from clinops.prompts import PromptLibrary

logger = logging.getLogger(__name__)

CHRONICITY_CHECK = "chronicity-check"
HPI_STRUCTURE_CHECK = "hpi-structure-check"
PLAN_CHECK = "plan-check"
ACCURACY_CHECK = "accuracy-check"
VITAL_SIGNS_CHECK = "vital-signs-check"

AI_CHECK_TYPES = (CHRONICITY_CHECK, HPI_STRUCTURE_CHECK, PLAN_CHECK, ACCURACY_CHECK)

CheckResult = Union[OkResult, CorrectionsNeeded]

HEIGHT_PATTERN = re.compile(r"\b(?:height|ht)\b")
WEIGHT_PATTERN = re.compile(r"\b(?:weight|wt)\b|(?:\b|\d)(?:lbs?|kg)\b")


def _vital_signs_issue(hpi: str, a_and_p: str, correction: str) -> Issue:
    return Issue(
        assessment="Vital Signs",
        issue="unclear_documentation",
        details=IssueDetails(hpi=hpi, a_and_p=a_and_p, correction=correction),
    )


def check_vital_signs(note: Mapping[str, Any]) -> CheckResult:
    """Verify OBJECTIVE/VITAL_SIGNS documents both height and weight."""

    section, item = find_item(note, "OBJECTIVE", "VITAL_SIGNS")
    if section is None:
        return CorrectionsNeeded(
            summary="Missing OBJECTIVE section with vital signs",
            issues=[
                _vital_signs_issue(
                    "No OBJECTIVE section found",
                    "Vital signs section missing",
                    "Add OBJECTIVE section with height and weight measurements",
                )
            ],
        )

    text = str((item or {}).get("text") or "")
    if not text:
        return CorrectionsNeeded(
            summary="Missing vital signs documentation",
            issues=[
                _vital_signs_issue(
                    "Vital signs not documented",
                    "Height and weight required for billing",
                    "Add height and weight measurements to vital signs",
                )
            ],
        )

    lowered = text.lower()
    missing: List[str] = []
    if not HEIGHT_PATTERN.search(lowered):
        missing.append("height")
    if not WEIGHT_PATTERN.search(lowered):
        missing.append("weight")

    if missing:
        joined = " and ".join(missing)
        return CorrectionsNeeded(
            summary=f"Missing required vital signs: {joined}",
            issues=[
                _vital_signs_issue(
                    f"Current vital signs: {text}",
                    f"Missing {joined} measurements",
                    f"Add {joined} to vital signs documentation",
                )
            ],
        )
    return OkResult(reason="Height and weight are properly documented in vital signs")


class CheckRunner:
    """Runs every check for one rendered note."""

    def __init__(self, ai: AIClient, prompts: PromptLibrary, settings: Settings) -> None:
        self.ai = ai
        self.prompts = prompts
        self.settings = settings

    async def run_ai_check(self, check_type: str, note_text: str) -> CheckResult:
        model = self.settings.model_for(check_type)
        prompt = self.prompts.build(check_type, note_text)
        logger.info("Performing %s check with %s", check_type, model)
        try:
            text = await self.ai.acomplete(prompt, model, check_type=check_type)
        except AIProviderError:
            AI_CHECK_CALLS.labels(check_type=check_type, outcome="error").inc()
            raise
        result = parse_check_response(check_type, text)
        AI_CHECK_CALLS.labels(check_type=check_type, outcome=result.status).inc()
        return result

    async def run_all(self, note: Mapping[str, Any], note_text: str) -> List[CheckResult]:
        """Run the AI checks concurrently, then the local check, in a fixed order."""

        ai_results = await asyncio.gather(
            *(self.run_ai_check(check_type, note_text) for check_type in AI_CHECK_TYPES)
        )
        vital_signs = check_vital_signs(note)
        AI_CHECK_CALLS.labels(check_type=VITAL_SIGNS_CHECK, outcome=vital_signs.status).inc()
        return [*ai_results, vital_signs]


__all__ = [
    "ACCURACY_CHECK",
    "AI_CHECK_TYPES",
    "CHRONICITY_CHECK",
    "CheckRunner",
    "HPI_STRUCTURE_CHECK",
    "PLAN_CHECK",
    "VITAL_SIGNS_CHECK",
    "check_vital_signs",
]
