"""
Prompt templates for the AI-backed note checks.

Templates are read once from ``<prompt_dir>/<check-type>.md`` when a prompt
directory is configured; any check without a readable file falls back to the
built-in prompt below.  Every prompt asks for a single JSON object matching
the result schema understood by :mod:`clinops.analysis`.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)

RESPONSE_SCHEMA = (
    'Respond with a single JSON object and nothing else. If the note is correct return '
    '{"status": "ok", "reason": "..."}. Otherwise return {"status": "corrections_needed", '
    '"summary": "...", "issues": [{"assessment": "...", "issue": "<category>", '
    '"details": {"HPI": "...", "A&P": "...", "correction": "..."}}]} where <category> is one of '
    "chronicity_mismatch, no_explicit_plan, unclear_documentation, chief_complaint_structure."
)

_FALLBACK_PROMPTS: Dict[str, str] = {
    "chronicity-check": (
        "You are a dermatology medical coder. Check if the chronicity of every diagnosis in the "
        "A&P matches what is documented in the HPI."
    ),
    "hpi-structure-check": (
        "You are a dermatology medical coder. Check if the HPI structure is correct for billing: "
        "each chief complaint must be introduced and described in its own statement."
    ),
    "plan-check": (
        "You are a dermatology medical coder. Check if every assessment in the A&P has an "
        "explicitly documented plan."
    ),
    "accuracy-check": (
        "You are a dermatology medical coder. Check if the A&P aligns with the HPI and that no "
        "assessment contradicts the documented history."
    ),
}

_DEFAULT_PROMPT = "You are a dermatology medical coder. Analyze the note for documentation issues."


def fallback_prompt(check_type: str) -> str:
    return f"{_FALLBACK_PROMPTS.get(check_type, _DEFAULT_PROMPT)} {RESPONSE_SCHEMA}"


class PromptLibrary:
    """Per-check prompt templates loaded once at construction."""

    def __init__(self, check_types: Iterable[str], prompt_dir: Optional[str] = None) -> None:
        self.prompt_dir = prompt_dir
        self._templates: Dict[str, str] = {}
        for check_type in check_types:
            self._templates[check_type] = self._load(check_type)

    def _load(self, check_type: str) -> str:
        if not self.prompt_dir:
            return fallback_prompt(check_type)
        path = os.path.join(self.prompt_dir, f"{check_type}.md")
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except OSError:
            logger.warning("Prompt template %s unavailable; using fallback prompt", path)
            return fallback_prompt(check_type)
        if not content.strip():
            logger.warning("Prompt template %s is empty; using fallback prompt", path)
            return fallback_prompt(check_type)
        logger.info("Loaded %s prompt (%d characters)", check_type, len(content))
        return content

    def template(self, check_type: str) -> str:
        try:
            return self._templates[check_type]
        except KeyError:
            raise KeyError(f"Prompt template not found for check type: {check_type}") from None

    def build(self, check_type: str, note_text: str) -> str:
        """Return the full prompt for ``check_type`` applied to ``note_text``."""

        return f"{self.template(check_type)}\n\nProgress Note to analyze:\n{note_text}"


__all__ = ["PromptLibrary", "RESPONSE_SCHEMA", "fallback_prompt"]
