"""Normalised rendering and content fingerprints of progress notes.

The rendering produced here is both the text sent to the AI checks and the
input to the fingerprint, so two notes whose rendering is identical are
treated as the same content and analysed only once.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, Iterable, List, Mapping

HPI_ELEMENT = "HISTORY_OF_PRESENT_ILLNESS"
PLAN_SECTION = "ASSESSMENT_AND_PLAN"

# Plan items matching any of these are left out of the rendering.
PROCEDURE_KEYWORDS = (
    "biopsy",
    "shave",
    "excision",
    "cryotherapy",
    "destruction",
    "debridement",
    "injection",
    "incision and drainage",
)
_PROCEDURE_RE = re.compile("|".join(re.escape(word) for word in PROCEDURE_KEYWORDS), re.IGNORECASE)


def _is_procedure_item(section_type: str, item: Mapping[str, Any]) -> bool:
    if section_type != PLAN_SECTION:
        return False
    return bool(_PROCEDURE_RE.search(str(item.get("text") or "")))


def _sections(note: Mapping[str, Any]) -> Iterable[Mapping[str, Any]]:
    sections = note.get("progressNotes") or []
    return [section for section in sections if isinstance(section, Mapping)]


def render_note(note: Mapping[str, Any]) -> str:
    """Render ``note`` into the normalised text used for analysis and hashing.

    Sections keep upstream order.  The HPI keeps only its introductory
    paragraph plus the free-text note; other items are dropped when empty.
    """

    parts: List[str] = []
    for section in _sections(note):
        section_type = str(section.get("sectionType") or "")
        parts.append(f"\n\n--- {section_type} ---\n")
        for item in section.get("items") or []:
            if not isinstance(item, Mapping):
                continue
            element = str(item.get("elementType") or "")
            text = str(item.get("text") or "")
            extra = str(item.get("note") or "")
            if element == HPI_ELEMENT:
                intro = text.split("\n\n")[0]
                parts.append(f"\n{element}:\n{intro}\n{extra}\n")
                continue
            if not text.strip() or _is_procedure_item(section_type, item):
                continue
            parts.append(f"\n{element}:\n{text}\n")
            if extra.strip():
                parts.append(f"Note: {extra}\n")
    return "".join(parts).strip()


def fingerprint_text(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def fingerprint_note(note: Mapping[str, Any]) -> str:
    """Return the 32-character hex fingerprint of ``note``."""

    return fingerprint_text(render_note(note))


def find_item(note: Mapping[str, Any], section_type: str, element_type: str) -> Any:
    """Return ``(section, item)`` for the first match; either may be ``None``."""

    for section in _sections(note):
        if section.get("sectionType") != section_type:
            continue
        for item in section.get("items") or []:
            if isinstance(item, Mapping) and item.get("elementType") == element_type:
                return section, item
        return section, None
    return None, None


__all__ = [
    "HPI_ELEMENT",
    "PLAN_SECTION",
    "PROCEDURE_KEYWORDS",
    "find_item",
    "fingerprint_note",
    "fingerprint_text",
    "render_note",
]
