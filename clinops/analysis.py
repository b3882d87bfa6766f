"""Check result types and the parsing/normalisation of AI responses.

Every check, AI-backed or local, produces an :data:`AnalysisResult`, a closed
union of :class:`OkResult` and :class:`CorrectionsNeeded` discriminated on
``status``.  Model output is free text, so :func:`parse_check_response`
extracts the JSON object, repairs a couple of known artefacts and routes the
payload through one normaliser per known output shape.  Anything that still
cannot be understood becomes a degraded ``corrections_needed`` result asking
for manual review instead of failing the whole analysis.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Annotated, Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

import structlog

logger = structlog.get_logger(__name__)

ISSUE_CATEGORIES = (
    "chronicity_mismatch",
    "no_explicit_plan",
    "unclear_documentation",
    "chief_complaint_structure",
)

IssueCategory = Literal[
    "chronicity_mismatch",
    "no_explicit_plan",
    "unclear_documentation",
    "chief_complaint_structure",
]

CATEGORY_LABELS: Dict[str, str] = {
    "no_explicit_plan": "Missing Explicit Plan",
    "chronicity_mismatch": "Chronicity Mismatch",
    "unclear_documentation": "Unclear Documentation",
    "chief_complaint_structure": "Chief Complaint Structure",
}

_CATEGORY_ALIASES: Dict[str, str] = {
    "missing_plan": "no_explicit_plan",
    "no_plan": "no_explicit_plan",
    "chronicity": "chronicity_mismatch",
    "hpi_structure": "chief_complaint_structure",
}

MANUAL_REVIEW = "Manual review required"


class MalformedResponseError(ValueError):
    """The model output did not contain a parseable JSON object."""


class IssueDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    hpi: Optional[str] = Field(default=None, alias="HPI")
    a_and_p: str = Field(default="", alias="A&P")
    correction: str = ""


class Issue(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    assessment: str
    issue: IssueCategory
    details: IssueDetails = Field(default_factory=IssueDetails)

    @field_validator("issue", mode="before")
    @classmethod
    def _coerce_category(cls, value: Any) -> str:
        return normalize_category(value)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class OkResult(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    status: Literal["ok"] = "ok"
    reason: Optional[str] = None

    @property
    def issues(self) -> List[Issue]:
        return []

    @property
    def summary(self) -> Optional[str]:
        return self.reason


class CorrectionsNeeded(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    status: Literal["corrections_needed"] = "corrections_needed"
    summary: str
    issues: List[Issue] = Field(min_length=1)


AnalysisResult = Annotated[Union[OkResult, CorrectionsNeeded], Field(discriminator="status")]
_RESULT_ADAPTER: TypeAdapter = TypeAdapter(AnalysisResult)


def normalize_category(value: Any) -> str:
    """Map a raw category tag onto the closed set of issue categories."""

    text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    text = _CATEGORY_ALIASES.get(text, text)
    if text in ISSUE_CATEGORIES:
        return text
    return "unclear_documentation"


def degraded_result(check_type: str, message: str) -> CorrectionsNeeded:
    """Return the manual-review result used when a response cannot be read."""

    return CorrectionsNeeded(
        summary=f"{check_type} analysis failed to parse response properly",
        issues=[
            Issue(
                assessment="Analysis Error",
                issue="unclear_documentation",
                details=IssueDetails(a_and_p=message, correction=MANUAL_REVIEW),
            )
        ],
    )


def extract_json(text: str) -> str:
    """Return the substring between the first ``{`` and the last ``}``."""

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or start > end:
        raise MalformedResponseError("No valid JSON object found in response")
    return text[start : end + 1]


_STATUS_COLON_RE = re.compile(r'"status":\s*:(\w+)')
_DOUBLE_COLON_RE = re.compile(r":\s*:([^,}\]]+)")


def repair_json(text: str) -> str:
    """Fix the stray-colon artefacts some models emit (``"status": :ok``)."""

    text = _STATUS_COLON_RE.sub(r'"status": "\1"', text)
    return _DOUBLE_COLON_RE.sub(r': "\1"', text)


def _join(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(part) for part in value)
    return "" if value is None else str(value)


def _normalize_canonical(raw: Mapping[str, Any]) -> Optional[Issue]:
    details = raw.get("details")
    if not raw.get("assessment") or not raw.get("issue") or not isinstance(details, Mapping):
        return None
    return Issue(
        assessment=str(raw.get("assessment") or ""),
        issue=raw.get("issue"),
        details=IssueDetails.model_validate(details),
    )


def _normalize_typed_diagnoses(raw: Mapping[str, Any]) -> Optional[Issue]:
    """``{"type": ..., "diagnoses": [...], "details": ...}``."""

    issue_type = raw.get("type")
    diagnoses = raw.get("diagnoses")
    details = raw.get("details")
    if not issue_type or not diagnoses or details is None:
        return None
    assessment = _join(diagnoses)
    detail_text = details if isinstance(details, str) else json.dumps(details)
    return Issue(
        assessment=assessment,
        issue=issue_type,
        details=IssueDetails(
            a_and_p=detail_text,
            correction=f"Review and correct the {issue_type} for: {assessment}",
        ),
    )


def _normalize_flat(raw: Mapping[str, Any]) -> Optional[Issue]:
    """``{"assessment", "category", "HPI", "A&P", "correction"}`` without nesting."""

    category = raw.get("category") or raw.get("issue")
    if not raw.get("assessment") or not category:
        return None
    if not any(key in raw for key in ("A&P", "HPI", "correction")):
        return None
    return Issue(
        assessment=str(raw["assessment"]),
        issue=category,
        details=IssueDetails(
            hpi=raw.get("HPI"),
            a_and_p=str(raw.get("A&P") or ""),
            correction=str(raw.get("correction") or ""),
        ),
    )


_ISSUE_NORMALIZERS = (_normalize_canonical, _normalize_typed_diagnoses, _normalize_flat)


def _normalize_issue(raw: Any) -> Optional[Issue]:
    if not isinstance(raw, Mapping):
        return None
    for normalizer in _ISSUE_NORMALIZERS:
        try:
            issue = normalizer(raw)
        except ValidationError:
            issue = None
        if issue is not None:
            return issue
    return None


def normalize_payload(payload: Mapping[str, Any], *, check_type: str = "check") -> Union[OkResult, CorrectionsNeeded]:
    """Convert a decoded model response into an :data:`AnalysisResult`."""

    status = str(payload.get("status") or "").strip().lstrip(":").lower()
    if status == "ok":
        reason = payload.get("reason")
        return OkResult(reason=str(reason) if reason else None)

    if status not in {"corrections_needed", "error"}:
        raise MalformedResponseError(f"Unknown status {payload.get('status')!r}")

    raw_issues = payload.get("issues")
    issues: List[Issue] = []
    if isinstance(raw_issues, list):
        for raw in raw_issues:
            issue = _normalize_issue(raw)
            if issue is not None:
                issues.append(issue)

    if not issues:
        return degraded_result(check_type, f"{check_type} reported corrections without readable issues")

    summary = payload.get("summary") or f"Found {len(issues)} issue(s) requiring attention"
    return CorrectionsNeeded(summary=str(summary), issues=issues)


def parse_check_response(check_type: str, text: str) -> Union[OkResult, CorrectionsNeeded]:
    """Parse raw model output, degrading to a manual-review result on failure."""

    try:
        payload = json.loads(repair_json(extract_json(text)))
        if not isinstance(payload, Mapping):
            raise MalformedResponseError("Response JSON is not an object")
        return normalize_payload(payload, check_type=check_type)
    except (ValueError, ValidationError) as exc:
        logger.warning("ai_response_unparseable", check_type=check_type, error=str(exc))
        return degraded_result(check_type, f"Could not parse AI response for {check_type}")


def combine_results(results: Sequence[Union[OkResult, CorrectionsNeeded]]) -> Union[OkResult, CorrectionsNeeded]:
    """Merge per-check results into the combined verdict."""

    issues: List[Issue] = []
    for result in results:
        issues.extend(result.issues)

    if not issues:
        return OkResult(reason=f"All {len(results)} checks passed")

    categories: List[str] = []
    for issue in issues:
        if issue.issue not in categories:
            categories.append(issue.issue)
    count = len(issues)
    plural = "s" if count > 1 else ""
    return CorrectionsNeeded(
        summary=f"Found {count} issue{plural} across multiple checks: {', '.join(categories)}",
        issues=issues,
    )


def result_from_record(status: str, summary: Optional[str], issues: Iterable[Mapping[str, Any]]) -> Union[OkResult, CorrectionsNeeded]:
    """Rebuild a result from persisted columns."""

    issue_list = list(issues or [])
    if status == "ok" or not issue_list:
        return OkResult(reason=summary)
    return _RESULT_ADAPTER.validate_python(
        {"status": "corrections_needed", "summary": summary or "", "issues": issue_list}
    )


def issue_hash(issue: Mapping[str, Any]) -> str:
    """Identify a stored issue by content so overrides survive only while it is unchanged."""

    details = json.dumps(issue.get("details") or {}, sort_keys=True, separators=(",", ":"))
    content = f"{issue.get('assessment') or ''}{issue.get('issue') or ''}{details}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


__all__ = [
    "AnalysisResult",
    "CATEGORY_LABELS",
    "CorrectionsNeeded",
    "ISSUE_CATEGORIES",
    "Issue",
    "IssueDetails",
    "MANUAL_REVIEW",
    "MalformedResponseError",
    "OkResult",
    "combine_results",
    "degraded_result",
    "extract_json",
    "issue_hash",
    "normalize_category",
    "normalize_payload",
    "parse_check_response",
    "repair_json",
    "result_from_record",
]
