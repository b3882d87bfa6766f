import json

import pytest

from clinops.analysis import (
    MANUAL_REVIEW,
    CorrectionsNeeded,
    OkResult,
    combine_results,
    normalize_category,
    parse_check_response,
    result_from_record,
)
from clinops.checks import check_vital_signs


def _issue(category="no_explicit_plan", assessment="Eczema"):
    return {
        "assessment": assessment,
        "issue": category,
        "details": {"HPI": "chronic eczema", "A&P": assessment, "correction": "Document the plan"},
    }


def test_parse_ok_with_surrounding_prose():
    result = parse_check_response("plan-check", 'Sure! Here you go: {"status": "ok"} Thanks.')
    assert isinstance(result, OkResult)
    assert result.issues == []


def test_parse_repairs_stray_colon():
    result = parse_check_response("plan-check", '{"status": :ok, "reason": "fine"}')
    assert isinstance(result, OkResult)
    assert result.reason == "fine"


def test_parse_canonical_corrections():
    payload = {"status": "corrections_needed", "summary": "Missing plan", "issues": [_issue()]}
    result = parse_check_response("plan-check", json.dumps(payload))
    assert isinstance(result, CorrectionsNeeded)
    assert result.summary == "Missing plan"
    assert result.issues[0].issue == "no_explicit_plan"
    assert result.issues[0].details.a_and_p == "Eczema"


def test_parse_typed_diagnoses_shape():
    payload = {
        "status": "corrections_needed",
        "issues": [{"type": "chronicity_mismatch", "diagnoses": ["Acne", "Rosacea"], "details": "HPI says new"}],
    }
    result = parse_check_response("chronicity-check", json.dumps(payload))
    issue = result.issues[0]
    assert issue.assessment == "Acne, Rosacea"
    assert issue.issue == "chronicity_mismatch"
    assert issue.details.a_and_p == "HPI says new"
    assert "Acne, Rosacea" in issue.details.correction


def test_parse_flat_shape_and_category_alias():
    payload = {
        "status": "corrections_needed",
        "summary": "x",
        "issues": [{"assessment": "Warts", "category": "missing_plan", "A&P": "Warts", "correction": "Add plan"}],
    }
    result = parse_check_response("plan-check", json.dumps(payload))
    assert result.issues[0].issue == "no_explicit_plan"
    assert result.issues[0].details.correction == "Add plan"


@pytest.mark.parametrize("text", ["no json here", '{"status": "corrections_needed", "issues": [', '{"status": "maybe"}'])
def test_unreadable_response_degrades_to_manual_review(text):
    result = parse_check_response("accuracy-check", text)
    assert isinstance(result, CorrectionsNeeded)
    assert len(result.issues) == 1
    assert result.issues[0].issue == "unclear_documentation"
    assert result.issues[0].details.correction == MANUAL_REVIEW
    assert "accuracy-check" in result.summary


def test_corrections_without_readable_issues_degrade():
    result = parse_check_response("plan-check", '{"status": "corrections_needed", "issues": [{"foo": 1}]}')
    assert isinstance(result, CorrectionsNeeded)
    assert result.issues[0].details.correction == MANUAL_REVIEW


def test_unknown_category_maps_to_unclear_documentation():
    assert normalize_category("Something Else") == "unclear_documentation"
    assert normalize_category("chronicity") == "chronicity_mismatch"


def test_combine_all_ok():
    combined = combine_results([OkResult(), OkResult(), OkResult()])
    assert isinstance(combined, OkResult)
    assert combined.reason == "All 3 checks passed"


def test_combine_collects_issues_in_order_with_distinct_categories():
    first = parse_check_response(
        "plan-check",
        json.dumps({"status": "corrections_needed", "summary": "a", "issues": [_issue(), _issue(assessment="Acne")]}),
    )
    second = parse_check_response(
        "chronicity-check",
        json.dumps({"status": "corrections_needed", "summary": "b", "issues": [_issue("chronicity_mismatch")]}),
    )
    combined = combine_results([OkResult(), first, second])
    assert isinstance(combined, CorrectionsNeeded)
    assert [issue.assessment for issue in combined.issues] == ["Eczema", "Acne", "Eczema"]
    assert combined.summary == "Found 3 issues across multiple checks: no_explicit_plan, chronicity_mismatch"


def test_eczema_scenario(make_note):
    vitals = check_vital_signs(make_note())
    plan_ok = parse_check_response("plan-check", '{"status":"ok"}')
    chronicity_ok = parse_check_response("chronicity-check", '{"status":"ok"}')
    assert combine_results([chronicity_ok, plan_ok, vitals]).status == "ok"

    plan_issue = parse_check_response(
        "plan-check",
        json.dumps({"status": "corrections_needed", "summary": "No plan", "issues": [_issue()]}),
    )
    combined = combine_results([chronicity_ok, plan_issue, vitals])
    assert combined.status == "corrections_needed"
    assert len(combined.issues) == 1
    assert combined.issues[0].issue == "no_explicit_plan"


def test_result_round_trips_through_record_columns():
    original = parse_check_response(
        "plan-check", json.dumps({"status": "corrections_needed", "summary": "s", "issues": [_issue()]})
    )
    rebuilt = result_from_record("corrections_needed", "s", [issue.as_dict() for issue in original.issues])
    assert rebuilt == original
    assert isinstance(result_from_record("ok", "fine", []), OkResult)


def test_vital_signs_check_variants(make_note):
    assert check_vital_signs(make_note()).status == "ok"

    missing_section = check_vital_signs(make_note(vitals=None))
    assert missing_section.summary == "Missing OBJECTIVE section with vital signs"

    empty = check_vital_signs(make_note(vitals=""))
    assert empty.summary == "Missing vital signs documentation"

    no_weight = check_vital_signs(make_note(vitals="Height 70 in, BP 120/80"))
    assert no_weight.summary == "Missing required vital signs: weight"

    neither = check_vital_signs(make_note(vitals="BP 120/80, pulse 70"))
    assert neither.summary == "Missing required vital signs: height and weight"

    no_height = check_vital_signs(make_note(vitals="Weight 180lbs"))
    assert no_height.summary == "Missing required vital signs: height"

    assert check_vital_signs(make_note(vitals="Ht: 70 in, Wt: 82 kg")).status == "ok"
