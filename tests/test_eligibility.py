from datetime import datetime, timedelta, timezone

import pytest

from clinops.eligibility import needs_eligibility_check
from clinops.errors import EHRError
from clinops.work_items import WorkItem

NOW = datetime(2026, 1, 15, 17, 0, tzinfo=timezone.utc)


def _item(encounter_id="enc-1", patient_id="p1", when=NOW + timedelta(hours=2)):
    return WorkItem(encounter_id=encounter_id, patient_id=patient_id, date_of_service=when)


def _profile(profile_id, *policies):
    return {"id": profile_id, "active": True, "selfPay": False, "insurancePolicies": list(policies)}


def _policy(policy_id, status="ELIGIBLE", checked=NOW - timedelta(days=1)):
    return {
        "id": policy_id,
        "eligibilityStatus": status,
        "eligibilityDate": checked.strftime("%Y-%m-%dT%H:%M:%S+0000") if checked else None,
    }


def test_needs_eligibility_check_rules():
    assert needs_eligibility_check(_policy("x", status=None), 7, NOW) is True
    assert needs_eligibility_check(_policy("x", status="INELIGIBLE"), 7, NOW) is True
    assert needs_eligibility_check(_policy("x", checked=NOW - timedelta(days=8)), 7, NOW) is True
    assert needs_eligibility_check(_policy("x"), 7, NOW) is False
    assert needs_eligibility_check(_policy("x", checked=None), 7, NOW) is False


@pytest.mark.asyncio
async def test_checks_requested_for_stale_profiles(runtime, fake_ehr):
    fake_ehr.profiles["p1"] = [
        _profile("prof-1", _policy("pol-1", status="UNKNOWN")),
        _profile("prof-2", _policy("pol-2")),
    ]

    ok = await runtime.eligibility.process(_item(), NOW)

    assert ok is True
    assert fake_ehr.eligibility_calls == [
        {"profile_id": "prof-1", "entity_id": "practice-1", "entity_type": "PRACTICE"}
    ]
    assert runtime.repository.eligibility_processed("enc-1")
    assert runtime.eligibility.stats() == {
        "total": 1,
        "successful": 1,
        "failed": 0,
        "total_checks_enqueued": 1,
    }

    assert await runtime.eligibility.process(_item(), NOW) is False
    assert len(fake_ehr.eligibility_calls) == 1


@pytest.mark.asyncio
async def test_provider_level_policies_use_provider_entity(make_runtime, fake_ehr):
    rt, _ = make_runtime(provider_level_policy_ids=frozenset({"pol-9"}))
    fake_ehr.profiles["p1"] = [_profile("prof-9", _policy("pol-9", status=None))]

    await rt.eligibility.process(_item(), NOW)

    assert fake_ehr.eligibility_calls[0]["entity_type"] == "PROVIDER"
    assert fake_ehr.eligibility_calls[0]["entity_id"] == "provider-1"


@pytest.mark.asyncio
async def test_partial_success_is_recorded_as_failure(runtime, fake_ehr):
    fake_ehr.profiles["p1"] = [
        _profile("prof-1", _policy("pol-1", status=None)),
        _profile("prof-2", _policy("pol-2", status=None)),
    ]
    fake_ehr.eligibility_errors["prof-2"] = EHRError("rejected", status_code=400)

    ok = await runtime.eligibility.process(_item(), NOW)

    assert ok is False
    stats = runtime.eligibility.stats()
    assert stats["failed"] == 1
    assert stats["total_checks_enqueued"] == 2


@pytest.mark.asyncio
async def test_no_profiles_is_definitive(runtime, fake_ehr):
    assert await runtime.eligibility.process(_item(), NOW) is False
    assert runtime.repository.eligibility_processed("enc-1")
    assert fake_ehr.eligibility_calls == []


@pytest.mark.asyncio
async def test_out_of_window_is_recorded_not_checked(runtime, fake_ehr):
    past = _item(when=NOW - timedelta(days=1))

    assert await runtime.eligibility.process(past, NOW) is False
    assert runtime.repository.eligibility_processed("enc-1")
    assert fake_ehr.eligibility_calls == []


@pytest.mark.asyncio
async def test_upstream_failure_is_not_recorded(runtime, fake_ehr):
    fake_ehr.profiles["p1"] = [_profile("prof-1", _policy("pol-1", status=None))]

    def broken(token):
        raise EHRError("No suitable provider found for eligibility checks")

    fake_ehr.get_eligibility_entities = broken

    with pytest.raises(EHRError):
        await runtime.eligibility.process(_item(), NOW)
    assert not runtime.repository.eligibility_processed("enc-1")


@pytest.mark.asyncio
async def test_batch_isolates_failures(runtime, fake_ehr):
    fake_ehr.profiles["p1"] = [_profile("prof-1", _policy("pol-1", status=None))]
    fake_ehr.profiles["p2"] = [_profile("prof-2", _policy("pol-2", status=None))]

    original = fake_ehr.get_active_insurance_profiles

    def flaky(token, patient_id):
        if patient_id == "p2":
            raise RuntimeError("unexpected payload")
        return original(token, patient_id)

    fake_ehr.get_active_insurance_profiles = flaky
    items = [
        _item("enc-1", "p1"),
        _item("enc-2", "p2"),
        _item("enc-3", None),
        _item("enc-4", "p1"),
    ]

    stats = await runtime.eligibility.process_batch(items, NOW)

    assert stats.as_dict() == {"processed": 3, "successful": 2, "failed": 1}
    assert runtime.repository.eligibility_processed("enc-4")
    assert not runtime.repository.eligibility_processed("enc-2")

