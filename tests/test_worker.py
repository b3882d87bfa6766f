import asyncio
import json
from datetime import timedelta

import pytest

from clinops.errors import EHRError, EHRTransientError
from clinops.queue import NOTE_CHECK, NOTE_DISCOVERY, STATE_COMPLETED, STATE_FAILED
from clinops.time_utils import utc_now
from clinops.work_items import CareTeamMember, WorkItem
from clinops.worker import Worker


def _plan_issue(model, prompt):
    if "explicitly documented plan" in prompt:
        return json.dumps(
            {
                "status": "corrections_needed",
                "summary": "Missing plan",
                "issues": [
                    {
                        "assessment": "Eczema",
                        "issue": "no_explicit_plan",
                        "details": {"HPI": "chronic eczema", "A&P": "Eczema", "correction": "Add a plan"},
                    }
                ],
            }
        )
    return '{"status": "ok"}'


def _enqueue_check(rt, encounter_id="enc-1"):
    item = WorkItem(
        encounter_id=encounter_id,
        patient_id="patient-1",
        patient_name="Pat Smith",
        date_of_service=utc_now() - timedelta(hours=4),
        care_team=(CareTeamMember(provider_id="prov-1", role="PROVIDER", active=True),),
    )
    rt.queue.enqueue(NOTE_CHECK, {"item": item.to_payload(), "force": False}, job_key=encounter_id)
    return rt.queue.dequeue(NOTE_CHECK)


@pytest.mark.asyncio
async def test_note_check_with_issues_opens_task(make_runtime, fake_ehr, make_note):
    rt, _ = make_runtime(_plan_issue)
    fake_ehr.notes["enc-1"] = make_note(plan=("Eczema",))
    job = _enqueue_check(rt)

    result = await Worker(rt).process_job(job)

    assert result["status"] == "corrections_needed"
    assert result["taskId"] is not None
    assert len(fake_ehr.created_tasks) == 1
    assert fake_ehr.created_tasks[0]["users"] == [{"userId": "prov-1", "userType": "ASSIGNEE"}]
    assert rt.queue.get(job.id).state == STATE_COMPLETED


@pytest.mark.asyncio
async def test_clean_note_completes_without_task(runtime, fake_ehr, make_note):
    fake_ehr.notes["enc-1"] = make_note()
    job = _enqueue_check(runtime)

    result = await Worker(runtime).process_job(job)

    assert result == {"encounterId": "enc-1", "status": "ok", "taskId": None}
    assert fake_ehr.created_tasks == []


@pytest.mark.asyncio
async def test_transient_failure_schedules_retry(runtime, fake_ehr):
    fake_ehr.note_errors["enc-1"] = EHRTransientError("GET note timed out")
    job = _enqueue_check(runtime)

    assert await Worker(runtime).process_job(job) is None

    failed = runtime.queue.get(job.id)
    assert failed.state == STATE_FAILED
    assert failed.error.startswith("retry scheduled in 30s")
    assert runtime.queue.dequeue(NOTE_CHECK) is None
    retry = runtime.queue.dequeue(NOTE_CHECK, now=utc_now() + timedelta(seconds=31))
    assert retry.attempts_made == 1
    assert retry.payload["item"]["encounterId"] == "enc-1"


@pytest.mark.asyncio
async def test_fatal_failure_is_not_retried(runtime, fake_ehr):
    fake_ehr.note_errors["enc-1"] = EHRError("bad request", status_code=400)
    job = _enqueue_check(runtime)

    await Worker(runtime).process_job(job)

    assert runtime.queue.get(job.id).state == STATE_FAILED
    assert runtime.queue.pending_count(NOTE_CHECK) == 0


@pytest.mark.asyncio
async def test_discovery_failure_waits_for_next_cycle(runtime, fake_ehr):
    fake_ehr.incomplete_error = EHRTransientError("listing timed out")
    runtime.queue.enqueue(NOTE_DISCOVERY, {}, job_key=NOTE_DISCOVERY)
    job = runtime.queue.dequeue(NOTE_DISCOVERY)

    await Worker(runtime).process_job(job)

    assert runtime.queue.get(job.id).error == "listing timed out"
    assert runtime.queue.pending_count(NOTE_DISCOVERY) == 0


@pytest.mark.asyncio
async def test_started_worker_drains_queue_and_stops(runtime, fake_ehr, make_note):
    fake_ehr.notes["enc-1"] = make_note()
    runtime.queue.enqueue(NOTE_CHECK, {"item": WorkItem(encounter_id="enc-1", patient_id="p1").to_payload()})
    worker = Worker(runtime)

    worker.start()
    try:
        for _ in range(200):
            if runtime.repository.get_check_result("enc-1") is not None:
                break
            await asyncio.sleep(0.02)
    finally:
        await worker.stop()

    assert runtime.repository.get_check_result("enc-1").result_status == "ok"
    assert runtime.queue.pending_count(NOTE_CHECK) == 0


@pytest.mark.asyncio
async def test_discovery_after_transient_failure_keeps_single_chain(runtime, fake_ehr, incomplete_entry):
    fake_ehr.incomplete_pages = [[incomplete_entry("patient-1", "enc-1")]]
    fake_ehr.note_errors["enc-1"] = EHRTransientError("GET note timed out")
    await runtime.discovery.run_note_discovery_cycle()
    job = runtime.queue.dequeue(NOTE_CHECK)

    await Worker(runtime).process_job(job)
    report = await runtime.discovery.run_note_discovery_cycle()

    assert report.queued_count == 0
    assert runtime.queue.pending_count(NOTE_CHECK) == 1
    retry = runtime.queue.dequeue(NOTE_CHECK, now=utc_now() + timedelta(seconds=31))
    assert retry.job_key == "enc-1"
    assert retry.attempts_made == 1
