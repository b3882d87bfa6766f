from datetime import datetime, timezone

from clinops.time_utils import parse_upstream_datetime
from clinops.work_items import WorkItem


def test_naive_service_date_is_read_in_clinic_timezone():
    parsed = parse_upstream_datetime("2025-07-14T09:30:00", "America/Detroit")
    assert parsed == datetime(2025, 7, 14, 13, 30, tzinfo=timezone.utc)

    winter = parse_upstream_datetime("2025-01-14T09:30:00", "America/Detroit")
    assert winter == datetime(2025, 1, 14, 14, 30, tzinfo=timezone.utc)


def test_explicit_offset_wins_over_clinic_timezone():
    assert parse_upstream_datetime("2025-07-14T09:30:00-0400", "Asia/Tokyo") == datetime(
        2025, 7, 14, 13, 30, tzinfo=timezone.utc
    )
    assert parse_upstream_datetime("2025-07-14T09:30:00Z", "America/Detroit") == datetime(
        2025, 7, 14, 9, 30, tzinfo=timezone.utc
    )
    assert parse_upstream_datetime("2025-07-14T09:30:00") == datetime(2025, 7, 14, 9, 30, tzinfo=timezone.utc)
    assert parse_upstream_datetime("yesterday", "America/Detroit") is None


def test_work_items_apply_clinic_timezone_and_round_trip():
    patient = {"id": "p1", "firstName": "Pat", "lastName": "Smith"}
    encounter = {"id": "enc-1", "dateOfService": "2025-07-14T09:30:00", "status": "PENDING_COSIGN"}

    item = WorkItem.from_incomplete(patient, encounter, "America/Detroit")
    assert item.date_of_service == datetime(2025, 7, 14, 13, 30, tzinfo=timezone.utc)
    assert item.patient_name == "Pat Smith"
    assert WorkItem.from_payload(item.to_payload()) == item

    scheduled = WorkItem.from_encounter(
        {**encounter, "patientInfo": {"id": "p1"}}, "America/Detroit"
    )
    assert scheduled.date_of_service == item.date_of_service
    assert scheduled.patient_id == "p1"
