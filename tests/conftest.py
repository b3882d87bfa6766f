import json
import os
import sys
from datetime import timedelta
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
from sqlalchemy import create_engine

# Ensure the repository root is on sys.path so tests can import the clinops package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from clinops.config import RetrySettings, Settings  # noqa: E402
from clinops.db.session import Database  # noqa: E402
from clinops.errors import EHRNotFoundError  # noqa: E402
from clinops.repository import Repository  # noqa: E402
from clinops.time_utils import utc_now  # noqa: E402
from clinops.worker import build_runtime  # noqa: E402

SERVICE_IDENTITY = "svc@clinic.test"
OK_RESPONSE = json.dumps({"status": "ok", "reason": "Looks fine"})


class FakeEHR:
    """In-memory stand-in for :class:`clinops.ehr_client.EHRClient`."""

    def __init__(self) -> None:
        self.notes: Dict[str, Dict[str, Any]] = {}
        self.note_errors: Dict[str, Exception] = {}
        self.note_calls: List[str] = []
        self.incomplete_pages: List[List[Dict[str, Any]]] = []
        self.incomplete_error: Optional[Exception] = None
        self.page_requests: List[tuple] = []
        self.encounters: Dict[str, Dict[str, Any]] = {}
        self.day_encounters: List[Dict[str, Any]] = []
        self.encounter_errors: Dict[str, Exception] = {}
        self.patient_encounters: Dict[str, List[Dict[str, Any]]] = {}
        self.vitals_updates: List[Dict[str, Any]] = []
        self.vitals_update_error: Optional[Exception] = None
        self.created_tasks: List[Dict[str, Any]] = []
        self.task_statuses: Dict[str, Any] = {}
        self.profiles: Dict[str, List[Dict[str, Any]]] = {}
        self.entities = ("provider-1", "practice-1")
        self.eligibility_calls: List[Dict[str, Any]] = []
        self.eligibility_status = "PENDING_RESPONSE"
        self.eligibility_errors: Dict[str, Exception] = {}
        self.refresh_calls = 0
        self.login_calls = 0

    def login(self, username, password):
        self.login_calls += 1
        return {"accessToken": "login-token", "refreshToken": "login-refresh", "endpoint": "https://app.test"}

    def refresh(self, refresh_token):
        self.refresh_calls += 1
        return {"accessToken": "refreshed-token", "refreshToken": None}

    def list_incomplete_notes(self, token, offset, size):
        self.page_requests.append((offset, size))
        if self.incomplete_error is not None:
            raise self.incomplete_error
        index = offset // size
        if index < len(self.incomplete_pages):
            return list(self.incomplete_pages[index])
        return []

    def get_progress_note(self, token, encounter_id, patient_id):
        self.note_calls.append(encounter_id)
        if encounter_id in self.note_errors:
            raise self.note_errors[encounter_id]
        return self.notes[encounter_id]

    def get_encounter(self, token, encounter_id):
        if encounter_id in self.encounter_errors:
            raise self.encounter_errors[encounter_id]
        return dict(self.encounters.get(encounter_id, {}))

    def list_encounters(self, token, day):
        return list(self.day_encounters)

    def list_patient_encounters(self, token, patient_id):
        return list(self.patient_encounters.get(patient_id, []))

    def update_vital_signs(self, token, vitals, *, encounter_id, patient_id):
        if self.vitals_update_error is not None:
            raise self.vitals_update_error
        self.vitals_updates.append({"vitals": dict(vitals), "encounter_id": encounter_id, "patient_id": patient_id})

    def create_task(self, token, *, subject, users, description, task_id, links, patient_id=None):
        self.created_tasks.append(
            {
                "subject": subject,
                "users": list(users),
                "description": description,
                "id": task_id,
                "links": list(links),
                "patient_id": patient_id,
            }
        )
        return task_id

    def get_task_status(self, token, task_id):
        status = self.task_statuses.get(task_id)
        if status is None:
            raise EHRNotFoundError(f"Task {task_id} not found", status_code=404)
        if isinstance(status, Exception):
            raise status
        return status

    def get_active_insurance_profiles(self, token, patient_id):
        return list(self.profiles.get(patient_id, []))

    def get_eligibility_entities(self, token):
        return self.entities

    def check_eligibility(self, token, *, profile_id, entity_id, entity_type, check_date):
        self.eligibility_calls.append(
            {"profile_id": profile_id, "entity_id": entity_id, "entity_type": entity_type}
        )
        if profile_id in self.eligibility_errors:
            raise self.eligibility_errors[profile_id]
        return [{"eligibilityStatusValue": self.eligibility_status}]

    def close(self):
        pass


class FakeOpenAI:
    """Mimics ``openai.OpenAI().chat.completions.create``."""

    def __init__(self, responder: Optional[Callable[[str, str], Any]] = None) -> None:
        self.responder = responder or (lambda model, prompt: OK_RESPONSE)
        self.calls: List[Dict[str, str]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, model, messages, **kwargs):
        prompt = messages[-1]["content"]
        self.calls.append({"model": model, "prompt": prompt})
        reply = self.responder(model, prompt)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


@pytest.fixture
def settings() -> Settings:
    return Settings(
        service_identity=SERVICE_IDENTITY,
        openai_api_key="sk-test",
        api_base_url="https://srv.test",
        login_url="https://login.test/api/login",
        refresh_url="https://login.test/api/refresh",
        page_size=2,
        discovery_cap=10,
        stagger_seconds=2.0,
        queue_poll_interval=0.01,
        retry=RetrySettings(base_seconds=30.0, cap_seconds=600.0, max_attempts=3),
    )


@pytest.fixture
def database(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'clinops.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    db = Database(engine)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def repository(database) -> Repository:
    return Repository(database)


@pytest.fixture
def seeded_token(repository):
    repository.store_token(
        SERVICE_IDENTITY,
        access_token="cached-token",
        refresh_token="cached-refresh",
        endpoint="https://app.test",
        expires_at=utc_now() + timedelta(hours=1),
    )


@pytest.fixture
def fake_ehr() -> FakeEHR:
    return FakeEHR()


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def runtime(settings, database, fake_ehr, fake_openai, seeded_token):
    rt = build_runtime(settings, database, ehr_client=fake_ehr, ai_client=fake_openai)
    yield rt


@pytest.fixture
def make_note() -> Callable[..., Dict[str, Any]]:
    def _make(
        hpi: str = "Patient presents with chronic eczema, stable.",
        plan: tuple = ("Eczema - continue triamcinolone",),
        vitals: Optional[str] = "Height: 5 ft 10 in, Weight: 180 lbs",
    ) -> Dict[str, Any]:
        sections = [
            {
                "sectionType": "SUBJECTIVE",
                "items": [{"elementType": "HISTORY_OF_PRESENT_ILLNESS", "text": hpi, "note": ""}],
            }
        ]
        if vitals is not None:
            sections.append(
                {"sectionType": "OBJECTIVE", "items": [{"elementType": "VITAL_SIGNS", "text": vitals}]}
            )
        sections.append(
            {
                "sectionType": "ASSESSMENT_AND_PLAN",
                "items": [{"elementType": "ASSESSMENT", "text": text} for text in plan],
            }
        )
        return {"progressNotes": sections}

    return _make


@pytest.fixture
def incomplete_entry() -> Callable[..., Dict[str, Any]]:
    """Build one ``incompletePatientEncounters`` entry."""

    def _make(
        patient_id: str,
        encounter_id: str,
        *,
        age: timedelta = timedelta(hours=5),
        status: str = "PENDING_COSIGN",
        care_team: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        dos = (utc_now() - age).strftime("%Y-%m-%dT%H:%M:%S+0000")
        return {
            "id": patient_id,
            "firstName": "Pat",
            "lastName": patient_id.title(),
            "incompleteEncounters": [
                {
                    "id": encounter_id,
                    "dateOfService": dos,
                    "status": status,
                    "chiefComplaintName": "Rash",
                    "encounterRoleInfoList": care_team or [],
                }
            ],
        }

    return _make


@pytest.fixture
def make_runtime(settings, database, fake_ehr, seeded_token):
    """Build a runtime with settings overrides and a custom AI responder."""

    from dataclasses import replace

    def _make(responder: Optional[Callable[[str, str], Any]] = None, **overrides: Any):
        ai = FakeOpenAI(responder)
        rt = build_runtime(replace(settings, **overrides), database, ehr_client=fake_ehr, ai_client=ai)
        return rt, ai

    return _make
