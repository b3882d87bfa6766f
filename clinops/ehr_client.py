"""Thin synchronous client for the upstream EHR REST API.

Only the request and response shapes the pipeline depends on are modelled.
Every call is blocking; async callers wrap them in :func:`asyncio.to_thread`.
HTTP failures are translated into the :class:`~clinops.errors.EHRError`
hierarchy so the retry controller can tell transient from fatal failures.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

import requests

from clinops.config import Settings
from clinops.errors import EHRAuthError, EHRError, EHRNotFoundError, EHRTransientError
from clinops.observability import UPSTREAM_FAILURES

logger = logging.getLogger(__name__)

REST_PREFIX = "ezderm-webservice/rest"
APPLICATION = "EZDERM"


class EHRClient:
    """Wrapper around a :class:`requests.Session` bound to one deployment."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        self.settings = settings
        self.session = session or requests.Session()

    # -- plumbing ------------------------------------------------------

    def _headers(self, access_token: Optional[str] = None, **extra: str) -> Dict[str, str]:
        headers = {
            "accept": "application/json",
            "content-type": "application/json",
            "user-agent": f"ezDerm/{self.settings.client_version}",
            "accept-language": "en-US;q=1.0",
        }
        if access_token:
            headers["authorization"] = f"Bearer {access_token}"
        headers.update({key: value for key, value in extra.items() if value})
        return headers

    def _url(self, endpoint: Optional[str], path: str) -> str:
        base = (endpoint or self.settings.api_base_url).rstrip("/")
        return f"{base}/{REST_PREFIX}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        json: Any = None,
    ) -> Any:
        try:
            resp = self.session.request(
                method, url, headers=dict(headers), json=json, timeout=self.settings.http_timeout
            )
        except requests.Timeout as exc:
            UPSTREAM_FAILURES.labels(reason="timeout").inc()
            raise EHRTransientError(f"{method} {url} timed out: {exc}") from exc
        except requests.ConnectionError as exc:
            UPSTREAM_FAILURES.labels(reason="connection").inc()
            raise EHRTransientError(f"{method} {url} connection failed: {exc}") from exc

        status = resp.status_code
        if status in (401, 403):
            UPSTREAM_FAILURES.labels(reason="auth").inc()
            raise EHRAuthError(f"{method} {url} rejected with {status}", status_code=status)
        if status == 404:
            UPSTREAM_FAILURES.labels(reason="not_found").inc()
            raise EHRNotFoundError(f"{method} {url} not found", status_code=status)
        if status == 429 or status >= 500:
            UPSTREAM_FAILURES.labels(reason="server").inc()
            raise EHRTransientError(f"{method} {url} failed with {status}", status_code=status)
        if status >= 400:
            UPSTREAM_FAILURES.labels(reason="client").inc()
            raise EHRError(f"{method} {url} failed with {status}: {resp.text[:200]}", status_code=status)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            UPSTREAM_FAILURES.labels(reason="invalid_json").inc()
            raise EHRError(f"{method} {url} returned invalid JSON", status_code=status) from exc

    # -- authentication ------------------------------------------------

    def login(self, username: str, password: str) -> Dict[str, Optional[str]]:
        """Full login; returns ``accessToken``, ``refreshToken`` and ``endpoint``."""

        body = {
            "username": username,
            "password": password,
            "application": APPLICATION,
            "timeZoneId": self.settings.clinic_timezone,
            "clientVersion": self.settings.client_version,
        }
        data = self._request("POST", self.settings.login_url, headers=self._headers(), json=body) or {}
        servers = data.get("servers") or {}
        if not data.get("accessToken"):
            raise EHRAuthError("Login response did not include an access token")
        return {
            "accessToken": data["accessToken"],
            "refreshToken": data.get("refreshToken"),
            "endpoint": servers.get("app") or self.settings.api_base_url,
        }

    def refresh(self, refresh_token: str) -> Dict[str, Optional[str]]:
        body = {
            "refreshToken": refresh_token,
            "application": APPLICATION,
            "clientVersion": self.settings.client_version,
        }
        data = self._request("POST", self.settings.refresh_url, headers=self._headers(), json=body) or {}
        if not data.get("accessToken"):
            raise EHRAuthError("Refresh response did not include an access token")
        return {"accessToken": data["accessToken"], "refreshToken": data.get("refreshToken")}

    # -- clinical notes ------------------------------------------------

    def list_incomplete_notes(self, token: Any, offset: int, size: int) -> List[Dict[str, Any]]:
        """Return one page of ``incompletePatientEncounters``; empty at the end."""

        data = self._request(
            "POST",
            self._url(token.endpoint, "inbox/getIncompleteNotes"),
            headers=self._headers(token.access_token),
            json={"fetchFrom": offset, "size": size},
        )
        if not data or not isinstance(data, list) or not isinstance(data[0], Mapping):
            return []
        return list(data[0].get("incompletePatientEncounters") or [])

    def get_progress_note(self, token: Any, encounter_id: str, patient_id: Optional[str]) -> Dict[str, Any]:
        data = self._request(
            "POST",
            self._url(token.endpoint, "progressnote/getProgressNoteInfo"),
            headers=self._headers(token.access_token, encounterid=encounter_id, patientid=patient_id or ""),
            json={"encounterId": encounter_id},
        )
        if not isinstance(data, Mapping):
            raise EHRError(f"Progress note for encounter {encounter_id} has an unexpected shape")
        return dict(data)

    def get_encounter(self, token: Any, encounter_id: str) -> Dict[str, Any]:
        data = self._request(
            "GET",
            self._url(token.endpoint, f"encounter/getById/_rid/{encounter_id}"),
            headers=self._headers(token.access_token, encounterid=encounter_id),
        )
        return dict(data or {})

    def list_encounters(self, token: Any, day: datetime) -> List[Dict[str, Any]]:
        """Return the clinic's encounters scheduled on ``day`` (clinic local time)."""

        zone = ZoneInfo(self.settings.clinic_timezone)
        local = day.astimezone(zone)
        start = local.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1) - timedelta(seconds=1)
        body = {
            "dateOfServiceRangeLow": start.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "dateOfServiceRangeHigh": end.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "clinicId": self.settings.clinic_id,
            "practiceId": self.settings.practice_id,
            "providerIds": [],
            "lightBean": True,
            "dateSelection": "SPECIFY_RANGE",
        }
        data = self._request(
            "POST",
            self._url(token.endpoint, "encounter/getByFilter"),
            headers=self._headers(token.access_token),
            json=body,
        )
        return [entry for entry in data or [] if isinstance(entry, Mapping)]

    # -- vital signs ---------------------------------------------------

    def list_patient_encounters(self, token: Any, patient_id: str) -> List[Dict[str, Any]]:
        """Return every encounter of ``patient_id``, including virtual visits."""

        data = self._request(
            "POST",
            self._url(token.endpoint, "encounter/getByFilter"),
            headers=self._headers(token.access_token, patientid=patient_id),
            json={"lightBean": True, "patientId": patient_id, "includeVirtualEncounters": True},
        )
        return [entry for entry in data or [] if isinstance(entry, Mapping)]

    def update_vital_signs(
        self, token: Any, vitals: Mapping[str, Any], *, encounter_id: str, patient_id: str
    ) -> None:
        self._request(
            "POST",
            self._url(token.endpoint, "vitalSigns/updateVitalSigns"),
            headers=self._headers(token.access_token, encounterid=encounter_id, patientid=patient_id),
            json={**vitals, "changeStatus": "UPDATED"},
        )

    # -- tasks ---------------------------------------------------------

    def create_task(
        self,
        token: Any,
        *,
        subject: str,
        users: Sequence[Mapping[str, str]],
        description: str,
        task_id: str,
        links: Sequence[Mapping[str, Any]],
        patient_id: Optional[str] = None,
    ) -> str:
        body = {
            "reminderEnabled": False,
            "subject": subject,
            "users": [dict(user) for user in users],
            "description": description,
            "id": task_id,
            "links": [dict(link) for link in links],
        }
        data = self._request(
            "POST",
            self._url(token.endpoint, "task/add"),
            headers=self._headers(token.access_token, patientid=patient_id or ""),
            json=body,
        )
        if isinstance(data, Mapping) and data.get("id"):
            return str(data["id"])
        return task_id

    def get_task_status(self, token: Any, task_id: str) -> str:
        """Return the upstream status of ``task_id``; 404 raises ``EHRNotFoundError``."""

        data = self._request(
            "GET",
            self._url(token.endpoint, f"task/getById/_rid/{task_id}"),
            headers=self._headers(token.access_token),
        )
        if not isinstance(data, Mapping):
            raise EHRNotFoundError(f"Task {task_id} not found")
        return str(data.get("status") or data.get("taskStatus") or "").upper()

    # -- insurance eligibility -----------------------------------------

    def get_active_insurance_profiles(self, token: Any, patient_id: str) -> List[Dict[str, Any]]:
        """Return active, non self-pay profiles that carry at least one policy."""

        data = self._request(
            "GET",
            self._url(token.endpoint, f"insurance/getActivePatientInsuranceProfile/_rid/{patient_id}"),
            headers=self._headers(token.access_token, patientid=patient_id),
        )
        profiles = (data or {}).get("activePatientInsuranceProfiles") or []
        return [
            dict(profile)
            for profile in profiles
            if isinstance(profile, Mapping)
            and profile.get("active")
            and not profile.get("selfPay")
            and profile.get("insurancePolicies")
        ]

    def get_eligibility_entities(self, token: Any) -> Tuple[str, str]:
        """Return ``(provider_id, practice_id)`` used for eligibility requests."""

        data = self._request(
            "GET",
            self._url(token.endpoint, "practice/getPracticeAndProvidersForEligibilitySettings"),
            headers=self._headers(token.access_token),
        )
        entities = [entry for entry in data or [] if isinstance(entry, Mapping)]
        provider = next((e for e in entities if e.get("eligibilityCheckEntity") == "PROVIDER"), None)
        practice = next((e for e in entities if e.get("eligibilityCheckEntity") == "PRACTICE"), None)
        if provider is None:
            raise EHRError("No suitable provider found for eligibility checks")
        if practice is None:
            raise EHRError("No suitable practice found for eligibility checks")
        return str(provider["defaultPracticeOrProviderId"]), str(practice["defaultPracticeOrProviderId"])

    def check_eligibility(
        self,
        token: Any,
        *,
        profile_id: str,
        entity_id: str,
        entity_type: str,
        check_date: datetime,
    ) -> List[Dict[str, Any]]:
        body = {
            "patientEligibilityCheckInfoRequestList": [
                {"id": profile_id, "dateForEligibilityCheck": check_date.isoformat(), "type": "PROFILE"}
            ],
            "id": entity_id,
            "type": entity_type,
        }
        data = self._request(
            "POST",
            self._url(token.endpoint, "patient/checkEligibility"),
            headers=self._headers(token.access_token),
            json=body,
        )
        return [entry for entry in data or [] if isinstance(entry, Mapping)]

    def close(self) -> None:
        self.session.close()


__all__ = ["EHRClient"]
