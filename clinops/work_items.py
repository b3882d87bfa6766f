"""Work items handed from discovery to the per-item jobs.

Upstream listings are nested (patient batch -> encounters); discovery flattens
them into :class:`WorkItem` instances which travel through the queue as plain
JSON payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from clinops.time_utils import parse_upstream_datetime


@dataclass(frozen=True)
class CareTeamMember:
    provider_id: str
    role: str
    active: bool = True
    first_name: str = ""
    last_name: str = ""

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_upstream(cls, raw: Mapping[str, Any]) -> Optional["CareTeamMember"]:
        provider_id = raw.get("providerId")
        if not provider_id:
            return None
        return cls(
            provider_id=str(provider_id),
            role=str(raw.get("encounterRoleType") or ""),
            active=bool(raw.get("active")),
            first_name=str(raw.get("firstName") or ""),
            last_name=str(raw.get("lastName") or ""),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "providerId": self.provider_id,
            "encounterRoleType": self.role,
            "active": self.active,
            "firstName": self.first_name,
            "lastName": self.last_name,
        }


@dataclass(frozen=True)
class WorkItem:
    """One upstream encounter considered for processing."""

    encounter_id: str
    patient_id: Optional[str] = None
    patient_name: str = ""
    chief_complaint: str = ""
    date_of_service: Optional[datetime] = None
    status: str = ""
    care_team: Tuple[CareTeamMember, ...] = field(default_factory=tuple)

    @classmethod
    def from_incomplete(
        cls, patient: Mapping[str, Any], encounter: Mapping[str, Any], tz_name: Optional[str] = None
    ) -> "WorkItem":
        """Build an item from an ``incompletePatientEncounters`` entry.

        ``tz_name`` is the clinic timezone used for service dates without an
        offset.
        """

        name = f"{patient.get('firstName') or ''} {patient.get('lastName') or ''}".strip()
        return cls(
            encounter_id=str(encounter.get("id") or ""),
            patient_id=str(patient["id"]) if patient.get("id") else None,
            patient_name=name,
            chief_complaint=str(encounter.get("chiefComplaintName") or ""),
            date_of_service=parse_upstream_datetime(encounter.get("dateOfService"), tz_name),
            status=str(encounter.get("status") or ""),
            care_team=_care_team(encounter.get("encounterRoleInfoList")),
        )

    @classmethod
    def from_encounter(cls, encounter: Mapping[str, Any], tz_name: Optional[str] = None) -> "WorkItem":
        """Build an item from an ``encounter/getByFilter`` entry."""

        patient = encounter.get("patientInfo") or {}
        name = f"{patient.get('firstName') or ''} {patient.get('lastName') or ''}".strip()
        return cls(
            encounter_id=str(encounter.get("id") or ""),
            patient_id=str(patient["id"]) if patient.get("id") else None,
            patient_name=name,
            chief_complaint=str(encounter.get("chiefComplaintName") or ""),
            date_of_service=parse_upstream_datetime(encounter.get("dateOfService"), tz_name),
            status=str(encounter.get("status") or ""),
            care_team=_care_team(encounter.get("encounterRoleInfoList")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "encounterId": self.encounter_id,
            "patientId": self.patient_id,
            "patientName": self.patient_name,
            "chiefComplaint": self.chief_complaint,
            "dateOfService": self.date_of_service.isoformat() if self.date_of_service else None,
            "status": self.status,
            "careTeam": [member.to_payload() for member in self.care_team],
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WorkItem":
        return cls(
            encounter_id=str(payload["encounterId"]),
            patient_id=payload.get("patientId"),
            patient_name=payload.get("patientName") or "",
            chief_complaint=payload.get("chiefComplaint") or "",
            date_of_service=parse_upstream_datetime(payload.get("dateOfService")),
            status=payload.get("status") or "",
            care_team=_care_team(payload.get("careTeam")),
        )


def _care_team(raw: Any) -> Tuple[CareTeamMember, ...]:
    members: List[CareTeamMember] = []
    for entry in raw or []:
        if isinstance(entry, Mapping):
            member = CareTeamMember.from_upstream(entry)
            if member is not None:
                members.append(member)
    return tuple(members)


__all__ = ["CareTeamMember", "WorkItem"]
