# repos.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from db import SupabaseClient
from models import (
    CHECK_FLAGS,
    RPC_EMAIL_FOR_LICENSE,
    RPC_LICENSE_EXISTS,
    RPC_USER_ROLE,
    TBL_ACTIVITIES,
    TBL_PATIENTS,
    TBL_PROFILES,
    TBL_USER_ROLES,
    ActivityCreate,
    PatientCreate,
    append_check_note,
    coerce_role,
    utcnow,
)


def _first_row(rows: Any) -> Optional[Dict[str, Any]]:
    if isinstance(rows, list) and rows and isinstance(rows[0], dict):
        return rows[0]
    return None


def _scalar(value: Any) -> Any:
    # PostgREST may wrap a scalar function result in a single-element list.
    if isinstance(value, list):
        return value[0] if value else None
    return value


@dataclass
class RoleRepo:
    db: SupabaseClient

    def role_for_user(self, user_id: str) -> Optional[str]:
        result = _scalar(self.db.rpc(RPC_USER_ROLE, {"_user_id": user_id}))
        return coerce_role(result)

    def assign(self, user_id: str, role: str) -> None:
        self.db.table(TBL_USER_ROLES).insert({"user_id": user_id, "role": role}, returning=False)


@dataclass
class ProfileRepo:
    db: SupabaseClient

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = self.db.table(TBL_PROFILES).select(
            filters={"user_id": user_id},
            columns="user_id,full_name,license_number,patient_id",
            limit=1,
        )
        return _first_row(rows)

    def update(self, user_id: str, *, full_name: str, license_number: Optional[str] = None) -> None:
        values: Dict[str, Any] = {"full_name": full_name}
        if license_number is not None:
            values["license_number"] = license_number
        self.db.table(TBL_PROFILES).update(values, filters={"user_id": user_id})


@dataclass
class LicenseDirectory:
    """Server-side lookups over registered doctor license numbers."""

    db: SupabaseClient

    def exists(self, license_number: str) -> bool:
        return bool(_scalar(self.db.rpc(RPC_LICENSE_EXISTS, {"p_license_number": license_number})))

    def email_for(self, license_number: str) -> Optional[str]:
        email = _scalar(self.db.rpc(RPC_EMAIL_FOR_LICENSE, {"p_license_number": license_number}))
        if isinstance(email, str) and email.strip():
            return email.strip()
        return None


@dataclass
class PatientRepo:
    db: SupabaseClient

    def list_for_doctor(self, doctor_id: str) -> List[Dict[str, Any]]:
        return self.db.table(TBL_PATIENTS).select(
            filters={"doctor_id": doctor_id},
            order=("created_at", "desc"),
        )

    def get(self, patient_row_id: str, doctor_id: str) -> Optional[Dict[str, Any]]:
        rows = self.db.table(TBL_PATIENTS).select(
            filters={"id": patient_row_id, "doctor_id": doctor_id},
            limit=1,
        )
        return _first_row(rows)

    def create(self, doctor_id: str, payload: PatientCreate) -> Dict[str, Any]:
        row = {"doctor_id": doctor_id, **payload.model_dump()}
        inserted = self.db.table(TBL_PATIENTS).insert(row)
        return _first_row(inserted) or row

    def log_check(self, patient: Dict[str, Any], service: str, notes: Optional[str]) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            CHECK_FLAGS[service]: True,
            "notes": append_check_note(patient.get("notes"), service, notes, utcnow()),
        }
        updated = self.db.table(TBL_PATIENTS).update(
            values,
            filters={"id": patient["id"]},
            returning=True,
        )
        return _first_row(updated) or {**patient, **values}


@dataclass
class ActivityRepo:
    db: SupabaseClient

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self.db.table(TBL_ACTIVITIES).select(
            filters={"user_id": user_id},
            order=("created_at", "desc"),
        )

    def log(self, user_id: str, payload: ActivityCreate) -> Dict[str, Any]:
        row = {"user_id": user_id, **payload.model_dump()}
        inserted = self.db.table(TBL_ACTIVITIES).insert(row)
        return _first_row(inserted) or row
