# models.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator


AppRole = Literal["doctor", "patient"]
APP_ROLES = ("doctor", "patient")

CheckService = Literal["medical_report", "diabetes_prediction"]
ActivityService = Literal["medical_report_analyzer", "diabetes_prediction"]

CHECK_LABELS: Dict[str, str] = {
    "medical_report": "Report Analyzed",
    "diabetes_prediction": "Diabetes Check",
}
CHECK_FLAGS: Dict[str, str] = {
    "medical_report": "medical_report_analyzed",
    "diabetes_prediction": "diabetes_prediction_performed",
}


def coerce_role(value: Any) -> Optional[str]:
    role = str(value or "").strip().lower()
    return role if role in APP_ROLES else None


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class ProfileModel(BaseModel):
    user_id: str
    full_name: Optional[str] = None
    license_number: Optional[str] = None
    patient_id: Optional[str] = None


class PatientCreate(BaseModel):
    """Payload a doctor submits to add a patient record. patient_id is generated by the backend."""

    name: str = ""
    age: Optional[int] = Field(default=None, ge=0, le=150)
    gender: Optional[Literal["male", "female", "other"]] = None
    notes: Optional[str] = None
    medical_report_analyzed: bool = False
    diabetes_prediction_performed: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("age", "gender", "notes", mode="before")
    @classmethod
    def _empty_is_null(cls, value: Any) -> Any:
        return _blank_to_none(value)


class PatientCheck(BaseModel):
    service: CheckService
    notes: Optional[str] = None

    @field_validator("notes", mode="before")
    @classmethod
    def _empty_is_null(cls, value: Any) -> Any:
        return _blank_to_none(value)


class ActivityCreate(BaseModel):
    service_used: ActivityService
    notes: Optional[str] = None

    @field_validator("notes", mode="before")
    @classmethod
    def _empty_is_null(cls, value: Any) -> Any:
        return _blank_to_none(value)


# -----------------------------
# Tables (single source of truth)
# -----------------------------
TBL_USER_ROLES = "user_roles"
TBL_PROFILES = "profiles"
TBL_PATIENTS = "patients"
TBL_ACTIVITIES = "patient_activities"

# Postgres functions exposed over PostgREST RPC
RPC_USER_ROLE = "get_user_role"
RPC_LICENSE_EXISTS = "license_number_exists"
RPC_EMAIL_FOR_LICENSE = "get_email_by_license"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_check_stamp(when: datetime) -> str:
    """Timestamp used inside patient notes, e.g. 'Oct 19, 2026 14:05'."""
    return f"{when.strftime('%b')} {when.day}, {when.strftime('%Y %H:%M')}"


def append_check_note(existing: Optional[str], service: str, notes: Optional[str], when: datetime) -> Optional[str]:
    """
    Append a stamped line for a logged check to a patient's notes.
    Without notes the existing text is returned untouched.
    """
    text = (notes or "").strip()
    if not text:
        return existing
    line = f"[{format_check_stamp(when)}] {CHECK_LABELS[service]}: {text}"
    return f"{existing or ''}\n{line}".strip()
