"""
Legacy Material Request Sync - Manual Overrides

Operators correct unmatched rows by supplying overrides keyed by legacy record
id, then replay just those rows. Overrides are applied before identity
resolution and are never persisted by the engine.
"""

import uuid
from typing import Dict, List, Optional

from pydantic import BaseModel, field_validator


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class ManualOverride(BaseModel):
    """Corrections for a single legacy record."""
    legacy_record_id: str
    department_id: Optional[str] = None
    requester_employee_number: Optional[str] = None
    requester_name: Optional[str] = None
    pending_approver_employee_number: Optional[str] = None
    recommending_approver_employee_number: Optional[str] = None
    final_approver_employee_number: Optional[str] = None
    department_code: Optional[str] = None
    department_name: Optional[str] = None

    @field_validator("legacy_record_id")
    @classmethod
    def _require_legacy_record_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Legacy record ID is required.")
        return value

    @field_validator("department_id")
    @classmethod
    def _validate_department_id(cls, value: Optional[str]) -> Optional[str]:
        value = _blank_to_none(value)
        if value is None:
            return None
        try:
            uuid.UUID(value)
        except ValueError:
            raise ValueError("Department is invalid.")
        return value

    @field_validator(
        "requester_employee_number",
        "pending_approver_employee_number",
        "recommending_approver_employee_number",
        "final_approver_employee_number",
    )
    @classmethod
    def _validate_employee_number(cls, value: Optional[str]) -> Optional[str]:
        value = _blank_to_none(value)
        if value is not None and len(value) > 100:
            raise ValueError("Employee number is too long.")
        return value

    @field_validator("requester_name", "department_name")
    @classmethod
    def _validate_name(cls, value: Optional[str]) -> Optional[str]:
        value = _blank_to_none(value)
        if value is not None and len(value) > 200:
            raise ValueError("Name is too long.")
        return value

    @field_validator("department_code")
    @classmethod
    def _validate_department_code(cls, value: Optional[str]) -> Optional[str]:
        value = _blank_to_none(value)
        if value is not None and len(value) > 80:
            raise ValueError("Department code is too long.")
        return value


def build_override_lookup(overrides: Optional[List[ManualOverride]]) -> Dict[str, ManualOverride]:
    """Index overrides by legacy record id; a later override for the same id wins."""
    return {override.legacy_record_id.strip(): override for override in overrides or []}
