"""
Record shapes produced by the source client and the transforms that build them
from raw table rows.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..primitives import parse_remote_timestamp
from .errors import InvalidResponseError

UPDATED_FIELD = "sys_updated_on"
ID_FIELD = "sys_id"


@dataclass(frozen=True)
class TableMapping:
    """Where systems, controls and statements live on the remote side."""

    systems_table: str = "sn_grc_profile"
    controls_table: str = "sn_compliance_control"
    statements_table: str = "sn_compliance_policy_statement"
    control_system_field: str = "profile"
    statement_control_field: str = "control"
    statement_content_field: str = "description"

    @classmethod
    def from_settings(cls, settings) -> "TableMapping":
        return cls(
            systems_table=settings.systems_table,
            controls_table=settings.controls_table,
            statements_table=settings.statements_table,
            control_system_field=settings.control_system_field,
            statement_control_field=settings.statement_control_field,
            statement_content_field=settings.statement_content_field,
        )


@dataclass
class SystemRecord:
    external_id: str
    name: str
    description: Optional[str] = None
    owner: Optional[str] = None
    status: str = "active"
    updated_at: Optional[datetime] = None


@dataclass
class ControlRecord:
    external_id: str
    control_id: str
    name: str
    family: Optional[str] = None
    baseline: Optional[str] = None
    description: Optional[str] = None
    implementation_status: str = "not_assessed"
    updated_at: Optional[datetime] = None


@dataclass
class StatementRecord:
    external_id: str
    content: str
    statement_type: str = "implementation"
    updated_at: Optional[datetime] = None


def field_text(raw: Dict[str, Any], name: str) -> Optional[str]:
    """Read a column that may come back as a plain value or a reference object."""
    value = raw.get(name)
    if isinstance(value, dict):
        value = value.get("display_value") or value.get("value")
    if value is None or value == "":
        return None
    return str(value)


def _require_id(raw: Any) -> str:
    if not isinstance(raw, dict):
        raise InvalidResponseError(f"Expected a record object, got {type(raw).__name__}")
    external_id = field_text(raw, ID_FIELD)
    if not external_id:
        raise InvalidResponseError("Record has no sys_id")
    return external_id


def system_from_raw(raw: Dict[str, Any]) -> SystemRecord:
    external_id = _require_id(raw)
    return SystemRecord(
        external_id=external_id,
        name=field_text(raw, "name") or field_text(raw, "short_description") or external_id,
        description=field_text(raw, "description") or field_text(raw, "short_description"),
        owner=field_text(raw, "owned_by") or field_text(raw, "owner"),
        status=field_text(raw, "operational_status") or field_text(raw, "status") or "active",
        updated_at=parse_remote_timestamp(field_text(raw, UPDATED_FIELD)),
    )


def control_from_raw(raw: Dict[str, Any]) -> ControlRecord:
    external_id = _require_id(raw)
    control_id = field_text(raw, "control_id") or field_text(raw, "number") or external_id
    family = field_text(raw, "control_family") or field_text(raw, "family")
    if family is None and "-" in control_id:
        # "AC-2" belongs to family "AC"
        family = control_id.split("-", 1)[0].upper()
    return ControlRecord(
        external_id=external_id,
        control_id=control_id,
        name=field_text(raw, "name") or field_text(raw, "short_description") or control_id,
        family=family,
        baseline=field_text(raw, "baseline"),
        description=field_text(raw, "description"),
        implementation_status=field_text(raw, "implementation_status") or "not_assessed",
        updated_at=parse_remote_timestamp(field_text(raw, UPDATED_FIELD)),
    )


def statement_from_raw(raw: Dict[str, Any], content_field: str = "description") -> StatementRecord:
    external_id = _require_id(raw)
    return StatementRecord(
        external_id=external_id,
        content=field_text(raw, content_field) or "",
        statement_type=field_text(raw, "statement_type") or "implementation",
        updated_at=parse_remote_timestamp(field_text(raw, UPDATED_FIELD)),
    )
