from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditFilters(BaseModel):
    """Filter set shared by audit queries and exports.

    Every field is optional; set fields are AND-ed together. List fields match
    any of their values.
    """

    event_types: List[str] = Field(default_factory=list)
    entity_types: List[str] = Field(default_factory=list)
    entity_id: Optional[str] = None
    actor: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = Field(default=None, max_length=256)


class AuditEventResponse(BaseModel):
    """One audit event as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: str
    entity_type: str
    entity_id: str
    action: str
    actor: str
    status: str
    details: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime


class AuditQueryResult(BaseModel):
    """A page of audit events plus the totals the UI needs to paginate."""

    events: List[AuditEventResponse]
    total_count: int
    page: int
    page_size: int
    total_pages: int


class AuditStats(BaseModel):
    total_events: int
    events_by_type: Dict[str, int]
    events_by_status: Dict[str, int]
    events_today: int
    events_this_week: int
    events_this_month: int
