"""
Audit Event Database Model.

Append-only record of every sync-relevant action: pulls, pushes, local edits,
conflict detection and resolution. Rows are written once and never updated or
deleted by the application; a session-level guard enforces this.
"""

from typing import Any, Dict

from sqlalchemy import JSON, Column, Index, String, event
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from ..primitives import isoformat
from .base import Base, UTCDateTime


class AuditImmutableError(Exception):
    """Raised when a flush would update or delete an audit event."""

    def __init__(self, event_id: str, operation: str):
        self.event_id = event_id
        self.operation = operation
        self.message = f"Audit events are write-once. Cannot {operation} {event_id}."
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "AUDIT_IMMUTABLE",
            "event_id": self.event_id,
            "operation": self.operation,
            "message": self.message,
        }


class AuditEventModel(Base):
    """Audit event for sync operations.

    Every pull, push, edit and conflict transition creates one row, whatever the
    outcome of the triggering operation.
    """

    __tablename__ = "audit_events"

    # ULID: sortable and unique
    id = Column(String(36), primary_key=True)

    event_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)  # system, control, statement, pull_job, push_job, connection
    entity_id = Column(String(128), nullable=False, index=True)
    action = Column(String(100), nullable=False)

    actor = Column(String(128), nullable=False, default="system")
    status = Column(String(20), nullable=False, index=True)  # success, failure, ...

    details = Column(JSON, nullable=True)

    request_id = Column(String(64), nullable=True, index=True)
    ip_address = Column(String(64), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_audit_events_type_entity_created", "event_type", "entity_type", "created_at"),
        Index("ix_audit_events_actor", "actor"),
        Index("ix_audit_events_created_at", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "status": self.status,
            "details": self.details,
            "request_id": self.request_id,
            "ip_address": self.ip_address,
            "created_at": isoformat(self.created_at),
        }


@event.listens_for(Session, "before_flush")
def _reject_audit_mutation(session: Session, flush_context, instances) -> None:
    """Refuse to flush updates or deletes of audit events."""
    for obj in session.deleted:
        if isinstance(obj, AuditEventModel):
            raise AuditImmutableError(obj.id, "delete")
    for obj in session.dirty:
        if isinstance(obj, AuditEventModel) and session.is_modified(obj, include_collections=False):
            raise AuditImmutableError(obj.id, "update")
