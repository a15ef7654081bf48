"""
SQLAlchemy models for GRC Sync.

Systems own Controls, Controls own Statements. Each level is keyed by an internal
id and carries the remote record's external id, unique within its parent.
"""

import uuid
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..primitives import isoformat
from .base import Base, UTCDateTime

sync_status_enum = Enum("synced", "modified", "conflict", name="sync_status")

job_status_enum = Enum(
    "pending",
    "running",
    "completed",
    "failed",
    "partial",
    "cancelled",
    name="job_status",
)


def _new_id() -> str:
    return str(uuid.uuid4())


class SystemModel(Base):
    """External compliance scope. Created and updated only by pulls."""

    __tablename__ = "systems"

    id = Column(String(36), primary_key=True, default=_new_id)
    external_id = Column(String(64), nullable=False, unique=True, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    owner = Column(String(255), nullable=True)
    status = Column(String(50), nullable=False, default="active", index=True)

    # Sync metadata
    remote_updated_at = Column(UTCDateTime, nullable=True)
    last_pull_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=func.now(), onupdate=func.now())

    controls = relationship("ControlModel", back_populates="system", cascade="all, delete-orphan")

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "external_id": self.external_id,
            "name": self.name,
            "description": self.description,
            "owner": self.owner,
            "status": self.status,
            "remote_updated_at": isoformat(self.remote_updated_at),
            "last_pull_at": isoformat(self.last_pull_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class ControlModel(Base):
    """A requirement record belonging to a System."""

    __tablename__ = "controls"

    id = Column(String(36), primary_key=True, default=_new_id)
    system_id = Column(String(36), ForeignKey("systems.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(64), nullable=False)

    control_id = Column(String(50), nullable=False)  # e.g. "AC-1", "SC-7"
    name = Column(String(255), nullable=False)
    family = Column(String(50), nullable=True, index=True)  # e.g. "AC", "SC"
    baseline = Column(String(50), nullable=True)  # e.g. "low", "moderate", "high"
    description = Column(Text, nullable=True)
    implementation_status = Column(String(50), nullable=False, default="not_assessed")

    remote_updated_at = Column(UTCDateTime, nullable=True)
    last_pull_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=func.now(), onupdate=func.now())

    system = relationship("SystemModel", back_populates="controls")
    statements = relationship("StatementModel", back_populates="control", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("system_id", "external_id", name="uq_controls_system_external_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "system_id": self.system_id,
            "external_id": self.external_id,
            "control_id": self.control_id,
            "name": self.name,
            "family": self.family,
            "baseline": self.baseline,
            "description": self.description,
            "implementation_status": self.implementation_status,
            "remote_updated_at": isoformat(self.remote_updated_at),
            "last_pull_at": isoformat(self.last_pull_at),
        }


class StatementModel(Base):
    """Implementation text for a Control, holding both remote and local content.

    ``remote_updated_at`` is the newest remote timestamp seen; ``baseline_updated_at``
    is the remote timestamp the local edit was based on. ``version`` is bumped on
    every write and compared by every writer.
    """

    __tablename__ = "statements"

    id = Column(String(36), primary_key=True, default=_new_id)
    control_id = Column(String(36), ForeignKey("controls.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(64), nullable=False)

    statement_type = Column(String(50), nullable=False, default="implementation")

    # Remote content
    remote_content = Column(Text, nullable=True)
    remote_updated_at = Column(UTCDateTime, nullable=True)
    baseline_updated_at = Column(UTCDateTime, nullable=True)

    # Local content
    local_content = Column(Text, nullable=True)
    is_modified = Column(Boolean, nullable=False, default=False, index=True)
    modified_at = Column(UTCDateTime, nullable=True)
    modified_by = Column(String(128), nullable=True)

    # Sync status
    sync_status = Column(sync_status_enum, nullable=False, default="synced", index=True)
    conflict_resolved_at = Column(UTCDateTime, nullable=True)
    conflict_resolved_by = Column(String(128), nullable=True)

    last_pull_at = Column(UTCDateTime, nullable=True)
    last_push_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, nullable=False, default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=func.now(), onupdate=func.now())

    control = relationship("ControlModel", back_populates="statements")

    __table_args__ = (
        UniqueConstraint("control_id", "external_id", name="uq_statements_control_external_id"),
    )

    @property
    def effective_content(self) -> str:
        """Local content while modified, otherwise remote content."""
        if self.is_modified and self.local_content is not None:
            return self.local_content
        return self.remote_content or ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "control_id": self.control_id,
            "external_id": self.external_id,
            "statement_type": self.statement_type,
            "remote_content": self.remote_content,
            "remote_updated_at": isoformat(self.remote_updated_at),
            "baseline_updated_at": isoformat(self.baseline_updated_at),
            "local_content": self.local_content,
            "is_modified": self.is_modified,
            "modified_at": isoformat(self.modified_at),
            "modified_by": self.modified_by,
            "sync_status": self.sync_status,
            "conflict_resolved_at": isoformat(self.conflict_resolved_at),
            "conflict_resolved_by": self.conflict_resolved_by,
            "last_pull_at": isoformat(self.last_pull_at),
            "last_push_at": isoformat(self.last_push_at),
            "version": self.version,
        }


class PullJobModel(Base):
    """Background pull of systems, controls and statements."""

    __tablename__ = "pull_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    system_ids = Column(JSON, nullable=False, default=list)  # external system ids
    status = Column(job_status_enum, nullable=False, default="pending", index=True)

    progress = Column(JSON, nullable=False, default=dict)
    errors = Column(JSON, nullable=False, default=list)  # per-item failures
    error = Column(Text, nullable=True)

    created_by = Column(String(128), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=func.now())
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_pull_jobs_created_at", "created_at"),)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "system_ids": self.system_ids,
            "status": self.status,
            "progress": self.progress,
            "errors": self.errors,
            "error": self.error,
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
        }


class PushJobModel(Base):
    """Background push of locally modified statements."""

    __tablename__ = "push_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    statement_ids = Column(JSON, nullable=False, default=list)
    status = Column(job_status_enum, nullable=False, default="pending", index=True)

    total_count = Column(Integer, nullable=False, default=0)
    completed = Column(Integer, nullable=False, default=0)
    succeeded = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    results = Column(JSON, nullable=False, default=list)
    error = Column(Text, nullable=True)

    created_by = Column(String(128), nullable=True, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=func.now())
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_push_jobs_created_at", "created_at"),)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "statement_ids": self.statement_ids,
            "status": self.status,
            "total_count": self.total_count,
            "completed": self.completed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": self.results,
            "error": self.error,
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
        }
