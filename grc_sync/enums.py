"""
Canonical enums for GRC Sync.

Database columns store the ``.value`` strings; services compare against these.
"""

from enum import Enum


class SyncStatus(str, Enum):
    """Synchronization state of a statement."""

    SYNCED = "synced"  # local matches the remote baseline
    MODIFIED = "modified"  # local edit not yet pushed
    CONFLICT = "conflict"  # local edit and a newer remote change


class JobStatus(str, Enum):
    """Lifecycle of a pull or push job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


class ConflictResolution(str, Enum):
    """How an operator resolves a conflicted statement."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGE = "merge"


class PushOutcome(str, Enum):
    """Per-statement result of a push job."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureCategory(str, Enum):
    """User-facing classification of a failed or skipped push item."""

    RETRYABLE = "retryable"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    NOT_MODIFIED = "not_modified"  # local edit gone before the write
    CANCELLED = "cancelled"
    FAILED = "failed"


class AuditEventType(str, Enum):
    """Kinds of sync-relevant actions recorded in the audit log."""

    PULL = "pull"
    PUSH = "push"
    EDIT = "edit"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    CONNECTION_TEST = "connection_test"
    SYSTEM_IMPORT = "system_import"


class AuditStatus(str, Enum):
    """Outcome recorded on an audit event."""

    STARTED = "started"
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    CONFLICT = "conflict"
    SKIPPED = "skipped"
