"""
Statement merge rules.

Pure functions over statement state, free of I/O, shared by the pull
orchestrator, the conflict detector and the store.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from .enums import SyncStatus


@dataclass(frozen=True)
class StatementState:
    """Sync-relevant fields of a statement."""

    remote_content: Optional[str]
    remote_updated_at: Optional[datetime]
    baseline_updated_at: Optional[datetime]
    local_content: Optional[str] = None
    is_modified: bool = False
    sync_status: SyncStatus = SyncStatus.SYNCED

    @classmethod
    def from_model(cls, model) -> "StatementState":
        return cls(
            remote_content=model.remote_content,
            remote_updated_at=model.remote_updated_at,
            baseline_updated_at=model.baseline_updated_at,
            local_content=model.local_content,
            is_modified=bool(model.is_modified),
            sync_status=SyncStatus(model.sync_status),
        )


def has_conflict(
    is_modified: bool,
    baseline_updated_at: Optional[datetime],
    remote_updated_at: Optional[datetime],
) -> bool:
    """True when a local edit exists and the remote moved past its baseline.

    A remote record without a timestamp never conflicts. A local edit without a
    baseline conflicts with any timestamped remote record, since nothing proves
    the edit saw that version.
    """
    if not is_modified or remote_updated_at is None:
        return False
    if baseline_updated_at is None:
        return True
    return remote_updated_at > baseline_updated_at


def merge_pulled_statement(
    local: Optional[StatementState],
    remote_content: Optional[str],
    remote_updated_at: Optional[datetime],
) -> StatementState:
    """Fold a freshly pulled remote statement into the local state.

    Unmodified (or new) statements take the remote fields wholesale and become
    synced. Modified statements keep their local content and baseline; only the
    remote fields move, and the status is recomputed against the baseline.
    """
    if local is None or not local.is_modified:
        return StatementState(
            remote_content=remote_content,
            remote_updated_at=remote_updated_at,
            baseline_updated_at=remote_updated_at,
            local_content=None,
            is_modified=False,
            sync_status=SyncStatus.SYNCED,
        )

    conflicted = has_conflict(True, local.baseline_updated_at, remote_updated_at)
    return replace(
        local,
        remote_content=remote_content,
        remote_updated_at=remote_updated_at,
        sync_status=SyncStatus.CONFLICT if conflicted else SyncStatus.MODIFIED,
    )


def resolve_state(
    local: StatementState,
    keep_remote: bool,
    merged_content: Optional[str] = None,
) -> StatementState:
    """State after an operator resolves a conflict.

    keep_remote drops the local edit. Otherwise the local (or merged) text is kept
    and rebased onto the newest remote timestamp so it can be pushed.
    """
    if keep_remote:
        return StatementState(
            remote_content=local.remote_content,
            remote_updated_at=local.remote_updated_at,
            baseline_updated_at=local.remote_updated_at,
            local_content=None,
            is_modified=False,
            sync_status=SyncStatus.SYNCED,
        )
    content = merged_content if merged_content is not None else local.local_content
    return replace(
        local,
        local_content=content,
        is_modified=True,
        baseline_updated_at=local.remote_updated_at,
        sync_status=SyncStatus.MODIFIED,
    )
