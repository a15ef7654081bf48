"""
Store-side services for Systems, Controls and Statements.

Systems and Controls are written only by pulls and upsert on their external id.
Statements have three independent writers (pulls, local edits, push promotion);
every statement write is a compare-and-set on ``version`` so concurrent writers
retry from a fresh read instead of overwriting each other.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..enums import AuditEventType, AuditStatus, ConflictResolution, SyncStatus
from ..errors import (
    ConcurrentModificationError,
    InvalidInputError,
    NoConflictToResolveError,
    StatementNotFoundError,
)
from ..merge import StatementState, has_conflict, merge_pulled_statement, resolve_state
from ..primitives import utc_now
from ..source.records import ControlRecord, StatementRecord, SystemRecord
from .audit_service import AuditService
from .models import ControlModel, StatementModel, SystemModel

logger = structlog.get_logger()

CAS_MAX_ATTEMPTS = 5


def _state_values(state: StatementState) -> Dict[str, Any]:
    values = asdict(state)
    values["sync_status"] = state.sync_status.value
    return values


class SystemService:
    """Upserts and lookups for Systems."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, system_id: str) -> Optional[SystemModel]:
        return self.db.get(SystemModel, system_id)

    def get_by_external_id(self, external_id: str) -> Optional[SystemModel]:
        return self.db.query(SystemModel).filter(SystemModel.external_id == external_id).first()

    def upsert(self, record: SystemRecord, pulled_at: Optional[datetime] = None) -> Tuple[SystemModel, bool]:
        """Insert or update a System by external id. Returns (model, created)."""
        pulled_at = pulled_at or utc_now()
        system = self.get_by_external_id(record.external_id)
        created = system is None
        if created:
            system = SystemModel(external_id=record.external_id)
            self.db.add(system)

        system.name = record.name
        system.description = record.description
        system.owner = record.owner
        system.status = record.status
        system.remote_updated_at = record.updated_at
        system.last_pull_at = pulled_at

        self.db.commit()
        return system, created


class ControlService:
    """Upserts and lookups for Controls."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, control_id: str) -> Optional[ControlModel]:
        return self.db.get(ControlModel, control_id)

    def list_for_system(self, system_id: str) -> List[ControlModel]:
        return (
            self.db.query(ControlModel)
            .filter(ControlModel.system_id == system_id)
            .order_by(ControlModel.control_id)
            .all()
        )

    def upsert(
        self,
        system_id: str,
        record: ControlRecord,
        pulled_at: Optional[datetime] = None,
    ) -> Tuple[ControlModel, bool]:
        """Insert or update a Control by (system, external id). Returns (model, created)."""
        pulled_at = pulled_at or utc_now()
        control = (
            self.db.query(ControlModel)
            .filter(ControlModel.system_id == system_id, ControlModel.external_id == record.external_id)
            .first()
        )
        created = control is None
        if created:
            control = ControlModel(system_id=system_id, external_id=record.external_id)
            self.db.add(control)

        control.control_id = record.control_id
        control.name = record.name
        control.family = record.family
        control.baseline = record.baseline
        control.description = record.description
        control.implementation_status = record.implementation_status
        control.remote_updated_at = record.updated_at
        control.last_pull_at = pulled_at

        self.db.commit()
        return control, created


class StatementService:
    """Reads and compare-and-set writes for Statements."""

    def __init__(self, db: Session, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit

    # Reads

    def get(self, statement_id: str) -> Optional[StatementModel]:
        return self.db.get(StatementModel, statement_id, populate_existing=True)

    def require(self, statement_id: str) -> StatementModel:
        statement = self.get(statement_id)
        if statement is None:
            raise StatementNotFoundError(statement_id)
        return statement

    def get_by_external_id(self, control_id: str, external_id: str) -> Optional[StatementModel]:
        return (
            self.db.query(StatementModel)
            .filter(StatementModel.control_id == control_id, StatementModel.external_id == external_id)
            .populate_existing()
            .first()
        )

    def list_modified(self, statement_ids: Optional[List[str]] = None) -> List[StatementModel]:
        query = self.db.query(StatementModel).filter(StatementModel.is_modified.is_(True))
        if statement_ids is not None:
            query = query.filter(StatementModel.id.in_(statement_ids))
        return query.order_by(StatementModel.modified_at).all()

    def list_conflicts(self) -> List[StatementModel]:
        return (
            self.db.query(StatementModel)
            .filter(StatementModel.sync_status == SyncStatus.CONFLICT.value)
            .order_by(StatementModel.updated_at)
            .all()
        )

    # Compare-and-set

    def _compare_and_set(
        self,
        statement_id: str,
        mutate: Callable[[StatementModel], Optional[Dict[str, Any]]],
    ) -> StatementModel:
        """Apply ``mutate`` to a fresh read until the versioned UPDATE lands.

        ``mutate`` returns the column values to write, or None to leave the row
        untouched.
        """
        for attempt in range(1, CAS_MAX_ATTEMPTS + 1):
            current = self.require(statement_id)
            values = mutate(current)
            if values is None:
                return current

            expected = current.version
            values["version"] = expected + 1
            values["updated_at"] = utc_now()
            result = self.db.execute(
                update(StatementModel)
                .where(StatementModel.id == statement_id, StatementModel.version == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if result.rowcount == 1:
                return self.require(statement_id)

            logger.debug("statement_write_retry", statement_id=statement_id, attempt=attempt)

        logger.warning("statement_write_contended", statement_id=statement_id)
        raise ConcurrentModificationError(statement_id)

    # Writers

    def update_local(self, statement_id: str, content: str, actor: str) -> StatementModel:
        """Record a local edit. Entry point for the statement-editing surface."""

        def mutate(current: StatementModel) -> Dict[str, Any]:
            conflicted = has_conflict(True, current.baseline_updated_at, current.remote_updated_at)
            return {
                "local_content": content,
                "is_modified": True,
                "modified_at": utc_now(),
                "modified_by": actor,
                "sync_status": (SyncStatus.CONFLICT if conflicted else SyncStatus.MODIFIED).value,
            }

        statement = self._compare_and_set(statement_id, mutate)
        logger.info("statement_edited", statement_id=statement_id, sync_status=statement.sync_status)
        if self.audit:
            self.audit.record(
                AuditEventType.EDIT,
                "statement",
                statement_id,
                action="edit_statement",
                status=AuditStatus.SUCCESS,
                details={"content_length": len(content), "sync_status": statement.sync_status},
                actor=actor,
            )
        return statement

    def revert_to_remote(self, statement_id: str, actor: str) -> StatementModel:
        """Discard the local edit."""

        def mutate(current: StatementModel) -> Optional[Dict[str, Any]]:
            if not current.is_modified:
                return None
            state = resolve_state(StatementState.from_model(current), keep_remote=True)
            return _state_values(state)

        statement = self._compare_and_set(statement_id, mutate)
        if self.audit:
            self.audit.record(
                AuditEventType.EDIT,
                "statement",
                statement_id,
                action="revert_statement",
                status=AuditStatus.SUCCESS,
                actor=actor,
            )
        return statement

    def apply_pulled(
        self,
        control_id: str,
        record: StatementRecord,
        pulled_at: Optional[datetime] = None,
    ) -> Tuple[StatementModel, bool, SyncStatus]:
        """Merge a pulled statement into the store.

        Returns (model, created, previous status). Local edits survive; only the
        remote fields move.
        """
        pulled_at = pulled_at or utc_now()
        existing = self.get_by_external_id(control_id, record.external_id)

        if existing is None:
            state = merge_pulled_statement(None, record.content, record.updated_at)
            statement = StatementModel(
                control_id=control_id,
                external_id=record.external_id,
                statement_type=record.statement_type,
                last_pull_at=pulled_at,
                version=1,
                **_state_values(state),
            )
            self.db.add(statement)
            self.db.commit()
            return statement, True, SyncStatus.SYNCED

        previous = SyncStatus(existing.sync_status)

        def mutate(current: StatementModel) -> Dict[str, Any]:
            state = merge_pulled_statement(StatementState.from_model(current), record.content, record.updated_at)
            values = _state_values(state)
            values["statement_type"] = record.statement_type
            values["last_pull_at"] = pulled_at
            return values

        statement = self._compare_and_set(existing.id, mutate)
        return statement, False, previous

    def mark_conflict(
        self,
        statement_id: str,
        remote_content: Optional[str],
        remote_updated_at: Optional[datetime],
    ) -> StatementModel:
        """Record the remote state observed at check time and recompute status."""

        def mutate(current: StatementModel) -> Optional[Dict[str, Any]]:
            if not current.is_modified:
                return None
            conflicted = has_conflict(True, current.baseline_updated_at, remote_updated_at)
            return {
                "remote_content": remote_content,
                "remote_updated_at": remote_updated_at,
                "sync_status": (SyncStatus.CONFLICT if conflicted else SyncStatus.MODIFIED).value,
            }

        return self._compare_and_set(statement_id, mutate)

    def promote_pushed(
        self,
        statement_id: str,
        pushed_content: str,
        remote_updated_at: Optional[datetime],
    ) -> StatementModel:
        """Make pushed text the new remote baseline.

        If the statement was edited again while the push was in flight, the newer
        local edit is kept and stays modified against the pushed baseline.
        """
        pushed_at = utc_now()
        remote_updated_at = remote_updated_at or pushed_at

        def mutate(current: StatementModel) -> Dict[str, Any]:
            values: Dict[str, Any] = {
                "remote_content": pushed_content,
                "remote_updated_at": remote_updated_at,
                "baseline_updated_at": remote_updated_at,
                "last_push_at": pushed_at,
            }
            if current.is_modified and current.local_content != pushed_content:
                values["sync_status"] = SyncStatus.MODIFIED.value
            else:
                values.update(
                    local_content=None,
                    is_modified=False,
                    sync_status=SyncStatus.SYNCED.value,
                )
            return values

        statement = self._compare_and_set(statement_id, mutate)
        if statement.is_modified:
            logger.info("statement_edited_during_push", statement_id=statement_id)
        return statement

    def apply_resolution(
        self,
        statement_id: str,
        resolution: ConflictResolution,
        actor: str,
        merged_content: Optional[str] = None,
    ) -> StatementModel:
        """Resolve a conflicted statement. Raises NoConflictToResolveError otherwise."""
        resolution = ConflictResolution(resolution)
        if resolution == ConflictResolution.MERGE and not merged_content:
            raise InvalidInputError("merged_content is required for a merge resolution")

        def mutate(current: StatementModel) -> Dict[str, Any]:
            if current.sync_status != SyncStatus.CONFLICT.value:
                raise NoConflictToResolveError(statement_id)
            state = resolve_state(
                StatementState.from_model(current),
                keep_remote=resolution == ConflictResolution.KEEP_REMOTE,
                merged_content=merged_content if resolution == ConflictResolution.MERGE else None,
            )
            values = _state_values(state)
            values["conflict_resolved_at"] = utc_now()
            values["conflict_resolved_by"] = actor
            if resolution == ConflictResolution.MERGE:
                values["modified_at"] = utc_now()
                values["modified_by"] = actor
            return values

        return self._compare_and_set(statement_id, mutate)
