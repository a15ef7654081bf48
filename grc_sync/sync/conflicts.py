"""
Conflict Detector.

Compares each statement's recorded baseline with the remote record's current
updated-on timestamp. A conflict is an expected state, not an error: it is
persisted on the statement and must be resolved before the statement can be
pushed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..context import current_context
from ..db.audit_service import AuditService
from ..db.models import StatementModel
from ..db.services import StatementService
from ..enums import AuditEventType, AuditStatus, ConflictResolution, SyncStatus
from ..errors import InvalidInputError, StatementNotFoundError
from ..merge import has_conflict
from ..primitives import isoformat, parse_remote_timestamp
from ..source import SourceClient, SourceError
from ..source.records import UPDATED_FIELD, field_text

logger = structlog.get_logger()


@dataclass
class ConflictCheckResult:
    statement_id: str
    has_conflict: bool
    local_content: Optional[str]
    remote_content: Optional[str]
    local_baseline: Optional[datetime]
    remote_updated_at: Optional[datetime]
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_id": self.statement_id,
            "has_conflict": self.has_conflict,
            "local_content": self.local_content,
            "remote_content": self.remote_content,
            "local_baseline": isoformat(self.local_baseline),
            "remote_updated_at": isoformat(self.remote_updated_at),
            "error": self.error,
        }


@dataclass
class Resolution:
    """An operator's decision for one conflicted statement."""

    statement_id: str
    resolution: ConflictResolution
    merged_content: Optional[str] = None


class ConflictDetector:
    """Checks statements against the remote and applies conflict resolutions."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[], SourceClient],
        audit: AuditService,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.audit = audit

    def check(self, statement_ids: List[str]) -> List[ConflictCheckResult]:
        """Fetch the current remote state of each statement and classify it.

        Detected conflicts are persisted and audited. A remote failure for one
        statement is reported on its result and does not stop the others.
        """
        if not statement_ids:
            raise InvalidInputError("At least one statement id is required")

        db = self.session_factory()
        client = self.client_factory()
        try:
            statements = StatementService(db, self.audit)
            loaded = []
            for statement_id in statement_ids:
                statement = statements.get(statement_id)
                if statement is None:
                    raise StatementNotFoundError(statement_id)
                loaded.append(statement)

            results = []
            for statement in loaded:
                results.append(self._check_one(statements, client, statement))
            return results
        finally:
            client.close()
            db.close()

    def _check_one(
        self,
        statements: StatementService,
        client: SourceClient,
        statement: StatementModel,
    ) -> ConflictCheckResult:
        content_field = client.mapping.statement_content_field
        try:
            remote = client.get_record(
                client.mapping.statements_table,
                statement.external_id,
                fields=[content_field, UPDATED_FIELD],
            )
        except SourceError as e:
            logger.warning(
                "conflict_check_failed",
                statement_id=statement.id,
                error_kind=e.kind.value,
                error=e.message,
            )
            return ConflictCheckResult(
                statement_id=statement.id,
                has_conflict=statement.sync_status == SyncStatus.CONFLICT.value,
                local_content=statement.local_content,
                remote_content=statement.remote_content,
                local_baseline=statement.baseline_updated_at,
                remote_updated_at=statement.remote_updated_at,
                error=e.message,
            )

        remote_content = field_text(remote, content_field) or ""
        remote_updated_at = parse_remote_timestamp(field_text(remote, UPDATED_FIELD))
        conflicted = has_conflict(statement.is_modified, statement.baseline_updated_at, remote_updated_at)

        if conflicted:
            statements.mark_conflict(statement.id, remote_content, remote_updated_at)
            self.record_detected(statement, remote_updated_at, source="check")

        return ConflictCheckResult(
            statement_id=statement.id,
            has_conflict=conflicted,
            local_content=statement.local_content,
            remote_content=remote_content,
            local_baseline=statement.baseline_updated_at,
            remote_updated_at=remote_updated_at,
        )

    def record_detected(
        self,
        statement: StatementModel,
        remote_updated_at: Optional[datetime],
        source: str,
        job_id: Optional[str] = None,
    ) -> None:
        logger.info("conflict_detected", statement_id=statement.id, source=source)
        self.audit.record(
            AuditEventType.CONFLICT_DETECTED,
            "statement",
            statement.id,
            action="detect_conflict",
            status=AuditStatus.CONFLICT,
            details={
                "source": source,
                "job_id": job_id,
                "baseline_updated_at": isoformat(statement.baseline_updated_at),
                "remote_updated_at": isoformat(remote_updated_at),
            },
        )

    def resolve(
        self,
        statement_id: str,
        resolution: ConflictResolution,
        merged_content: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> StatementModel:
        """Apply keep_local, keep_remote or merge to a conflicted statement.

        keep_local and merge leave the statement modified and ready to push;
        keep_remote discards the local edit and the statement is not pushed.
        """
        actor = actor or current_context().actor
        db = self.session_factory()
        try:
            statement = StatementService(db, self.audit).apply_resolution(
                statement_id, resolution, actor, merged_content=merged_content
            )
        finally:
            db.close()

        logger.info("conflict_resolved", statement_id=statement_id, resolution=ConflictResolution(resolution).value)
        self.audit.record(
            AuditEventType.CONFLICT_RESOLVED,
            "statement",
            statement_id,
            action=f"resolve_{ConflictResolution(resolution).value}",
            status=AuditStatus.SUCCESS,
            details={
                "resolution": ConflictResolution(resolution).value,
                "sync_status": statement.sync_status,
            },
            actor=actor,
        )
        return statement
