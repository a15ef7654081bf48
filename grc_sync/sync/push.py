"""
Push Orchestrator.

Writes locally modified statements back to the remote source on a bounded worker
pool. Worker threads only talk to the remote; every database write happens on
the job thread as results arrive.

Per-item flow:
    1. re-read the remote record and compare its timestamp with the baseline
       (a newer remote version marks the statement ``conflict`` and skips it)
    2. PATCH the content, bounded by the per-item timeout
    3. on success promote the pushed text to the remote baseline; on failure
       leave the statement exactly as it was
"""

import contextvars
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..context import current_context
from ..db.audit_service import AuditService
from ..db.models import PushJobModel
from ..db.services import StatementService
from ..enums import (
    ACTIVE_JOB_STATUSES,
    AuditEventType,
    AuditStatus,
    ConflictResolution,
    FailureCategory,
    JobStatus,
    PushOutcome,
    SyncStatus,
)
from ..errors import (
    ConcurrentJobError,
    InvalidInputError,
    JobAlreadyFinishedError,
    JobNotFoundError,
    StatementHasConflictError,
    StatementNotFoundError,
    StatementNotModifiedError,
    SyncError,
)
from ..merge import StatementState, has_conflict, resolve_state
from ..primitives import isoformat, parse_remote_timestamp, utc_now
from ..source import (
    AuthFailedError,
    ConnectionFailedError,
    NotFoundError,
    RateLimitedError,
    RecordRejectedError,
    RemoteConflictError,
    ServerError,
    SourceCancelledError,
    SourceClient,
    SourceError,
    SourceTimeoutError,
)
from ..source.records import UPDATED_FIELD, field_text
from .conflicts import ConflictDetector, Resolution
from .pull import JOB_AUDIT_STATUS, normalize_ids

logger = structlog.get_logger()

RETRYABLE_ERRORS = (RateLimitedError, SourceTimeoutError, ConnectionFailedError, ServerError)

SKIP_AUDIT_STATUS = {
    FailureCategory.CONFLICT: AuditStatus.CONFLICT,
    FailureCategory.CANCELLED: AuditStatus.CANCELLED,
}


@dataclass(frozen=True)
class PushWorkItem:
    """What a worker needs to push one statement; read on the job thread."""

    statement_id: str
    external_id: str
    content: str
    baseline_updated_at: Optional[datetime]


@dataclass
class PushItemResult:
    statement_id: str
    outcome: PushOutcome
    category: Optional[FailureCategory] = None
    message: str = ""
    remote_content: Optional[str] = None
    remote_updated_at: Optional[datetime] = None
    pushed_content: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_id": self.statement_id,
            "outcome": self.outcome.value,
            "category": self.category.value if self.category else None,
            "message": self.message,
            "remote_updated_at": isoformat(self.remote_updated_at),
        }


def categorize_failure(statement_id: str, error: SourceError) -> PushItemResult:
    """Turn a remote failure into a user-facing, categorized item result."""
    if isinstance(error, SourceCancelledError):
        return PushItemResult(
            statement_id, PushOutcome.SKIPPED, FailureCategory.CANCELLED, "Push cancelled before this item was written"
        )
    if isinstance(error, RateLimitedError):
        category, message = FailureCategory.RETRYABLE, "Rate limited by the remote system; retry later"
    elif isinstance(error, RETRYABLE_ERRORS):
        category, message = FailureCategory.RETRYABLE, f"Temporary remote failure; retry later ({error.message})"
    elif isinstance(error, NotFoundError):
        category, message = FailureCategory.NOT_FOUND, "The remote record no longer exists"
    elif isinstance(error, RecordRejectedError):
        category, message = FailureCategory.REJECTED, f"The remote system rejected the update ({error.message})"
    elif isinstance(error, AuthFailedError):
        category, message = FailureCategory.FAILED, "Not authorized to update the remote record"
    else:
        category, message = FailureCategory.FAILED, error.message
    return PushItemResult(
        statement_id,
        PushOutcome.FAILED,
        category,
        message,
        detail={"error_kind": error.kind.value, "status_code": error.status_code},
    )


def final_status(succeeded: int, failed: int, cancelled: bool) -> JobStatus:
    if cancelled:
        return JobStatus.CANCELLED
    if failed == 0:
        return JobStatus.COMPLETED
    if succeeded == 0:
        return JobStatus.FAILED
    return JobStatus.PARTIAL


class PushOrchestrator:
    """Starts, runs, tracks and cancels push jobs. One active push per actor."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[], SourceClient],
        audit: AuditService,
        runner,
        detector: ConflictDetector,
        concurrency: int = 3,
        item_timeout: float = 30.0,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.audit = audit
        self.runner = runner
        self.detector = detector
        self.concurrency = max(concurrency, 1)
        self.item_timeout = item_timeout
        self._scope_lock = threading.Lock()
        self._active_actors: Dict[str, str] = {}

    # Public API

    def check_conflicts(self, statement_ids: List[str]):
        return self.detector.check(normalize_ids(statement_ids))

    def start_push(
        self,
        statement_ids: List[str],
        resolutions: Optional[List[Resolution]] = None,
        actor: Optional[str] = None,
    ) -> PushJobModel:
        """Validate, apply resolutions and start a push job.

        Validation runs against the state each statement will have once its
        resolution is applied, and resolutions are written only if it passes.
        Statements resolved with keep_remote are reported as skipped. Every
        remaining statement must be modified and not in conflict.

        Raises:
            InvalidInputError, ConcurrentJobError, StatementNotFoundError,
            StatementHasConflictError, StatementNotModifiedError
        """
        ids = normalize_ids(statement_ids)
        if not ids:
            raise InvalidInputError("At least one statement id is required")
        actor = actor or current_context().actor
        by_id = {r.statement_id: r for r in resolutions or []}
        unknown = [sid for sid in by_id if sid not in ids]
        if unknown:
            raise InvalidInputError(f"Resolutions given for statements not being pushed: {', '.join(unknown)}")

        with self._scope_lock:
            if actor in self._active_actors:
                raise ConcurrentJobError(f"actor {actor}", self._active_actors[actor])

            db = self.session_factory()
            try:
                active = (
                    db.query(PushJobModel)
                    .filter(PushJobModel.created_by == actor, PushJobModel.status.in_(ACTIVE_JOB_STATUSES))
                    .first()
                )
                if active is not None:
                    raise ConcurrentJobError(f"actor {actor}", active.id)

                statements = StatementService(db, self.audit)
                current: Dict[str, StatementState] = {}
                for statement_id in ids:
                    statement = statements.get(statement_id)
                    if statement is None:
                        raise StatementNotFoundError(statement_id)
                    current[statement_id] = StatementState.from_model(statement)

                # nothing is written until the post-resolution state validates
                planned = self._plan_resolutions(current, by_id)
                states = {**current, **planned}
                to_push = [sid for sid in ids if sid not in planned or states[sid].is_modified]
                self._validate({sid: states[sid] for sid in to_push})
                skipped = self._apply_resolutions(by_id, planned, to_push, actor)

                job = PushJobModel(
                    statement_ids=ids,
                    status=JobStatus.PENDING.value,
                    total_count=len(ids),
                    completed=len(skipped),
                    skipped=len(skipped),
                    results=[skipped[sid].to_dict() for sid in ids if sid in skipped],
                    created_by=actor,
                    created_at=utc_now(),
                )
                db.add(job)
                db.commit()
            finally:
                db.close()

            self._active_actors[actor] = job.id

        logger.info("push_job_created", job_id=job.id, statements=len(ids), skipped=len(skipped))
        self.audit.record(
            AuditEventType.PUSH,
            "push_job",
            job.id,
            action="start_push",
            status=AuditStatus.STARTED,
            details={"statement_ids": ids, "resolutions": len(by_id)},
            actor=actor,
        )
        try:
            self.runner.submit(job.id, lambda cancel: self._run_job(job.id, to_push, cancel))
        except RuntimeError:
            self._release(job.id)
            raise
        return job

    def get_job(self, job_id: str) -> PushJobModel:
        db = self.session_factory()
        try:
            job = db.get(PushJobModel, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job
        finally:
            db.close()

    def cancel_job(self, job_id: str) -> PushJobModel:
        """Request cancellation; items not yet started are skipped."""
        job = self.get_job(job_id)
        if not JobStatus(job.status).is_active:
            raise JobAlreadyFinishedError(job_id, job.status)

        if not self.runner.cancel(job_id):
            db = self.session_factory()
            try:
                row = db.get(PushJobModel, job_id)
                row.status = JobStatus.CANCELLED.value
                row.completed_at = utc_now()
                row.error = "Cancelled"
                db.commit()
                job = row
            finally:
                db.close()
        return job

    def recover_interrupted_jobs(self) -> int:
        db = self.session_factory()
        try:
            jobs = db.query(PushJobModel).filter(PushJobModel.status.in_(ACTIVE_JOB_STATUSES)).all()
            for job in jobs:
                if self.runner.is_running(job.id):
                    continue
                job.status = JobStatus.FAILED.value
                job.error = "Interrupted: the process running this job stopped"
                job.completed_at = utc_now()
                logger.warning("push_job_interrupted", job_id=job.id)
            db.commit()
            return len(jobs)
        finally:
            db.close()

    # Validation

    def _plan_resolutions(
        self,
        current: Dict[str, StatementState],
        resolutions: Dict[str, Resolution],
    ) -> Dict[str, StatementState]:
        """State each conflicted statement would have once its resolution is applied."""
        planned: Dict[str, StatementState] = {}
        for statement_id, resolution in resolutions.items():
            state = current[statement_id]
            if state.sync_status != SyncStatus.CONFLICT:
                logger.debug("resolution_ignored_not_conflicted", statement_id=statement_id)
                continue
            kind = ConflictResolution(resolution.resolution)
            if kind == ConflictResolution.MERGE and not resolution.merged_content:
                raise InvalidInputError(f"merged_content is required to merge statement {statement_id}")
            planned[statement_id] = resolve_state(
                state,
                keep_remote=kind == ConflictResolution.KEEP_REMOTE,
                merged_content=resolution.merged_content if kind == ConflictResolution.MERGE else None,
            )
        return planned

    def _apply_resolutions(
        self,
        resolutions: Dict[str, Resolution],
        planned: Dict[str, StatementState],
        to_push: List[str],
        actor: str,
    ) -> Dict[str, PushItemResult]:
        skipped: Dict[str, PushItemResult] = {}
        for statement_id in planned:
            resolution = resolutions[statement_id]
            self.detector.resolve(statement_id, resolution.resolution, resolution.merged_content, actor=actor)
            if statement_id not in to_push:
                skipped[statement_id] = PushItemResult(
                    statement_id,
                    PushOutcome.SKIPPED,
                    message="Resolved by keeping the remote version; nothing to push",
                )
        return skipped

    def _validate(self, states: Dict[str, StatementState]) -> None:
        conflicted, unmodified = [], []
        for statement_id, state in states.items():
            if state.sync_status == SyncStatus.CONFLICT:
                conflicted.append(statement_id)
            elif not state.is_modified:
                unmodified.append(statement_id)
        if conflicted:
            raise StatementHasConflictError(conflicted)
        if unmodified:
            raise StatementNotModifiedError(unmodified)

    # Execution

    def _release(self, job_id: str) -> None:
        with self._scope_lock:
            for actor in [a for a, j in self._active_actors.items() if j == job_id]:
                del self._active_actors[actor]

    def _push_one(self, client: SourceClient, item: PushWorkItem, cancel: threading.Event) -> PushItemResult:
        """Worker body: remote calls only, never raises."""
        if cancel.is_set():
            return categorize_failure(item.statement_id, SourceCancelledError())

        table = client.mapping.statements_table
        content_field = client.mapping.statement_content_field
        deadline = client.deadline_after(self.item_timeout)
        try:
            remote = client.get_record(
                table, item.external_id, fields=[content_field, UPDATED_FIELD], cancel=cancel, deadline=deadline
            )
            remote_updated_at = parse_remote_timestamp(field_text(remote, UPDATED_FIELD))
            if has_conflict(True, item.baseline_updated_at, remote_updated_at):
                return PushItemResult(
                    item.statement_id,
                    PushOutcome.SKIPPED,
                    FailureCategory.CONFLICT,
                    "The remote record changed since it was last pulled; resolve the conflict first",
                    remote_content=field_text(remote, content_field) or "",
                    remote_updated_at=remote_updated_at,
                )

            updated = client.update_record(
                table, item.external_id, {content_field: item.content}, cancel=cancel, deadline=deadline
            )
        except RemoteConflictError as e:
            return self._remote_conflict(client, item, e)
        except SourceError as e:
            return categorize_failure(item.statement_id, e)

        return PushItemResult(
            item.statement_id,
            PushOutcome.SUCCEEDED,
            message="Pushed",
            remote_updated_at=parse_remote_timestamp(field_text(updated, UPDATED_FIELD)),
            pushed_content=item.content,
        )

    def _remote_conflict(self, client: SourceClient, item: PushWorkItem, error: RemoteConflictError) -> PushItemResult:
        """A 409 on write: refresh the remote state so the conflict can be resolved."""
        content_field = client.mapping.statement_content_field
        try:
            remote = client.get_record(
                client.mapping.statements_table,
                item.external_id,
                fields=[content_field, UPDATED_FIELD],
                deadline=client.deadline_after(self.item_timeout),
            )
        except SourceError:
            remote = None
        remote_updated_at = parse_remote_timestamp(field_text(remote, UPDATED_FIELD)) if remote else None
        if remote is not None and has_conflict(True, item.baseline_updated_at, remote_updated_at):
            return PushItemResult(
                item.statement_id,
                PushOutcome.SKIPPED,
                FailureCategory.CONFLICT,
                "The remote record changed since it was last pulled; resolve the conflict first",
                remote_content=field_text(remote, content_field) or "",
                remote_updated_at=remote_updated_at,
            )
        return PushItemResult(
            item.statement_id,
            PushOutcome.FAILED,
            FailureCategory.CONFLICT,
            "The remote system reported a conflicting change; pull and try again",
            detail={"error_kind": error.kind.value, "status_code": error.status_code},
        )

    def _run_job(self, job_id: str, statement_ids: List[str], cancel: threading.Event) -> None:
        log = logger.bind(job_id=job_id)
        db = self.session_factory()
        client: Optional[SourceClient] = None
        job: Optional[PushJobModel] = None
        try:
            job = db.get(PushJobModel, job_id)
            job.status = JobStatus.RUNNING.value
            job.started_at = utc_now()
            db.commit()
            log.info("push_job_started", statements=len(statement_ids))

            statements = StatementService(db, self.audit)
            results = list(job.results or [])
            items = []
            for statement_id in statement_ids:
                # the statement may have changed while the job was queued
                statement = statements.require(statement_id)
                stale = self._stale_result(statement)
                if stale is not None:
                    results.append(self._tally(job, stale).to_dict())
                    job.results = list(results)
                    db.commit()
                    continue
                items.append(
                    PushWorkItem(
                        statement_id=statement.id,
                        external_id=statement.external_id,
                        content=statement.local_content,
                        baseline_updated_at=statement.baseline_updated_at,
                    )
                )

            client = self.client_factory()
            with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="grc-sync-push") as pool:
                futures = {
                    pool.submit(contextvars.copy_context().run, self._push_one, client, item, cancel): item
                    for item in items
                }
                for future in as_completed(futures):
                    try:
                        outcome = future.result()
                    except Exception as e:
                        statement_id = futures[future].statement_id
                        log.exception("push_worker_crashed", statement_id=statement_id)
                        outcome = PushItemResult(statement_id, PushOutcome.FAILED, FailureCategory.FAILED, str(e))
                    result = self._record_result(statements, job, outcome)
                    results.append(result.to_dict())
                    job.results = list(results)
                    db.commit()

            status = final_status(job.succeeded, job.failed, cancel.is_set())
            self._finish(db, job, status, "Cancelled" if status == JobStatus.CANCELLED else None)

        except Exception as e:
            log.exception("push_job_crashed")
            db.rollback()
            if job is not None:
                self._finish(db, job, JobStatus.FAILED, str(e))
        finally:
            self._release(job_id)
            if client is not None:
                client.close()
            db.close()

    @staticmethod
    def _stale_result(statement) -> Optional[PushItemResult]:
        """Skip result for a statement that can no longer be pushed as queued."""
        if statement.sync_status == SyncStatus.CONFLICT.value:
            return PushItemResult(
                statement.id,
                PushOutcome.SKIPPED,
                FailureCategory.CONFLICT,
                "The statement is in conflict; resolve the conflict first",
            )
        if not statement.is_modified or statement.local_content is None:
            return PushItemResult(
                statement.id,
                PushOutcome.SKIPPED,
                FailureCategory.NOT_MODIFIED,
                "The local edit was discarded before the push reached it",
            )
        return None

    def _record_result(self, statements: StatementService, job: PushJobModel, result: PushItemResult) -> PushItemResult:
        """Apply one worker result to the store, then count and audit it.

        A store failure never aborts the job: the item is recorded with the
        outcome the local database actually reflects.
        """
        if result.outcome == PushOutcome.SUCCEEDED:
            try:
                statements.promote_pushed(result.statement_id, result.pushed_content, result.remote_updated_at)
            except (SQLAlchemyError, SyncError) as e:
                statements.db.rollback()
                logger.error("push_promotion_failed", job_id=job.id, statement_id=result.statement_id, error=str(e))
                result = PushItemResult(
                    result.statement_id,
                    PushOutcome.FAILED,
                    FailureCategory.FAILED,
                    "Remote update succeeded but the local record could not be updated; pull to refresh",
                )

        elif result.category == FailureCategory.CONFLICT and result.outcome == PushOutcome.SKIPPED:
            try:
                statement = statements.mark_conflict(
                    result.statement_id, result.remote_content, result.remote_updated_at
                )
                self.detector.record_detected(statement, result.remote_updated_at, source="push", job_id=job.id)
            except (SQLAlchemyError, SyncError) as e:
                statements.db.rollback()
                logger.error(
                    "push_conflict_record_failed", job_id=job.id, statement_id=result.statement_id, error=str(e)
                )
                result.message = (
                    "The remote record changed since it was last pulled, but the conflict could not be "
                    "recorded locally; pull to refresh"
                )

        return self._tally(job, result)

    def _tally(self, job: PushJobModel, result: PushItemResult) -> PushItemResult:
        if result.outcome == PushOutcome.SUCCEEDED:
            job.succeeded += 1
            audit_status = AuditStatus.SUCCESS
        elif result.outcome == PushOutcome.FAILED:
            job.failed += 1
            audit_status = AuditStatus.FAILURE
        else:
            job.skipped += 1
            audit_status = SKIP_AUDIT_STATUS.get(result.category, AuditStatus.SKIPPED)
        job.completed += 1

        logger.info(
            "push_item_finished",
            job_id=job.id,
            statement_id=result.statement_id,
            outcome=result.outcome.value,
            category=result.category.value if result.category else None,
        )
        self.audit.record(
            AuditEventType.PUSH,
            "statement",
            result.statement_id,
            action="push_statement",
            status=audit_status,
            details={
                "job_id": job.id,
                "outcome": result.outcome.value,
                "category": result.category.value if result.category else None,
                "message": result.message,
                **result.detail,
            },
            actor=job.created_by,
        )
        return result

    def _finish(self, db: Session, job: PushJobModel, status: JobStatus, error: Optional[str] = None) -> None:
        job.status = status.value
        job.error = error
        job.completed_at = utc_now()
        db.commit()

        logger.info(
            "push_job_finished",
            job_id=job.id,
            status=status.value,
            succeeded=job.succeeded,
            failed=job.failed,
            skipped=job.skipped,
        )
        self.audit.record(
            AuditEventType.PUSH,
            "push_job",
            job.id,
            action="finish_push",
            status=JOB_AUDIT_STATUS[status],
            details={
                "total_count": job.total_count,
                "succeeded": job.succeeded,
                "failed": job.failed,
                "skipped": job.skipped,
                "error": error,
            },
            actor=job.created_by,
        )
