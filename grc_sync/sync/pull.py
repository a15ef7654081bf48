"""
Pull Orchestrator.

Imports systems, their controls and the controls' statements from the remote
source into the local store as a background job. Upserts are idempotent on
external id and never destroy unpushed local edits.

Failure model:
    - The systems fetch is the job's first required call; if it fails the job
      ends ``failed``.
    - Any later control/statement fetch or transform failure is recorded on the
      job and the job ends ``partial``.
    - Cancellation ends the job ``cancelled``; everything already committed stays.
"""

import contextvars
import functools
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..context import current_context
from ..db.audit_service import AuditService
from ..db.models import ControlModel, PullJobModel
from ..db.services import ControlService, StatementService, SystemService
from ..enums import ACTIVE_JOB_STATUSES, AuditEventType, AuditStatus, JobStatus, SyncStatus
from ..errors import (
    ConcurrentJobError,
    InvalidInputError,
    JobAlreadyFinishedError,
    JobNotFoundError,
    SyncError,
)
from ..primitives import utc_now
from ..source import SourceCancelledError, SourceClient, SourceError
from ..source.records import StatementRecord

logger = structlog.get_logger()

JOB_AUDIT_STATUS = {
    JobStatus.COMPLETED: AuditStatus.SUCCESS,
    JobStatus.PARTIAL: AuditStatus.PARTIAL,
    JobStatus.FAILED: AuditStatus.FAILURE,
    JobStatus.CANCELLED: AuditStatus.CANCELLED,
}


def empty_progress(systems_total: int = 0) -> Dict[str, Any]:
    return {
        "systems_total": systems_total,
        "systems_processed": 0,
        "controls_processed": 0,
        "statements_processed": 0,
        "statements_created": 0,
        "statements_updated": 0,
        "conflicts_detected": 0,
        "items_failed": 0,
        "current_system": None,
    }


def normalize_ids(ids: List[str]) -> List[str]:
    """Strip blanks and duplicates, preserving order."""
    seen = set()
    result = []
    for raw in ids:
        value = (raw or "").strip()
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


class _PullRun:
    """Mutable state of one executing pull job, flushed to its row on a cadence."""

    def __init__(self, db: Session, job: PullJobModel, flush_every: int):
        self.db = db
        self.job = job
        self.flush_every = max(flush_every, 1)
        self.progress = empty_progress(len(job.system_ids))
        self.errors: List[Dict[str, Any]] = []
        self._since_flush = 0

    def item_failed(self, entity_type: str, external_id: str, error: Exception) -> None:
        kind = error.kind.value if isinstance(error, SourceError) else type(error).__name__
        message = getattr(error, "message", None) or str(error)
        self.errors.append(
            {
                "entity_type": entity_type,
                "external_id": external_id,
                "kind": kind,
                "message": message,
            }
        )
        self.progress["items_failed"] += 1
        logger.warning(
            "pull_item_failed",
            job_id=self.job.id,
            entity_type=entity_type,
            external_id=external_id,
            error_kind=kind,
            error=message,
        )

    def tick(self) -> None:
        self._since_flush += 1
        if self._since_flush >= self.flush_every:
            self.flush()

    def flush(self) -> None:
        self._since_flush = 0
        self.job.progress = dict(self.progress)
        self.job.errors = list(self.errors)
        self.db.commit()


class PullOrchestrator:
    """Starts, runs, tracks and cancels pull jobs."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[], SourceClient],
        audit: AuditService,
        runner,
        progress_flush_every: int = 25,
        fetch_concurrency: int = 2,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.audit = audit
        self.runner = runner
        self.progress_flush_every = progress_flush_every
        self.fetch_concurrency = max(fetch_concurrency, 1)
        self._scope_lock = threading.Lock()
        self._active_systems: Dict[str, str] = {}

    # Public API

    def start_pull(self, system_ids: List[str], actor: Optional[str] = None) -> PullJobModel:
        """Create a pull job for the given external system ids and start it.

        Raises:
            InvalidInputError: no system ids given
            ConcurrentJobError: a requested system already has an active pull
        """
        ids = normalize_ids(system_ids)
        if not ids:
            raise InvalidInputError("At least one system id is required")
        actor = actor or current_context().actor

        with self._scope_lock:
            for system_id in ids:
                if system_id in self._active_systems:
                    raise ConcurrentJobError(f"system {system_id}", self._active_systems[system_id])

            db = self.session_factory()
            try:
                for active in (
                    db.query(PullJobModel).filter(PullJobModel.status.in_(ACTIVE_JOB_STATUSES)).all()
                ):
                    overlap = set(active.system_ids or []) & set(ids)
                    if overlap:
                        raise ConcurrentJobError(f"system {sorted(overlap)[0]}", active.id)

                job = PullJobModel(
                    system_ids=ids,
                    status=JobStatus.PENDING.value,
                    progress=empty_progress(len(ids)),
                    errors=[],
                    created_by=actor,
                    created_at=utc_now(),
                )
                db.add(job)
                db.commit()
            finally:
                db.close()

            for system_id in ids:
                self._active_systems[system_id] = job.id

        logger.info("pull_job_created", job_id=job.id, system_ids=ids)
        self.audit.record(
            AuditEventType.PULL,
            "pull_job",
            job.id,
            action="start_pull",
            status=AuditStatus.STARTED,
            details={"system_ids": ids},
            actor=actor,
        )
        try:
            self.runner.submit(job.id, lambda cancel: self._run_job(job.id, cancel))
        except RuntimeError:
            # runner already shut down
            self._release(job.id)
            raise
        return job

    def get_job(self, job_id: str) -> PullJobModel:
        db = self.session_factory()
        try:
            job = db.get(PullJobModel, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job
        finally:
            db.close()

    def list_jobs(self, status: Optional[str] = None, limit: int = 20, offset: int = 0) -> List[PullJobModel]:
        db = self.session_factory()
        try:
            query = db.query(PullJobModel)
            if status:
                query = query.filter(PullJobModel.status == status)
            return query.order_by(desc(PullJobModel.created_at)).offset(offset).limit(limit).all()
        finally:
            db.close()

    def cancel_job(self, job_id: str) -> PullJobModel:
        """Request cancellation. The job ends ``cancelled`` at its next check."""
        job = self.get_job(job_id)
        if not JobStatus(job.status).is_active:
            raise JobAlreadyFinishedError(job_id, job.status)

        if not self.runner.cancel(job_id):
            # Not owned by this process: nothing will pick it up again
            db = self.session_factory()
            try:
                row = db.get(PullJobModel, job_id)
                row.status = JobStatus.CANCELLED.value
                row.completed_at = utc_now()
                row.error = "Cancelled"
                db.commit()
                job = row
            finally:
                db.close()
        return job

    def recover_interrupted_jobs(self) -> int:
        """Fail jobs left pending/running by a previous process."""
        db = self.session_factory()
        try:
            jobs = db.query(PullJobModel).filter(PullJobModel.status.in_(ACTIVE_JOB_STATUSES)).all()
            for job in jobs:
                if self.runner.is_running(job.id):
                    continue
                job.status = JobStatus.FAILED.value
                job.error = "Interrupted: the process running this job stopped"
                job.completed_at = utc_now()
                logger.warning("pull_job_interrupted", job_id=job.id)
            db.commit()
            return len(jobs)
        finally:
            db.close()

    # Execution

    def _release(self, job_id: str) -> None:
        with self._scope_lock:
            for system_id in [s for s, j in self._active_systems.items() if j == job_id]:
                del self._active_systems[system_id]

    def _run_job(self, job_id: str, cancel: threading.Event) -> None:
        log = logger.bind(job_id=job_id)
        db = self.session_factory()
        client: Optional[SourceClient] = None
        run: Optional[_PullRun] = None
        try:
            job = db.get(PullJobModel, job_id)
            job.status = JobStatus.RUNNING.value
            job.started_at = utc_now()
            db.commit()
            run = _PullRun(db, job, self.progress_flush_every)
            log.info("pull_job_started", system_ids=job.system_ids)

            client = self.client_factory()
            try:
                systems = client.fetch_systems(list(job.system_ids), cancel=cancel)
            except SourceCancelledError:
                self._finish(run, JobStatus.CANCELLED, "Cancelled")
                return
            except SourceError as e:
                self._finish(run, JobStatus.FAILED, f"Could not fetch systems: {e.message}")
                return

            for error in systems.errors:
                run.item_failed("system", "", error)
            found = {record.external_id for record in systems.records}
            for missing in [s for s in job.system_ids if s not in found]:
                run.item_failed("system", missing, SourceError(f"System {missing} not found on remote"))

            for record in systems.records:
                if cancel.is_set():
                    raise SourceCancelledError()
                self._pull_system(run, client, record, cancel)
                run.progress["systems_processed"] += 1
                run.flush()

            if cancel.is_set():
                raise SourceCancelledError()
            self._finish(run, JobStatus.PARTIAL if run.errors else JobStatus.COMPLETED)

        except SourceCancelledError:
            if run is not None:
                self._finish(run, JobStatus.CANCELLED, "Cancelled")
        except Exception as e:
            log.exception("pull_job_crashed")
            db.rollback()
            if run is not None:
                self._finish(run, JobStatus.FAILED, str(e))
        finally:
            self._release(job_id)
            if client is not None:
                client.close()
            db.close()

    def _pull_system(self, run: _PullRun, client: SourceClient, record, cancel: threading.Event) -> None:
        db = run.db
        system, created = SystemService(db).upsert(record)
        run.progress["current_system"] = record.external_id
        self.audit.record(
            AuditEventType.SYSTEM_IMPORT,
            "system",
            system.id,
            action="import_system" if created else "refresh_system",
            status=AuditStatus.SUCCESS,
            details={"external_id": record.external_id, "job_id": run.job.id},
        )

        try:
            fetched = client.fetch_controls(record.external_id, cancel=cancel)
            control_records = fetched.records
            cancelled = None
        except SourceCancelledError as e:
            control_records = e.partial.records if e.partial is not None else []
            cancelled = e
        except SourceError as e:
            run.item_failed("system", record.external_id, e)
            return
        else:
            for error in fetched.errors:
                run.item_failed("control", record.external_id, error)

        controls_service = ControlService(db)
        controls: List[ControlModel] = []
        for control_record in control_records:
            try:
                control, _ = controls_service.upsert(system.id, control_record)
            except SQLAlchemyError as e:
                db.rollback()
                run.item_failed("control", control_record.external_id, e)
                continue
            controls.append(control)
            run.progress["controls_processed"] += 1
            run.tick()

        if cancelled is not None:
            raise cancelled
        self._pull_statements(run, client, controls, cancel)

    def _pull_statements(
        self,
        run: _PullRun,
        client: SourceClient,
        controls: List[ControlModel],
        cancel: threading.Event,
    ) -> None:
        """Fetch statements in parallel; merge them on this thread as fetches finish."""
        if not controls:
            return
        cancelled: Optional[SourceCancelledError] = None

        with ThreadPoolExecutor(max_workers=self.fetch_concurrency, thread_name_prefix="grc-sync-pull") as pool:
            fetch = functools.partial(client.fetch_statements, cancel=cancel)
            futures = {
                pool.submit(contextvars.copy_context().run, fetch, control.external_id): control
                for control in controls
            }
            for future in as_completed(futures):
                control = futures[future]
                try:
                    result = future.result()
                    records = result.records
                    for error in result.errors:
                        run.item_failed("statement", control.external_id, error)
                except SourceCancelledError as e:
                    records = e.partial.records if e.partial is not None else []
                    cancelled = cancelled or e
                except SourceError as e:
                    run.item_failed("control", control.external_id, e)
                    continue

                for statement_record in records:
                    self._merge_statement(run, control, statement_record)

        if cancelled is not None:
            raise cancelled

    def _merge_statement(self, run: _PullRun, control: ControlModel, record: StatementRecord) -> None:
        db = run.db
        try:
            statement, created, previous = StatementService(db).apply_pulled(control.id, record)
        except (SQLAlchemyError, SyncError) as e:
            db.rollback()
            run.item_failed("statement", record.external_id, e)
            return

        run.progress["statements_processed"] += 1
        run.progress["statements_created" if created else "statements_updated"] += 1

        if statement.sync_status == SyncStatus.CONFLICT.value and previous != SyncStatus.CONFLICT:
            run.progress["conflicts_detected"] += 1
            logger.info("pull_conflict_detected", job_id=run.job.id, statement_id=statement.id)
            self.audit.record(
                AuditEventType.CONFLICT_DETECTED,
                "statement",
                statement.id,
                action="detect_conflict",
                status=AuditStatus.CONFLICT,
                details={
                    "source": "pull",
                    "job_id": run.job.id,
                    "remote_updated_at": statement.remote_updated_at.isoformat()
                    if statement.remote_updated_at
                    else None,
                    "baseline_updated_at": statement.baseline_updated_at.isoformat()
                    if statement.baseline_updated_at
                    else None,
                },
            )
        run.tick()

    def _finish(self, run: _PullRun, status: JobStatus, error: Optional[str] = None) -> None:
        job = run.job
        job.status = status.value
        job.error = error
        job.completed_at = utc_now()
        run.progress["current_system"] = None
        run.flush()

        logger.info(
            "pull_job_finished",
            job_id=job.id,
            status=status.value,
            items_failed=len(run.errors),
            statements=run.progress["statements_processed"],
        )
        self.audit.record(
            AuditEventType.PULL,
            "pull_job",
            job.id,
            action="finish_pull",
            status=JOB_AUDIT_STATUS[status],
            details={
                "system_ids": job.system_ids,
                "progress": dict(run.progress),
                "error_count": len(run.errors),
                "error": error,
            },
            actor=job.created_by,
        )
