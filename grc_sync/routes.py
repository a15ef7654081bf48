"""
Sync API Routes.

Job endpoints for pull and push, conflict checking and resolution, statement
reads and reverts, and audit queries. Sync domain errors are turned into responses by the exception handler
registered in ``api.py``.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from .context import current_context
from .db.services import StatementService
from .schemas.audit_v1 import AuditEventResponse, AuditFilters, AuditQueryResult, AuditStats
from .schemas.sync_v1 import (
    ConflictCheckRequest,
    PullJobCreate,
    PushJobCreate,
    ResolutionRequest,
)
from .sync import Resolution, SyncServices


def get_services(request: Request) -> SyncServices:
    """Dependency returning the services built at startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Sync services not initialized")
    return services


def get_db(services: SyncServices = Depends(get_services)):
    """Dependency yielding a session that is closed after the request."""
    db = services.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_actor(x_actor: Optional[str] = Header(None)) -> str:
    """Acting user, from the X-Actor header when present."""
    return (x_actor or "").strip() or current_context().actor


pull_router = APIRouter(prefix="/pull", tags=["pull"])
push_router = APIRouter(tags=["push"])
statement_router = APIRouter(prefix="/statements", tags=["statements"])
audit_router = APIRouter(prefix="/audit", tags=["audit"])


# =============================================================================
# Pull
# =============================================================================


@pull_router.post("/jobs", status_code=202)
def start_pull(
    body: PullJobCreate,
    services: SyncServices = Depends(get_services),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    """Start a background pull. Returns the job handle immediately."""
    job = services.pull.start_pull(body.system_ids, actor=actor)
    return job.to_dict()


@pull_router.get("/jobs")
def list_pull_jobs(
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    services: SyncServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [job.to_dict() for job in services.pull.list_jobs(status=status, limit=limit, offset=offset)]


@pull_router.get("/jobs/{job_id}")
def get_pull_job(job_id: str, services: SyncServices = Depends(get_services)) -> Dict[str, Any]:
    return services.pull.get_job(job_id).to_dict()


@pull_router.post("/jobs/{job_id}/cancel", status_code=202)
def cancel_pull_job(job_id: str, services: SyncServices = Depends(get_services)) -> Dict[str, Any]:
    return services.pull.cancel_job(job_id).to_dict()


# =============================================================================
# Conflicts and push
# =============================================================================


@push_router.post("/push/conflicts")
def check_conflicts(
    body: ConflictCheckRequest,
    services: SyncServices = Depends(get_services),
) -> Dict[str, Any]:
    """Compare each statement's baseline with the remote's current timestamp."""
    results = services.push.check_conflicts(body.statement_ids)
    return {
        "results": [r.to_dict() for r in results],
        "conflict_count": sum(1 for r in results if r.has_conflict),
    }


@push_router.post("/push/jobs", status_code=202)
def start_push(
    body: PushJobCreate,
    services: SyncServices = Depends(get_services),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    resolutions = [
        Resolution(r.statement_id, r.resolution, r.merged_content) for r in body.resolutions
    ]
    job = services.push.start_push(body.statement_ids, resolutions, actor=actor)
    return job.to_dict()


@push_router.get("/push/jobs/{job_id}")
def get_push_job(job_id: str, services: SyncServices = Depends(get_services)) -> Dict[str, Any]:
    return services.push.get_job(job_id).to_dict()


@push_router.post("/push/jobs/{job_id}/cancel", status_code=202)
def cancel_push_job(job_id: str, services: SyncServices = Depends(get_services)) -> Dict[str, Any]:
    return services.push.cancel_job(job_id).to_dict()


@push_router.post("/statements/{statement_id}/resolve")
def resolve_statement(
    statement_id: str,
    body: ResolutionRequest,
    services: SyncServices = Depends(get_services),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    statement = services.conflicts.resolve(
        statement_id, body.resolution, merged_content=body.merged_content, actor=actor
    )
    return statement.to_dict()


# =============================================================================
# Statements
# =============================================================================


@statement_router.get("/modified")
def list_modified_statements(db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    """Statements with local edits, oldest edit first."""
    return [s.to_dict() for s in StatementService(db).list_modified()]


@statement_router.get("/conflicts")
def list_conflicted_statements(db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in StatementService(db).list_conflicts()]


@statement_router.get("/{statement_id}")
def get_statement(statement_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return StatementService(db).require(statement_id).to_dict()


@statement_router.post("/{statement_id}/revert")
def revert_statement(
    statement_id: str,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_services),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    """Discard the local edit and fall back to the remote content."""
    return StatementService(db, services.audit).revert_to_remote(statement_id, actor).to_dict()


# =============================================================================
# Audit
# =============================================================================


def audit_filters(
    event_type: Optional[List[str]] = Query(None),
    entity_type: Optional[List[str]] = Query(None),
    entity_id: Optional[str] = Query(None),
    actor: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=256),
) -> AuditFilters:
    return AuditFilters(
        event_types=event_type or [],
        entity_types=entity_type or [],
        entity_id=entity_id,
        actor=actor,
        status=status,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )


@audit_router.get("/events", response_model=AuditQueryResult)
def list_audit_events(
    filters: AuditFilters = Depends(audit_filters),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    services: SyncServices = Depends(get_services),
) -> AuditQueryResult:
    return services.audit.query(filters, page=page, page_size=page_size)


@audit_router.get("/events/{event_id}", response_model=AuditEventResponse)
def get_audit_event(event_id: str, services: SyncServices = Depends(get_services)) -> AuditEventResponse:
    event = services.audit.get(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Audit event not found")
    return AuditEventResponse.model_validate(event)


@audit_router.get("/stats", response_model=AuditStats)
def get_audit_stats(services: SyncServices = Depends(get_services)) -> AuditStats:
    return services.audit.stats()


@audit_router.get("/export")
def export_audit_events(
    filters: AuditFilters = Depends(audit_filters),
    services: SyncServices = Depends(get_services),
) -> Response:
    """Matching events as CSV, newest first, capped at the export limit."""
    content = services.audit.export_csv(filters)
    filename = f"audit_events_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
