"""
FastAPI application for GRC Sync.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import get_settings
from .context import request_context
from .db.audit_models import AuditImmutableError
from .db.base import init_database
from .enums import AuditEventType, AuditStatus
from .errors import SyncError
from .logging_config import configure_logging
from .primitives import generate_ulid
from .routes import audit_router, get_actor, get_services, pull_router, push_router, statement_router
from .sync import SyncServices, build_services

logger = structlog.get_logger()

settings = get_settings()


def app_version() -> str:
    try:
        return importlib.metadata.version("grc-sync")
    except importlib.metadata.PackageNotFoundError:
        return __version__


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging(settings)
    logger.info("Starting GRC Sync")

    try:
        init_database()
        services = build_services(settings)
        recovered = services.recover_interrupted_jobs()
        if recovered:
            logger.warning("interrupted_jobs_recovered", count=recovered)
        app.state.services = services
    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    yield

    logger.info("Shutting down GRC Sync")
    app.state.services.shutdown(wait=True)
    logger.info("Shutdown complete")


app = FastAPI(
    title="GRC Sync",
    description="Pull, conflict detection, push and audit for compliance implementation statements",
    version=app_version(),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    """Expose X-Actor / X-Request-ID to logging and the audit log."""
    request_id = request.headers.get("x-request-id") or generate_ulid()
    actor = (request.headers.get("x-actor") or "").strip() or None
    client_ip = request.client.host if request.client else None
    with request_context(actor=actor, request_id=request_id, ip_address=client_ip):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_dict()})


@app.exception_handler(AuditImmutableError)
async def audit_immutable_handler(request: Request, exc: AuditImmutableError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": exc.to_dict()})


app.include_router(pull_router)
app.include_router(push_router)
app.include_router(statement_router)
app.include_router(audit_router)


@app.get("/health", tags=["system"])
def health() -> Dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.get("/version", tags=["system"])
def version() -> Dict[str, str]:
    """Return the version of the application."""
    return {"version": app_version()}


@app.post("/connection/test", tags=["system"])
def test_connection(
    services: SyncServices = Depends(get_services),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    """Check that the remote source is reachable with the configured credentials."""
    try:
        client = services.client_factory()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))

    try:
        result = client.test_connection()
    finally:
        client.close()

    services.audit.record(
        AuditEventType.CONNECTION_TEST,
        "connection",
        result.instance_url,
        action="test_connection",
        status=AuditStatus.SUCCESS if result.success else AuditStatus.FAILURE,
        details={
            "response_time_ms": result.response_time_ms,
            "error_kind": result.error_kind,
            "version": result.version,
        },
        actor=actor,
    )
    return result.to_dict()
