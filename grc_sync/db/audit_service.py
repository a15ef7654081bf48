"""
Audit Log Service.

Provides a clean interface for recording and querying audit events. Pull, push,
edit and conflict handling all report through this service.

Recording is fire-and-forget from the caller's point of view: each event is
inserted in its own session, so a failed insert is logged and never rolls back or
fails the business operation that triggered it. There is no update or delete path.
"""

import csv
import io
import json
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import String, and_, cast, desc, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from ..context import current_context
from ..primitives import generate_ulid, utc_now
from ..schemas.audit_v1 import AuditEventResponse, AuditFilters, AuditQueryResult, AuditStats
from .audit_models import AuditEventModel

logger = structlog.get_logger()

EXPORT_HEADER = [
    "Event ID",
    "Timestamp",
    "Event Type",
    "Entity Type",
    "Entity ID",
    "Action",
    "Actor",
    "Status",
    "Request ID",
    "Details",
]


def build_conditions(filters: AuditFilters) -> List[ColumnElement]:
    """Compose WHERE conditions from a filter set."""
    conditions: List[ColumnElement] = []

    if filters.event_types:
        conditions.append(AuditEventModel.event_type.in_(filters.event_types))
    if filters.entity_types:
        conditions.append(AuditEventModel.entity_type.in_(filters.entity_types))
    if filters.entity_id:
        conditions.append(AuditEventModel.entity_id == filters.entity_id)
    if filters.actor:
        conditions.append(AuditEventModel.actor == filters.actor)
    if filters.status:
        conditions.append(AuditEventModel.status == filters.status)
    if filters.start_date is not None:
        conditions.append(AuditEventModel.created_at >= filters.start_date)
    if filters.end_date is not None:
        conditions.append(AuditEventModel.created_at <= filters.end_date)
    if filters.search:
        pattern = f"%{filters.search}%"
        conditions.append(
            or_(
                AuditEventModel.action.ilike(pattern),
                AuditEventModel.entity_id.ilike(pattern),
                AuditEventModel.actor.ilike(pattern),
                cast(AuditEventModel.details, String).ilike(pattern),
            )
        )

    return conditions


class AuditService:
    """Service for recording and querying audit events.

    Usage:
        audit = AuditService(get_session_local())
        audit.record("push", "statement", stmt.id, action="push_statement", status="success")
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        default_page_size: int = 50,
        max_page_size: int = 100,
        export_max_rows: int = 10000,
    ):
        self.session_factory = session_factory
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.export_max_rows = export_max_rows
        self._async_pool: Optional[ThreadPoolExecutor] = None
        self._async_lock = threading.Lock()

    @classmethod
    def from_settings(cls, session_factory: sessionmaker, settings) -> "AuditService":
        return cls(
            session_factory,
            default_page_size=settings.audit_default_page_size,
            max_page_size=settings.audit_max_page_size,
            export_max_rows=settings.audit_export_max_rows,
        )

    # Recording

    def record(
        self,
        event_type: str,
        entity_type: str,
        entity_id: str,
        action: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> Optional[AuditEventModel]:
        """Insert one audit event.

        Actor, request id and IP address come from the bound request context
        unless ``actor`` is given explicitly.

        Returns:
            The stored AuditEventModel, or None if the insert failed (the failure
            is logged, not raised).
        """
        ctx = current_context()
        entry = AuditEventModel(
            id=generate_ulid(),
            event_type=str(getattr(event_type, "value", event_type)),
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            actor=actor or ctx.actor,
            status=str(getattr(status, "value", status)),
            details=details or {},
            request_id=ctx.request_id,
            ip_address=ctx.ip_address,
            created_at=utc_now(),
        )

        db = self.session_factory()
        try:
            db.add(entry)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                "audit_record_failed",
                event_type=entry.event_type,
                entity_type=entity_type,
                entity_id=entry.entity_id,
                error=str(e),
            )
            return None
        finally:
            db.close()

        logger.debug(
            "audit_event_recorded",
            event_id=entry.id,
            event_type=entry.event_type,
            entity_type=entity_type,
            action=action,
        )
        return entry

    def record_async(self, *args: Any, **kwargs: Any) -> Future:
        """Record an event on a background thread; errors are logged, not returned."""
        kwargs.setdefault("actor", current_context().actor)
        with self._async_lock:
            if self._async_pool is None:
                self._async_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")
            return self._async_pool.submit(self.record, *args, **kwargs)

    def shutdown(self) -> None:
        """Flush pending async records."""
        with self._async_lock:
            pool, self._async_pool = self._async_pool, None
        if pool is not None:
            pool.shutdown(wait=True)

    # Query methods

    def get(self, event_id: str) -> Optional[AuditEventModel]:
        """Get a single audit event by ID."""
        db = self.session_factory()
        try:
            return db.get(AuditEventModel, event_id)
        finally:
            db.close()

    def _normalize_page(self, page: int, page_size: Optional[int]) -> Tuple[int, int]:
        if page_size is None or page_size <= 0:
            page_size = self.default_page_size
        page_size = min(page_size, self.max_page_size)
        return max(page, 1), page_size

    def query(
        self,
        filters: Optional[AuditFilters] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> AuditQueryResult:
        """Filtered, paginated events, newest first, with a total count."""
        filters = filters or AuditFilters()
        page, page_size = self._normalize_page(page, page_size)
        conditions = build_conditions(filters)
        where = and_(*conditions) if conditions else None

        db = self.session_factory()
        try:
            count_stmt = select(func.count()).select_from(AuditEventModel)
            stmt = select(AuditEventModel)
            if where is not None:
                count_stmt = count_stmt.where(where)
                stmt = stmt.where(where)

            total_count = db.execute(count_stmt).scalar_one()
            rows = (
                db.execute(
                    stmt.order_by(desc(AuditEventModel.created_at), desc(AuditEventModel.id))
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
                .scalars()
                .all()
            )
        finally:
            db.close()

        return AuditQueryResult(
            events=[AuditEventResponse.model_validate(row) for row in rows],
            total_count=total_count,
            page=page,
            page_size=page_size,
            total_pages=(total_count + page_size - 1) // page_size,
        )

    def export_rows(self, filters: Optional[AuditFilters] = None) -> List[AuditEventModel]:
        """Every matching event, newest first, capped at ``export_max_rows``."""
        filters = filters or AuditFilters()
        conditions = build_conditions(filters)

        db = self.session_factory()
        try:
            stmt = select(AuditEventModel)
            if conditions:
                stmt = stmt.where(and_(*conditions))
            return list(
                db.execute(
                    stmt.order_by(desc(AuditEventModel.created_at), desc(AuditEventModel.id))
                    .limit(self.export_max_rows)
                )
                .scalars()
                .all()
            )
        finally:
            db.close()

    def export_csv(self, filters: Optional[AuditFilters] = None) -> bytes:
        """Render matching events as CSV bytes with a header row."""
        rows = self.export_rows(filters)

        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(EXPORT_HEADER)
        for row in rows:
            writer.writerow(
                [
                    row.id,
                    row.created_at.isoformat() if row.created_at else "",
                    row.event_type,
                    row.entity_type,
                    row.entity_id,
                    row.action,
                    row.actor,
                    row.status,
                    row.request_id or "",
                    json.dumps(row.details, sort_keys=True, default=str) if row.details else "",
                ]
            )

        logger.info("audit_exported", rows=len(rows))
        return buf.getvalue().encode("utf-8")

    def stats(self) -> AuditStats:
        """Totals by type and status plus recent-activity counts."""
        now = utc_now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        db = self.session_factory()
        try:
            total = db.execute(select(func.count()).select_from(AuditEventModel)).scalar_one()
            by_type = dict(
                db.execute(
                    select(AuditEventModel.event_type, func.count()).group_by(AuditEventModel.event_type)
                ).all()
            )
            by_status = dict(
                db.execute(
                    select(AuditEventModel.status, func.count()).group_by(AuditEventModel.status)
                ).all()
            )

            def count_since(since) -> int:
                return db.execute(
                    select(func.count())
                    .select_from(AuditEventModel)
                    .where(AuditEventModel.created_at >= since)
                ).scalar_one()

            return AuditStats(
                total_events=total,
                events_by_type=by_type,
                events_by_status=by_status,
                events_today=count_since(start_of_day),
                events_this_week=count_since(now - timedelta(days=7)),
                events_this_month=count_since(now - timedelta(days=30)),
            )
        finally:
            db.close()
