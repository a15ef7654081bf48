"""
Tests for the audit event model and AuditService.

Verifies:
- events pick up actor / request id / IP from the bound request context
- a failed insert is logged and swallowed, never raised
- filtering, newest-first ordering and page-size capping
- CSV export and stats
- audit rows cannot be updated or deleted through the ORM
"""

import csv
import io
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from grc_sync.context import request_context
from grc_sync.db import audit_service
from grc_sync.db.audit_models import AuditEventModel, AuditImmutableError
from grc_sync.db.audit_service import EXPORT_HEADER, AuditService
from grc_sync.db.base import build_engine
from grc_sync.enums import AuditEventType, AuditStatus
from grc_sync.primitives import generate_ulid, utc_now
from grc_sync.schemas.audit_v1 import AuditFilters


@pytest.fixture
def audit(session_factory):
    service = AuditService(session_factory)
    yield service
    service.shutdown()


def add_event(db_session, event_type, status, created_at, entity_id="stm-1", actor="alice", details=None):
    event = AuditEventModel(
        id=generate_ulid(),
        event_type=event_type,
        entity_type="statement",
        entity_id=entity_id,
        action=f"{event_type}_statement",
        actor=actor,
        status=status,
        details=details or {},
        created_at=created_at,
    )
    db_session.add(event)
    db_session.commit()
    return event


class TestAuditRecording:
    """AuditService.record()."""

    def test_record_uses_request_context(self, audit):
        with request_context(actor="dana", request_id="req-123", ip_address="10.0.0.8"):
            event = audit.record(
                AuditEventType.EDIT,
                "statement",
                "stm-1",
                action="edit_statement",
                status=AuditStatus.SUCCESS,
                details={"content_length": 42},
            )

        stored = audit.get(event.id)
        assert stored.event_type == "edit"
        assert stored.status == "success"
        assert stored.actor == "dana"
        assert stored.request_id == "req-123"
        assert stored.ip_address == "10.0.0.8"
        assert stored.details == {"content_length": 42}

    def test_explicit_actor_wins(self, audit):
        with request_context(actor="dana"):
            event = audit.record("pull", "pull_job", "job-1", action="start_pull", status="started", actor="cli")

        assert audit.get(event.id).actor == "cli"

    def test_default_actor_is_system(self, audit):
        event = audit.record("pull", "pull_job", "job-1", action="start_pull", status="started")

        assert event.actor == "system"

    def test_ids_are_ulids(self, audit):
        event = audit.record("pull", "pull_job", "job-1", action="start_pull", status="started")

        assert len(event.id) == 26

    def test_failed_insert_is_swallowed(self, tmp_path):
        # no tables in this database
        engine = build_engine(f"sqlite:///{tmp_path / 'empty.db'}")
        audit = AuditService(sessionmaker(bind=engine, expire_on_commit=False))

        assert audit.record("push", "statement", "stm-1", action="push_statement", status="failure") is None
        engine.dispose()

    def test_record_async(self, audit):
        future = audit.record_async("edit", "statement", "stm-9", action="edit_statement", status="success")

        event = future.result(timeout=10)
        assert audit.get(event.id).entity_id == "stm-9"

    def test_record_async_creates_one_pool_under_contention(self, audit, monkeypatch):
        created = []

        class SlowPool(ThreadPoolExecutor):
            def __init__(self, *args, **kwargs):
                created.append(self)
                time.sleep(0.05)
                super().__init__(*args, **kwargs)

        monkeypatch.setattr(audit_service, "ThreadPoolExecutor", SlowPool)
        start = threading.Barrier(8)
        futures = []

        def submit(i):
            start.wait(10)
            futures.append(
                audit.record_async("edit", "statement", f"stm-{i}", action="edit_statement", status="success")
            )

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert len(created) == 1
        events = [future.result(timeout=10) for future in futures]
        assert sorted(e.entity_id for e in events) == [f"stm-{i}" for i in range(8)]

    def test_get_missing(self, audit):
        assert audit.get("01HZZZZZZZZZZZZZZZZZZZZZZZ") is None


class TestAuditImmutability:
    """The before_flush guard refuses updates and deletes."""

    def test_update_rejected(self, db_session):
        event = add_event(db_session, "push", "success", utc_now())

        event.status = "failure"
        with pytest.raises(AuditImmutableError) as exc_info:
            db_session.commit()
        db_session.rollback()

        assert exc_info.value.operation == "update"
        assert exc_info.value.to_dict()["error"] == "AUDIT_IMMUTABLE"

    def test_delete_rejected(self, db_session):
        event = add_event(db_session, "push", "success", utc_now())

        db_session.delete(event)
        with pytest.raises(AuditImmutableError):
            db_session.commit()
        db_session.rollback()

        assert db_session.get(AuditEventModel, event.id) is not None


class TestAuditQuery:
    """AuditService.query()."""

    def test_type_status_and_date_range(self, audit, db_session):
        now = utc_now()
        old = add_event(db_session, "push", "failure", now - timedelta(days=10), entity_id="stm-old")
        first = add_event(db_session, "push", "failure", now - timedelta(hours=5), entity_id="stm-a")
        add_event(db_session, "push", "success", now - timedelta(hours=4), entity_id="stm-b")
        add_event(db_session, "pull", "failure", now - timedelta(hours=3), entity_id="job-1")
        second = add_event(db_session, "push", "failure", now - timedelta(hours=2), entity_id="stm-c")
        third = add_event(db_session, "push", "failure", now - timedelta(hours=1), entity_id="stm-d")

        filters = AuditFilters(
            event_types=["push"],
            status="failure",
            start_date=now - timedelta(days=1),
            end_date=now,
        )
        page_one = audit.query(filters, page=1, page_size=2)
        page_two = audit.query(filters, page=2, page_size=2)

        assert page_one.total_count == 3
        assert page_one.total_pages == 2
        assert [e.id for e in page_one.events] == [third.id, second.id]
        assert [e.id for e in page_two.events] == [first.id]
        assert old.id not in {e.id for e in page_one.events + page_two.events}

    def test_default_and_capped_page_size(self, session_factory, db_session):
        audit = AuditService(session_factory, default_page_size=4, max_page_size=5)
        for i in range(7):
            add_event(db_session, "edit", "success", utc_now() - timedelta(minutes=i))

        assert audit.query().page_size == 4
        capped = audit.query(page_size=50)
        assert capped.page_size == 5
        assert len(capped.events) == 5
        assert capped.total_pages == 2

    def test_entity_and_actor_filters(self, audit, db_session):
        add_event(db_session, "edit", "success", utc_now(), entity_id="stm-1", actor="alice")
        add_event(db_session, "edit", "success", utc_now(), entity_id="stm-2", actor="bob")

        by_entity = audit.query(AuditFilters(entity_id="stm-2"))
        by_actor = audit.query(AuditFilters(actor="alice"))
        by_type = audit.query(AuditFilters(entity_types=["push_job"]))

        assert [e.actor for e in by_entity.events] == ["bob"]
        assert [e.entity_id for e in by_actor.events] == ["stm-1"]
        assert by_type.total_count == 0

    def test_search_matches_details_case_insensitively(self, audit, db_session):
        add_event(db_session, "push", "failure", utc_now(), details={"message": "Rejected by ISSO review"})
        add_event(db_session, "push", "failure", utc_now(), details={"message": "Rate limited"})

        result = audit.query(AuditFilters(search="isso"))

        assert result.total_count == 1
        assert result.events[0].details["message"] == "Rejected by ISSO review"


class TestAuditExportAndStats:
    """CSV export and aggregate counts."""

    def test_export_csv(self, audit, db_session):
        add_event(db_session, "push", "failure", utc_now() - timedelta(minutes=2), details={"category": "not_found"})
        add_event(db_session, "edit", "success", utc_now() - timedelta(minutes=1))

        content = audit.export_csv(AuditFilters(event_types=["push"]))

        rows = list(csv.reader(io.StringIO(content.decode("utf-8"))))
        assert rows[0] == EXPORT_HEADER
        assert len(rows) == 2
        assert rows[1][2] == "push"
        assert rows[1][9] == '{"category": "not_found"}'

    def test_export_is_capped(self, session_factory, db_session):
        audit = AuditService(session_factory, export_max_rows=3)
        for i in range(5):
            add_event(db_session, "edit", "success", utc_now() - timedelta(minutes=i))

        assert len(audit.export_rows()) == 3

    def test_stats(self, audit, db_session):
        now = utc_now()
        add_event(db_session, "push", "success", now)
        add_event(db_session, "push", "failure", now - timedelta(days=3))
        add_event(db_session, "pull", "success", now - timedelta(days=20))
        add_event(db_session, "edit", "success", now - timedelta(days=45))

        stats = audit.stats()

        assert stats.total_events == 4
        assert stats.events_by_type == {"push": 2, "pull": 1, "edit": 1}
        assert stats.events_by_status == {"success": 3, "failure": 1}
        assert stats.events_today == 1
        assert stats.events_this_week == 2
        assert stats.events_this_month == 3
