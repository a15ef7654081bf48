"""Test configuration and fixtures.

``FakeRemote`` stands in for the remote GRC table API behind an
``httpx.MockTransport``: it serves paged table reads, single-record reads and
PATCH writes over in-memory tables, and lets tests queue canned responses or
hook requests to simulate failures, latency and cancellation.
"""

import json
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from grc_sync.config import Settings
from grc_sync.db.base import build_engine, init_database
from grc_sync.primitives import format_remote_timestamp
from grc_sync.sync import build_services

INSTANCE_URL = "https://grc.example.com"

SYSTEMS_TABLE = "sn_grc_profile"
CONTROLS_TABLE = "sn_compliance_control"
STATEMENTS_TABLE = "sn_compliance_policy_statement"

T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)

_PATH_RE = re.compile(r"^/api/now/table/(?P<table>[^/]+)(?:/(?P<sys_id>[^/]+))?$")
_IN_RE = re.compile(r"^(?P<field>[a-z_]+)IN(?P<values>.*)$")


def ts(minutes: int = 0) -> datetime:
    """A fixed point in remote time, ``minutes`` after T0."""
    return T0 + timedelta(minutes=minutes)


def json_response(status: int, body: Any = None, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    return httpx.Response(status, json=body if body is not None else {}, headers=headers)


def error_response(status: int, message: str = "error") -> httpx.Response:
    return json_response(status, {"error": {"message": message, "detail": ""}, "status": "failure"})


class FakeRemote:
    """In-memory remote table API."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            SYSTEMS_TABLE: [],
            CONTROLS_TABLE: [],
            STATEMENTS_TABLE: [],
            "sys_properties": [
                {"name": "glide.product.version", "value": "Xanadu"},
                {"name": "glide.buildtag", "value": "glide-xanadu-07-02-2024"},
            ],
        }
        self.requests: List[httpx.Request] = []
        self.queued: Dict[Tuple[str, str, Optional[str]], List[httpx.Response]] = {}
        self.before_request: Optional[Callable[[httpx.Request], None]] = None
        self.latency = 0.0
        self.clock = ts(60)
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    # Seeding

    def add_system(self, sys_id: str, name: str = "", updated: datetime = T0) -> Dict[str, Any]:
        record = {
            "sys_id": sys_id,
            "name": name or f"System {sys_id}",
            "description": f"Authorization boundary for {sys_id}",
            "owned_by": {"display_value": "Ada Admin", "value": "user-1"},
            "sys_updated_on": format_remote_timestamp(updated),
        }
        self.tables[SYSTEMS_TABLE].append(record)
        return record

    def add_control(self, system_id: str, sys_id: str, control_id: str, updated: datetime = T0) -> Dict[str, Any]:
        record = {
            "sys_id": sys_id,
            "profile": {"value": system_id, "display_value": f"System {system_id}"},
            "control_id": control_id,
            "name": f"Control {control_id}",
            "baseline": "moderate",
            "sys_updated_on": format_remote_timestamp(updated),
        }
        self.tables[CONTROLS_TABLE].append(record)
        return record

    def add_statement(
        self,
        control_id: str,
        sys_id: str,
        content: str,
        updated: Optional[datetime] = T0,
    ) -> Dict[str, Any]:
        record = {
            "sys_id": sys_id,
            "control": {"value": control_id},
            "description": content,
            "statement_type": "implementation",
            "sys_updated_on": format_remote_timestamp(updated) if updated else "",
        }
        self.tables[STATEMENTS_TABLE].append(record)
        return record

    def record(self, table: str, sys_id: str) -> Optional[Dict[str, Any]]:
        for row in self.tables.get(table, []):
            if row["sys_id"] == sys_id:
                return row
        return None

    def touch_statement(self, sys_id: str, content: str, updated: datetime) -> None:
        """Simulate an edit made directly on the remote system."""
        row = self.record(STATEMENTS_TABLE, sys_id)
        row["description"] = content
        row["sys_updated_on"] = format_remote_timestamp(updated)

    # Failure injection

    def queue(self, method: str, table: str, response: httpx.Response, sys_id: Optional[str] = None, times: int = 1):
        """Answer the next ``times`` matching requests with ``response``."""
        key = (method, table, sys_id)
        self.queued.setdefault(key, []).extend([response] * times)

    def calls(self, method: str, table: str, sys_id: Optional[str] = None) -> List[httpx.Request]:
        result = []
        for request in self.requests:
            match = _PATH_RE.match(request.url.path)
            if request.method == method and match and match["table"] == table:
                if sys_id is None or match["sys_id"] == sys_id:
                    result.append(request)
        return result

    # Transport handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.before_request is not None:
                self.before_request(request)
            if self.latency:
                time.sleep(self.latency)
            with self._lock:
                return self._dispatch(request)
        finally:
            with self._lock:
                self.in_flight -= 1

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        match = _PATH_RE.match(request.url.path)
        if match is None:
            return error_response(400, "Invalid table API path")
        table, sys_id = match["table"], match["sys_id"]

        queued = self.queued.get((request.method, table, sys_id))
        if queued:
            return queued.pop(0)

        if table not in self.tables:
            return error_response(400, f"Invalid table {table}")

        if request.method == "GET" and sys_id is None:
            return self._list(table, request)
        if request.method == "GET":
            row = self.record(table, sys_id)
            if row is None:
                return error_response(404, "No Record found")
            return json_response(200, {"result": dict(row)})
        if request.method == "PATCH":
            row = self.record(table, sys_id)
            if row is None:
                return error_response(404, "No Record found")
            row.update(json.loads(request.content or b"{}"))
            self.clock += timedelta(minutes=1)
            row["sys_updated_on"] = format_remote_timestamp(self.clock)
            return json_response(200, {"result": dict(row)})
        return error_response(405, "Method not allowed")

    def _list(self, table: str, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        rows = [row for row in self.tables[table] if self._matches(row, params.get("sysparm_query", ""))]
        offset = int(params.get("sysparm_offset", "0"))
        limit = int(params.get("sysparm_limit", "100"))
        page = [dict(row) for row in rows[offset : offset + limit]]
        return json_response(200, {"result": page}, headers={"X-Total-Count": str(len(rows))})

    @staticmethod
    def _matches(row: Dict[str, Any], query: str) -> bool:
        for clause in filter(None, query.split("^")):
            if clause.startswith("ORDERBY"):
                continue
            if "=" in clause:
                field, value = clause.split("=", 1)
                actual = row.get(field)
                if isinstance(actual, dict):
                    actual = actual.get("value")
                if actual != value:
                    return False
                continue
            in_match = _IN_RE.match(clause)
            if in_match and row.get(in_match["field"]) not in in_match["values"].split(","):
                return False
        return True


@pytest.fixture
def engine(tmp_path):
    """A fresh file-backed SQLite database per test (job threads share it)."""
    engine = build_engine(f"sqlite:///{tmp_path / 'grc_sync_test.db'}")
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        source_instance_url=INSTANCE_URL,
        source_username="svc_grc",
        source_password="secret",
        source_retry_delay_seconds=0.5,
        source_max_retries=3,
        source_rate_limit_delay_seconds=5.0,
        pull_progress_flush_every=10,
        push_concurrency=3,
    )


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def sleeps() -> List[float]:
    """Backoff waits requested by source clients, recorded instead of slept."""
    return []


@pytest.fixture
def services(settings, session_factory, remote, sleeps):
    services = build_services(
        settings,
        session_factory=session_factory,
        transport=httpx.MockTransport(remote.handle),
        sleep=sleeps.append,
    )
    yield services
    services.shutdown()


@pytest.fixture
def seeded(remote):
    """One system with two controls; AC-1 has two statements, AC-2 has one."""
    remote.add_system("sys-001", "Payroll Platform")
    remote.add_control("sys-001", "ctl-ac1", "AC-1")
    remote.add_control("sys-001", "ctl-ac2", "AC-2")
    remote.add_statement("ctl-ac1", "stm-1", "Access control policy is reviewed annually.")
    remote.add_statement("ctl-ac1", "stm-2", "Procedures are disseminated to staff.")
    remote.add_statement("ctl-ac2", "stm-3", "Accounts are provisioned through the IAM portal.")
    return remote


def run_pull(services, system_ids, actor: str = "alice"):
    """Start a pull, wait for it, and return the finished job row."""
    job = services.pull.start_pull(system_ids, actor=actor)
    services.runner.wait(job.id, timeout=30)
    return services.pull.get_job(job.id)


def run_push(services, statement_ids, resolutions=None, actor: str = "alice"):
    job = services.push.start_push(statement_ids, resolutions, actor=actor)
    services.runner.wait(job.id, timeout=30)
    return services.push.get_job(job.id)


@pytest.fixture
def pulled(services, seeded):
    """Run a pull of the seeded system; returns {remote sys_id: local statement id}."""
    from grc_sync.db.models import StatementModel

    job = run_pull(services, ["sys-001"])
    assert job.status == "completed", job.errors
    db = services.session_factory()
    try:
        return {s.external_id: s.id for s in db.query(StatementModel).all()}
    finally:
        db.close()


def load_statement(services, statement_id):
    from grc_sync.db.models import StatementModel

    db = services.session_factory()
    try:
        return db.get(StatementModel, statement_id)
    finally:
        db.close()


def edit_statement(services, statement_id, content, actor: str = "alice"):
    """Make a local edit the way the statement editor does."""
    from grc_sync.db.services import StatementService

    db = services.session_factory()
    try:
        return StatementService(db, services.audit).update_local(statement_id, content, actor)
    finally:
        db.close()


def revert_statement(services, statement_id, actor: str = "alice"):
    from grc_sync.db.services import StatementService

    db = services.session_factory()
    try:
        return StatementService(db, services.audit).revert_to_remote(statement_id, actor)
    finally:
        db.close()


def audit_events(services, **filters):
    from grc_sync.db.audit_models import AuditEventModel

    db = services.session_factory()
    try:
        return db.query(AuditEventModel).filter_by(**filters).order_by(AuditEventModel.id).all()
    finally:
        db.close()
