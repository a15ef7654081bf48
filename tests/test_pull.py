"""
Tests for the pull orchestrator.

Verifies:
- systems, controls and statements are imported and re-pulls are idempotent
- unpushed local edits survive a pull; newer remote changes become conflicts
- item failures give a partial job, a failed systems fetch a failed job
- one active pull per system, cancellation keeps committed work
"""

import threading

import pytest

from grc_sync.db.models import ControlModel, PullJobModel, StatementModel, SystemModel
from grc_sync.errors import ConcurrentJobError, InvalidInputError, JobAlreadyFinishedError, JobNotFoundError
from grc_sync.primitives import utc_now

from conftest import (
    CONTROLS_TABLE,
    STATEMENTS_TABLE,
    SYSTEMS_TABLE,
    T0,
    audit_events,
    edit_statement,
    error_response,
    load_statement,
    run_pull,
    ts,
)


def count(services, model) -> int:
    db = services.session_factory()
    try:
        return db.query(model).count()
    finally:
        db.close()


class TestPullImport:
    """Happy-path imports."""

    def test_imports_system_controls_and_statements(self, services, seeded):
        job = run_pull(services, ["sys-001"])

        assert job.status == "completed"
        assert job.progress["systems_processed"] == 1
        assert job.progress["controls_processed"] == 2
        assert job.progress["statements_processed"] == 3
        assert job.progress["statements_created"] == 3
        assert job.progress["items_failed"] == 0
        assert job.errors == []
        assert job.started_at is not None
        assert job.completed_at is not None

        db = services.session_factory()
        try:
            system = db.query(SystemModel).one()
            assert system.external_id == "sys-001"
            assert system.name == "Payroll Platform"
            assert system.last_pull_at is not None

            families = sorted(c.family for c in db.query(ControlModel).all())
            assert families == ["AC", "AC"]

            for row in db.query(StatementModel).all():
                assert row.sync_status == "synced"
                assert row.is_modified is False
                assert row.baseline_updated_at == T0
                assert row.remote_updated_at == T0
        finally:
            db.close()

    def test_repull_is_idempotent(self, services, seeded):
        run_pull(services, ["sys-001"])
        job = run_pull(services, ["sys-001"])

        assert job.status == "completed"
        assert job.progress["statements_created"] == 0
        assert job.progress["statements_updated"] == 3
        assert count(services, SystemModel) == 1
        assert count(services, ControlModel) == 2
        assert count(services, StatementModel) == 3

    def test_remote_change_refreshes_unmodified_statement(self, services, seeded, pulled):
        seeded.touch_statement("stm-1", "Policy is reviewed quarterly.", ts(30))

        run_pull(services, ["sys-001"])

        row = load_statement(services, pulled["stm-1"])
        assert row.remote_content == "Policy is reviewed quarterly."
        assert row.baseline_updated_at == ts(30)
        assert row.sync_status == "synced"

    def test_audit_trail(self, services, seeded):
        job = run_pull(services, ["sys-001"], actor="alice")

        pull_events = audit_events(services, event_type="pull", entity_id=job.id)
        assert sorted(e.status for e in pull_events) == ["started", "success"]
        assert all(e.actor == "alice" for e in pull_events)
        imports = audit_events(services, event_type="system_import")
        assert len(imports) == 1
        assert imports[0].action == "import_system"


class TestLocalEditsSurvivePull:
    """Pulled content never overwrites an unpushed local edit."""

    def test_local_edit_preserved(self, services, seeded, pulled):
        edit_statement(services, pulled["stm-1"], "Reviewed every six months.")

        job = run_pull(services, ["sys-001"])

        assert job.progress["conflicts_detected"] == 0
        row = load_statement(services, pulled["stm-1"])
        assert row.local_content == "Reviewed every six months."
        assert row.is_modified is True
        assert row.sync_status == "modified"

    def test_newer_remote_change_becomes_conflict(self, services, seeded, pulled):
        edit_statement(services, pulled["stm-1"], "Reviewed every six months.")
        seeded.touch_statement("stm-1", "Reviewed quarterly by the ISSO.", ts(30))

        job = run_pull(services, ["sys-001"])

        assert job.status == "completed"
        assert job.progress["conflicts_detected"] == 1
        row = load_statement(services, pulled["stm-1"])
        assert row.sync_status == "conflict"
        assert row.local_content == "Reviewed every six months."
        assert row.remote_content == "Reviewed quarterly by the ISSO."
        assert row.remote_updated_at == ts(30)
        assert row.baseline_updated_at == T0

        detected = audit_events(services, event_type="conflict_detected", entity_id=pulled["stm-1"])
        assert len(detected) == 1
        assert detected[0].details["source"] == "pull"

    def test_conflict_is_reported_once(self, services, seeded, pulled):
        edit_statement(services, pulled["stm-1"], "Reviewed every six months.")
        seeded.touch_statement("stm-1", "Reviewed quarterly by the ISSO.", ts(30))

        run_pull(services, ["sys-001"])
        job = run_pull(services, ["sys-001"])

        assert job.progress["conflicts_detected"] == 0
        assert load_statement(services, pulled["stm-1"]).sync_status == "conflict"


class TestPullFailures:
    """Failure isolation."""

    def test_missing_system_gives_partial(self, services, seeded):
        job = run_pull(services, ["sys-001", "sys-404"])

        assert job.status == "partial"
        assert [e["external_id"] for e in job.errors] == ["sys-404"]
        assert count(services, StatementModel) == 3

    def test_systems_fetch_failure_fails_job(self, services, seeded):
        seeded.queue("GET", SYSTEMS_TABLE, error_response(401, "User Not Authenticated"))

        job = run_pull(services, ["sys-001"])

        assert job.status == "failed"
        assert job.error.startswith("Could not fetch systems")
        assert count(services, SystemModel) == 0
        finished = [e for e in audit_events(services, event_type="pull") if e.action == "finish_pull"]
        assert finished[0].status == "failure"

    def test_controls_failure_is_isolated(self, services, seeded, sleeps):
        seeded.add_system("sys-002", "Data Lake")
        seeded.add_control("sys-002", "ctl-sc7", "SC-7")
        seeded.add_statement("ctl-sc7", "stm-9", "Boundary protection is enforced.")
        # exhausts the retries of the first controls fetch (sys-001)
        seeded.queue("GET", CONTROLS_TABLE, error_response(500), times=4)

        job = run_pull(services, ["sys-001", "sys-002"])

        assert job.status == "partial"
        assert job.progress["systems_processed"] == 2
        assert job.errors[0]["external_id"] == "sys-001"
        assert job.errors[0]["kind"] == "server_error"
        assert sleeps == [0.5, 1.0, 2.0]
        db = services.session_factory()
        try:
            assert [s.external_id for s in db.query(StatementModel).all()] == ["stm-9"]
        finally:
            db.close()

    def test_statement_fetch_failure_is_isolated(self, services, seeded):
        seeded.queue("GET", STATEMENTS_TABLE, error_response(403))

        job = run_pull(services, ["sys-001"])

        assert job.status == "partial"
        assert job.progress["items_failed"] == 1
        assert job.errors[0]["entity_type"] == "control"
        assert 0 < count(services, StatementModel) < 3


class TestPullJobs:
    """Job lifecycle, concurrency guard and cancellation."""

    def test_empty_ids_rejected(self, services):
        with pytest.raises(InvalidInputError):
            services.pull.start_pull(["", "  "])

    def test_concurrent_pull_for_same_system_rejected(self, services, seeded):
        release = threading.Event()
        seeded.before_request = lambda request: release.wait(10)

        job = services.pull.start_pull(["sys-001"], actor="alice")
        try:
            with pytest.raises(ConcurrentJobError) as exc_info:
                services.pull.start_pull(["sys-001"], actor="bob")
            assert exc_info.value.active_job_id == job.id

            other = services.pull.start_pull(["sys-002"], actor="bob")
        finally:
            release.set()

        services.runner.wait(job.id, timeout=30)
        services.runner.wait(other.id, timeout=30)
        assert services.pull.get_job(job.id).status == "completed"

        # the guard is released once the job ends
        again = run_pull(services, ["sys-001"])
        assert again.status == "completed"

    def test_cancel_keeps_committed_pages(self, services, remote):
        remote.add_system("sys-big", "Large System")
        remote.add_control("sys-big", "ctl-big", "CM-6")
        for i in range(250):
            remote.add_statement("ctl-big", f"stm-{i:04d}", f"Configuration setting {i}")

        ready = threading.Event()
        holder = {}

        def cancel_on_second_page(request):
            if request.url.path.endswith(STATEMENTS_TABLE) and request.url.params.get("sysparm_offset") == "100":
                ready.wait(10)
                services.pull.cancel_job(holder["job_id"])

        remote.before_request = cancel_on_second_page

        job = services.pull.start_pull(["sys-big"])
        holder["job_id"] = job.id
        ready.set()
        services.runner.wait(job.id, timeout=30)

        job = services.pull.get_job(job.id)
        assert job.status == "cancelled"
        assert job.progress["statements_processed"] == 200
        assert count(services, StatementModel) == 200
        offsets = [r.url.params["sysparm_offset"] for r in remote.calls("GET", STATEMENTS_TABLE)]
        assert offsets == ["0", "100"]

    def test_cancel_finished_job_rejected(self, services, seeded):
        job = run_pull(services, ["sys-001"])

        with pytest.raises(JobAlreadyFinishedError):
            services.pull.cancel_job(job.id)

    def test_cancel_orphaned_job_marks_it_cancelled(self, services, db_session):
        orphan = PullJobModel(system_ids=["sys-001"], status="running", progress={}, errors=[], created_at=utc_now())
        db_session.add(orphan)
        db_session.commit()

        job = services.pull.cancel_job(orphan.id)

        assert job.status == "cancelled"

    def test_unknown_job(self, services):
        with pytest.raises(JobNotFoundError):
            services.pull.get_job("no-such-job")

    def test_recover_interrupted_jobs(self, services, db_session):
        stale = PullJobModel(system_ids=["sys-001"], status="running", progress={}, errors=[], created_at=utc_now())
        db_session.add(stale)
        db_session.commit()

        assert services.recover_interrupted_jobs() == 1

        job = services.pull.get_job(stale.id)
        assert job.status == "failed"
        assert job.error.startswith("Interrupted")

        # a recovered job no longer blocks its system
        services.pull.start_pull(["sys-001"])

    def test_list_jobs(self, services, seeded):
        first = run_pull(services, ["sys-001"])
        second = run_pull(services, ["sys-404"])

        jobs = services.pull.list_jobs()
        assert {j.id for j in jobs} == {first.id, second.id}
        assert [j.id for j in services.pull.list_jobs(status="partial")] == [second.id]
