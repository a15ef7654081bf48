"""
Tests for the grc-sync command line.

Commands build their services through ``build_services``; it is patched to hand
back the test services so jobs run against the fake remote.
"""

import csv

import pytest
from typer.testing import CliRunner

from grc_sync import cli

from conftest import audit_events, edit_statement, load_statement, ts

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_services(monkeypatch, services):
    monkeypatch.setattr(cli, "build_services", lambda *args, **kwargs: services)
    monkeypatch.setattr(cli, "init_database", lambda *args, **kwargs: None)
    return services


def test_pull(services, seeded):
    result = runner.invoke(cli.app, ["pull", "sys-001", "--actor", "erin"])

    assert result.exit_code == 0, result.output
    assert "Completed" in result.output
    pulls = audit_events(services, event_type="pull")
    assert {e.actor for e in pulls} == {"erin"}


def test_pull_requires_ids():
    result = runner.invoke(cli.app, ["pull"])

    assert result.exit_code != 0


def test_push(services, pulled):
    edit_statement(services, pulled["stm-3"], "Accounts are provisioned through Okta.")

    result = runner.invoke(cli.app, ["push", pulled["stm-3"]])

    assert result.exit_code == 0, result.output
    assert "succeeded=1" in result.output
    assert load_statement(services, pulled["stm-3"]).sync_status == "synced"


def test_push_unmodified_fails(pulled):
    result = runner.invoke(cli.app, ["push", pulled["stm-2"]])

    assert result.exit_code == 1
    assert "no local changes" in result.output


def test_conflicts(services, pulled):
    result = runner.invoke(cli.app, ["conflicts", pulled["stm-1"]])

    assert result.exit_code == 0, result.output
    assert "Conflict check" in result.output


def test_audit_export(services, pulled, tmp_path):
    output = tmp_path / "audit.csv"

    result = runner.invoke(cli.app, ["audit", "export", "--output", str(output), "--event-type", "pull"])

    assert result.exit_code == 0, result.output
    with output.open(newline="") as f:
        rows = list(csv.reader(f))
    assert rows[0][0] == "Event ID"
    assert len(rows) == 3


def test_statements_lists_modified(services, pulled):
    edit_statement(services, pulled["stm-3"], "Accounts are provisioned through Okta.")

    result = runner.invoke(cli.app, ["statements"])

    assert result.exit_code == 0, result.output
    assert "Modified statements (1)" in result.output


def test_statements_lists_conflicts(services, seeded, pulled):
    edit_statement(services, pulled["stm-1"], "Reviewed every six months.")
    seeded.touch_statement("stm-1", "Reviewed quarterly.", ts(30))
    services.conflicts.check([pulled["stm-1"]])

    result = runner.invoke(cli.app, ["statements", "--conflicts"])

    assert result.exit_code == 0, result.output
    assert "Conflicted statements (1)" in result.output


def test_show(services, pulled):
    edit_statement(services, pulled["stm-2"], "Shared on the wiki.")

    result = runner.invoke(cli.app, ["show", pulled["stm-2"]])

    assert result.exit_code == 0, result.output
    assert "Procedures are disseminated to staff." in result.output
    assert "Shared on the wiki." in result.output


def test_show_unknown_statement():
    result = runner.invoke(cli.app, ["show", "missing"])

    assert result.exit_code == 1
    assert "not found" in result.output.lower()


def test_revert(services, pulled):
    edit_statement(services, pulled["stm-2"], "Shared on the wiki.")

    result = runner.invoke(cli.app, ["revert", pulled["stm-2"], "--actor", "erin"])

    assert result.exit_code == 0, result.output
    statement = load_statement(services, pulled["stm-2"])
    assert statement.is_modified is False
    assert statement.sync_status == "synced"
    [event] = audit_events(services, action="revert_statement")
    assert event.actor == "erin"
