"""
Tests for fetch_all_pages and the typed fetchers built on it.
"""

import threading

import httpx
import pytest

from grc_sync.source import (
    AuthFailedError,
    InvalidResponseError,
    PaginationConfig,
    SourceCancelledError,
    SourceClient,
    fetch_all_pages,
)
from grc_sync.source.records import statement_from_raw

from conftest import INSTANCE_URL, FakeRemote, error_response, json_response, ts

TABLE = "sn_compliance_policy_statement"


def make_rows(count, control="ctl-1"):
    return [
        {
            "sys_id": f"stm-{i:04d}",
            "control": {"value": control},
            "description": f"Statement {i}",
            "sys_updated_on": "2026-01-05 09:00:00",
        }
        for i in range(count)
    ]


class PagedHandler:
    """Serves ``rows`` in offset/limit pages; optionally fails one offset."""

    def __init__(self, rows, report_total=True, fail_at_offset=None, fail_with=None):
        self.rows = rows
        self.report_total = report_total
        self.fail_at_offset = fail_at_offset
        self.fail_with = fail_with
        self.offsets = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["sysparm_offset"])
        limit = int(request.url.params["sysparm_limit"])
        self.offsets.append(offset)
        if offset == self.fail_at_offset:
            return self.fail_with
        headers = {"X-Total-Count": str(len(self.rows))} if self.report_total else {}
        return json_response(200, {"result": self.rows[offset : offset + limit]}, headers=headers)


def make_client(handler, sleeps, **config) -> SourceClient:
    return SourceClient(
        INSTANCE_URL,
        pagination=PaginationConfig(**config),
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
    )


class TestFetchAllPages:
    """Paging, early stop and partial results."""

    def test_fetches_every_page(self, sleeps):
        handler = PagedHandler(make_rows(250))
        client = make_client(handler, sleeps, page_size=100)

        result = fetch_all_pages(client, TABLE)

        assert len(result.records) == 250
        assert result.total_count == 250
        assert result.pages_fetched == 3
        assert handler.offsets == [0, 100, 200]
        assert result.errors == []

    def test_stops_when_total_reached(self, sleeps):
        handler = PagedHandler(make_rows(200))
        client = make_client(handler, sleeps, page_size=100)

        result = fetch_all_pages(client, TABLE)

        assert len(result.records) == 200
        # no empty trailing page when the total says we are done
        assert handler.offsets == [0, 100]

    def test_short_page_ends_without_total(self, sleeps):
        handler = PagedHandler(make_rows(130), report_total=False)
        client = make_client(handler, sleeps, page_size=50)

        result = fetch_all_pages(client, TABLE)

        assert len(result.records) == 130
        assert result.total_count == 130
        assert handler.offsets == [0, 50, 100]

    def test_max_pages(self, sleeps):
        handler = PagedHandler(make_rows(500))
        client = make_client(handler, sleeps, page_size=100, max_pages=2)

        result = fetch_all_pages(client, TABLE)

        assert len(result.records) == 200
        assert result.total_count == 500

    def test_progress_callback_can_stop(self, sleeps):
        handler = PagedHandler(make_rows(250))
        client = make_client(handler, sleeps, page_size=100)
        seen = []

        def on_progress(fetched, total):
            seen.append((fetched, total))
            return False

        result = fetch_all_pages(client, TABLE, on_progress=on_progress)

        assert seen == [(100, 250)]
        assert len(result.records) == 100
        assert handler.offsets == [0]

    def test_query_params_are_forwarded(self, sleeps):
        handler = PagedHandler(make_rows(3))
        captured = []

        def capture(request):
            captured.append(request)
            return handler(request)

        client = make_client(capture, sleeps, page_size=100)
        fetch_all_pages(client, TABLE, query={"sysparm_query": "control=ctl-1^ORDERBYsys_id"})

        params = captured[0].url.params
        assert params["sysparm_query"] == "control=ctl-1^ORDERBYsys_id"
        assert params["sysparm_offset"] == "0"
        assert params["sysparm_limit"] == "100"

    def test_failure_carries_partial_result(self, sleeps):
        handler = PagedHandler(make_rows(250), fail_at_offset=100, fail_with=error_response(401))
        client = make_client(handler, sleeps, page_size=100)

        with pytest.raises(AuthFailedError) as exc_info:
            fetch_all_pages(client, TABLE)

        partial = exc_info.value.partial
        assert len(partial.records) == 100
        assert partial.pages_fetched == 1

    def test_non_list_result(self, sleeps):
        client = make_client(lambda request: json_response(200, {"result": {"sys_id": "x"}}), sleeps)

        with pytest.raises(InvalidResponseError):
            fetch_all_pages(client, TABLE)

    def test_rejected_rows_are_skipped(self, sleeps):
        rows = make_rows(3)
        rows[1] = {"description": "no id"}
        client = make_client(PagedHandler(rows), sleeps, page_size=100)

        result = fetch_all_pages(client, TABLE, transform=statement_from_raw)

        assert [r.external_id for r in result.records] == ["stm-0000", "stm-0002"]
        assert len(result.errors) == 1
        assert isinstance(result.errors[0], InvalidResponseError)

    def test_cancel_between_pages(self, sleeps):
        cancel = threading.Event()
        handler = PagedHandler(make_rows(250))

        def cancel_after_first(fetched, total):
            cancel.set()
            return True

        client = make_client(handler, sleeps, page_size=100)

        with pytest.raises(SourceCancelledError) as exc_info:
            fetch_all_pages(client, TABLE, on_progress=cancel_after_first, cancel=cancel)

        assert len(exc_info.value.partial.records) == 100
        assert handler.offsets == [0]


class TestTypedFetchers:
    """fetch_systems / fetch_controls / fetch_statements against the fake remote."""

    @pytest.fixture
    def client(self, remote: FakeRemote, sleeps):
        remote.add_system("sys-001", "Payroll Platform")
        remote.add_system("sys-002", "Data Lake")
        remote.add_control("sys-001", "ctl-ac1", "AC-1", updated=ts(5))
        remote.add_control("sys-002", "ctl-sc7", "SC-7")
        remote.add_statement("ctl-ac1", "stm-1", "Policy text", updated=ts(10))
        remote.add_statement("ctl-ac1", "stm-2", "Undated text", updated=None)
        remote.add_statement("ctl-sc7", "stm-3", "Boundary text")
        return SourceClient(INSTANCE_URL, transport=httpx.MockTransport(remote.handle), sleep=sleeps.append)

    def test_fetch_systems_by_id(self, client):
        result = client.fetch_systems(["sys-001"])

        assert [s.external_id for s in result.records] == ["sys-001"]
        system = result.records[0]
        assert system.name == "Payroll Platform"
        assert system.owner == "Ada Admin"

    def test_fetch_controls_for_system(self, client):
        result = client.fetch_controls("sys-001")

        assert len(result.records) == 1
        control = result.records[0]
        assert control.control_id == "AC-1"
        assert control.family == "AC"
        assert control.updated_at == ts(5)

    def test_fetch_statements_for_control(self, client):
        result = client.fetch_statements("ctl-ac1")

        by_id = {s.external_id: s for s in result.records}
        assert set(by_id) == {"stm-1", "stm-2"}
        assert by_id["stm-1"].content == "Policy text"
        assert by_id["stm-1"].updated_at == ts(10)
        assert by_id["stm-2"].updated_at is None
