"""
Client for the remote GRC system's table API.

Wraps an ``httpx.Client`` with retry and rate-limit handling. Transient failures
(5xx, connection errors) back off exponentially; 429 responses wait for
``Retry-After`` (or the configured delay) and resume the same request. Every wait
is bounded by ``max_total_wait`` and observes the caller's cancel event.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog

from ..primitives import utc_now
from .errors import (
    ConnectionFailedError,
    InvalidResponseError,
    RateLimitedError,
    ServerError,
    SourceCancelledError,
    SourceError,
    SourceTimeoutError,
    read_error_for_status,
    write_error_for_status,
)
from .pagination import PaginatedResult, PaginationConfig, ProgressCallback, fetch_all_pages
from .records import (
    ControlRecord,
    StatementRecord,
    SystemRecord,
    TableMapping,
    control_from_raw,
    statement_from_raw,
    system_from_raw,
)

logger = structlog.get_logger()

TABLE_API_PREFIX = "/api/now/table"


@dataclass
class ConnectionTestResult:
    success: bool
    instance_url: str
    version: Optional[str] = None
    build_tag: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    response_time_ms: int = 0
    tested_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "instance_url": self.instance_url,
            "version": self.version,
            "build_tag": self.build_tag,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "response_time_ms": self.response_time_ms,
            "tested_at": self.tested_at.isoformat(),
        }


def parse_retry_after(value: Optional[str], default: float) -> float:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return default
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when is None:
        return default
    return max((when - utc_now()).total_seconds(), 0.0)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message") or "")
    return ""


class SourceClient:
    """Synchronous client for the remote table API.

    Args:
        instance_url: Base URL of the remote instance
        username / password: Basic auth credentials
        timeout: Per-request timeout in seconds
        pagination: Paging and retry knobs
        mapping: Remote table and field names
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        sleep: Replaces ``time.sleep`` for backoff waits
    """

    def __init__(
        self,
        instance_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        pagination: Optional[PaginationConfig] = None,
        mapping: Optional[TableMapping] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not instance_url:
            raise ValueError("instance_url is required")
        self.instance_url = instance_url.rstrip("/")
        self.pagination = pagination or PaginationConfig()
        self.mapping = mapping or TableMapping()
        self._sleep = sleep
        self._clock = clock
        self.http = httpx.Client(
            base_url=self.instance_url,
            auth=(username, password or "") if username else None,
            timeout=timeout,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> "SourceClient":
        if not settings.source_instance_url:
            raise ValueError("SOURCE_INSTANCE_URL is not configured")
        return cls(
            settings.source_instance_url,
            username=settings.source_username,
            password=settings.source_password,
            timeout=settings.source_timeout_seconds,
            pagination=PaginationConfig.from_settings(settings),
            mapping=TableMapping.from_settings(settings),
            transport=transport,
            sleep=sleep,
        )

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> "SourceClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def deadline_after(self, seconds: Optional[float]) -> Optional[float]:
        """A ``deadline`` value for ``request`` that expires in ``seconds``."""
        if not seconds:
            return None
        return self._clock() + seconds

    @staticmethod
    def table_path(table: str, sys_id: Optional[str] = None) -> str:
        path = f"{TABLE_API_PREFIX}/{table}"
        return f"{path}/{sys_id}" if sys_id else path

    # Request execution

    def _wait(
        self,
        seconds: float,
        waited: float,
        config: PaginationConfig,
        cancel: Optional[threading.Event],
        deadline: Optional[float],
        exhausted: SourceError,
    ) -> float:
        """Sleep before a retry; returns the new cumulative wait."""
        if cancel is not None and cancel.is_set():
            raise SourceCancelledError()
        if waited + seconds > config.max_total_wait:
            logger.warning("retry_wait_ceiling_reached", waited=waited, next_wait=seconds)
            raise exhausted
        if deadline is not None and self._clock() + seconds > deadline:
            raise SourceTimeoutError("Per-call timeout would expire during retry wait")

        if self._sleep is None and cancel is not None:
            if cancel.wait(seconds):
                raise SourceCancelledError()
        else:
            (self._sleep or time.sleep)(seconds)
            if cancel is not None and cancel.is_set():
                raise SourceCancelledError()
        return waited + seconds

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        config: Optional[PaginationConfig] = None,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Returns the first response that is neither a 429 nor a 5xx; status
        interpretation is left to the caller. ``deadline`` is a value of the
        client clock after which the call gives up with ``SourceTimeoutError``.
        """
        config = config or self.pagination
        delay = config.retry_delay
        attempts = 0
        rate_limit_waits = 0
        waited = 0.0

        while True:
            if cancel is not None and cancel.is_set():
                raise SourceCancelledError()

            timeout: Any = httpx.USE_CLIENT_DEFAULT
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise SourceTimeoutError("Per-call timeout expired")
                timeout = min(remaining, self.http.timeout.read or remaining)

            try:
                response = self.http.request(method, path, params=params, json=json, timeout=timeout)
            except httpx.TimeoutException as e:
                raise SourceTimeoutError(f"Request timed out: {e}") from e
            except httpx.TransportError as e:
                last_error: SourceError = ConnectionFailedError(f"Connection failed: {e}")
            else:
                if response.status_code == 429:
                    if rate_limit_waits >= config.max_rate_limit_waits:
                        raise RateLimitedError("Rate limit exceeded; wait budget exhausted", 429)
                    wait = parse_retry_after(response.headers.get("Retry-After"), config.rate_limit_delay)
                    rate_limit_waits += 1
                    logger.info("rate_limited", path=path, wait_seconds=wait, waits=rate_limit_waits)
                    waited = self._wait(
                        wait,
                        waited,
                        config,
                        cancel,
                        deadline,
                        RateLimitedError("Rate limit exceeded; wait ceiling reached", 429),
                    )
                    continue
                if response.status_code < 500:
                    return response
                last_error = ServerError(f"Server error (status {response.status_code})", response.status_code)

            if attempts >= config.max_retries:
                logger.warning(
                    "request_retries_exhausted",
                    method=method,
                    path=path,
                    attempts=attempts + 1,
                    error=last_error.message,
                )
                raise last_error

            attempts += 1
            logger.debug("request_retry", path=path, attempt=attempts, delay=delay, error=last_error.message)
            waited = self._wait(delay, waited, config, cancel, deadline, last_error)
            delay = min(delay * 2, config.max_retry_delay)

    @staticmethod
    def raise_for_read_status(response: httpx.Response) -> None:
        if response.status_code != 200:
            raise read_error_for_status(response.status_code, _error_detail(response))

    @staticmethod
    def parse_result(response: httpx.Response) -> Any:
        """Unwrap the ``{"result": ...}`` envelope."""
        try:
            body = response.json()
        except ValueError as e:
            raise InvalidResponseError(f"Malformed JSON body: {e}", response.status_code) from e
        if not isinstance(body, dict) or "result" not in body:
            raise InvalidResponseError("Response has no 'result' envelope", response.status_code)
        return body["result"]

    # Single records

    def get_record(
        self,
        table: str,
        sys_id: str,
        fields: Optional[List[str]] = None,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> Dict[str, Any]:
        params = {"sysparm_fields": ",".join(fields)} if fields else None
        response = self.request(
            "GET", self.table_path(table, sys_id), params=params, cancel=cancel, deadline=deadline
        )
        self.raise_for_read_status(response)
        record = self.parse_result(response)
        if not isinstance(record, dict):
            raise InvalidResponseError("Expected a record object under 'result'", response.status_code)
        return record

    def update_record(
        self,
        table: str,
        sys_id: str,
        fields: Dict[str, Any],
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> Dict[str, Any]:
        """PATCH one record; returns the updated record.

        404 raises NotFoundError, 409 RemoteConflictError, other refusals
        (including 5xx after retries) RecordRejectedError.
        """
        try:
            response = self.request(
                "PATCH", self.table_path(table, sys_id), json=fields, cancel=cancel, deadline=deadline
            )
        except ServerError as e:
            raise write_error_for_status(e.status_code or 500, e.message) from e

        if response.status_code not in (200, 201):
            raise write_error_for_status(response.status_code, _error_detail(response))

        try:
            record = self.parse_result(response)
        except InvalidResponseError:
            # Some instances answer 200 with an empty body
            return {}
        return record if isinstance(record, dict) else {}

    def test_connection(self) -> ConnectionTestResult:
        """Probe reachability and credentials; never raises for remote failures."""
        started = self._clock()
        result = ConnectionTestResult(success=False, instance_url=self.instance_url)
        params = {
            "sysparm_query": "name=glide.product.version^ORname=glide.buildtag",
            "sysparm_fields": "name,value",
            "sysparm_limit": "10",
        }
        try:
            response = self.request("GET", self.table_path("sys_properties"), params=params)
            self.raise_for_read_status(response)
            properties = self.parse_result(response)
        except SourceError as e:
            result.error_kind = e.kind.value
            result.error_message = e.message
        else:
            result.success = True
            for prop in properties if isinstance(properties, list) else []:
                if prop.get("name") == "glide.product.version":
                    result.version = prop.get("value")
                elif prop.get("name") == "glide.buildtag":
                    result.build_tag = prop.get("value")
        result.response_time_ms = int((self._clock() - started) * 1000)
        logger.info(
            "connection_tested",
            instance_url=self.instance_url,
            success=result.success,
            error_kind=result.error_kind,
            response_time_ms=result.response_time_ms,
        )
        return result

    # Typed fetchers

    def fetch_systems(
        self,
        external_ids: List[str],
        config: Optional[PaginationConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PaginatedResult[SystemRecord]:
        query = {"sysparm_query": f"sys_idIN{','.join(external_ids)}^ORDERBYsys_id"}
        return fetch_all_pages(
            self,
            self.mapping.systems_table,
            query,
            config=config,
            on_progress=on_progress,
            transform=system_from_raw,
            cancel=cancel,
        )

    def fetch_controls(
        self,
        system_external_id: str,
        config: Optional[PaginationConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PaginatedResult[ControlRecord]:
        query = {"sysparm_query": f"{self.mapping.control_system_field}={system_external_id}^ORDERBYsys_id"}
        return fetch_all_pages(
            self,
            self.mapping.controls_table,
            query,
            config=config,
            on_progress=on_progress,
            transform=control_from_raw,
            cancel=cancel,
        )

    def fetch_statements(
        self,
        control_external_id: str,
        config: Optional[PaginationConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PaginatedResult[StatementRecord]:
        content_field = self.mapping.statement_content_field
        query = {
            "sysparm_query": f"{self.mapping.statement_control_field}={control_external_id}^ORDERBYsys_id"
        }
        return fetch_all_pages(
            self,
            self.mapping.statements_table,
            query,
            config=config,
            on_progress=on_progress,
            transform=lambda raw: statement_from_raw(raw, content_field),
            cancel=cancel,
        )
