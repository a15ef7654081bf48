"""
Offset/limit pagination over remote table endpoints.

``fetch_all_pages`` is independent of record shape: raw rows go through an
optional ``transform`` and the caller receives a ``PaginatedResult`` of whatever
the transform returns.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Generic, List, Optional, TypeVar

import structlog

from .errors import InvalidResponseError, SourceCancelledError, SourceError

if TYPE_CHECKING:
    from .client import SourceClient

logger = structlog.get_logger()

T = TypeVar("T")

TOTAL_COUNT_HEADER = "X-Total-Count"

# (fetched_so_far, total_count) -> keep going?
ProgressCallback = Callable[[int, int], bool]


@dataclass
class PaginationConfig:
    """Paging and retry knobs for remote reads."""

    page_size: int = 100
    max_pages: int = 0  # 0 = unlimited
    retry_delay: float = 0.5
    max_retry_delay: float = 30.0
    rate_limit_delay: float = 60.0
    max_retries: int = 3
    max_rate_limit_waits: int = 5
    max_total_wait: float = 300.0  # seconds of sleeping allowed per call

    @classmethod
    def from_settings(cls, settings) -> "PaginationConfig":
        return cls(
            page_size=settings.source_page_size,
            retry_delay=settings.source_retry_delay_seconds,
            max_retry_delay=settings.source_max_retry_delay_seconds,
            rate_limit_delay=settings.source_rate_limit_delay_seconds,
            max_retries=settings.source_max_retries,
            max_rate_limit_waits=settings.source_max_rate_limit_waits,
            max_total_wait=settings.source_max_total_wait_seconds,
        )


@dataclass
class PaginatedResult(Generic[T]):
    records: List[T] = field(default_factory=list)
    total_count: int = 0
    pages_fetched: int = 0
    errors: List[Exception] = field(default_factory=list)


def _parse_total(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def fetch_all_pages(
    client: "SourceClient",
    table: str,
    query: Optional[Dict[str, str]] = None,
    config: Optional[PaginationConfig] = None,
    on_progress: Optional[ProgressCallback] = None,
    transform: Optional[Callable[[Dict[str, Any]], T]] = None,
    cancel: Optional[threading.Event] = None,
) -> PaginatedResult[T]:
    """Fetch every page of a table query.

    Stops when a page comes back short, when the running count reaches the
    server-reported total, after ``max_pages``, or when ``on_progress`` returns
    False (the partial result is returned without error).

    Rows the transform rejects with ``InvalidResponseError`` are skipped and
    recorded in ``errors``. Any other failure raises a ``SourceError`` whose
    ``partial`` holds the records fetched so far.
    """
    config = config or client.pagination
    result: PaginatedResult[T] = PaginatedResult()
    offset = 0
    fetched_raw = 0

    while True:
        if cancel is not None and cancel.is_set():
            raise SourceCancelledError(partial=result)

        if config.max_pages and result.pages_fetched >= config.max_pages:
            break

        params = dict(query or {})
        params["sysparm_offset"] = str(offset)
        params["sysparm_limit"] = str(config.page_size)

        try:
            response = client.request(
                "GET",
                client.table_path(table),
                params=params,
                config=config,
                cancel=cancel,
            )
            client.raise_for_read_status(response)
            rows = client.parse_result(response)
            if not isinstance(rows, list):
                raise InvalidResponseError("Expected a list under 'result'", response.status_code)
        except SourceError as e:
            e.partial = result
            result.errors.append(e)
            logger.warning(
                "page_fetch_failed",
                table=table,
                offset=offset,
                pages_fetched=result.pages_fetched,
                error_kind=e.kind.value,
                error=e.message,
            )
            raise

        total = _parse_total(response.headers.get(TOTAL_COUNT_HEADER))
        if total is not None:
            result.total_count = total

        for raw in rows:
            if transform is None:
                result.records.append(raw)
                continue
            try:
                result.records.append(transform(raw))
            except InvalidResponseError as e:
                result.errors.append(e)
                logger.warning("record_transform_failed", table=table, error=e.message)

        fetched_raw += len(rows)
        result.pages_fetched += 1

        if on_progress is not None and not on_progress(fetched_raw, result.total_count):
            logger.info("pagination_stopped_by_caller", table=table, fetched=fetched_raw)
            return result

        if len(rows) < config.page_size:
            break
        if result.total_count and fetched_raw >= result.total_count:
            break

        offset += config.page_size

    if not result.total_count:
        result.total_count = fetched_raw

    logger.debug(
        "pagination_complete",
        table=table,
        pages=result.pages_fetched,
        records=len(result.records),
        total=result.total_count,
    )
    return result
