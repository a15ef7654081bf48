"""Client for the remote GRC system's paginated, rate-limited table API."""

from .client import ConnectionTestResult, SourceClient, parse_retry_after
from .errors import (
    AuthFailedError,
    ConnectionFailedError,
    ErrorKind,
    InvalidResponseError,
    NotFoundError,
    RateLimitedError,
    RecordRejectedError,
    RemoteConflictError,
    ServerError,
    SourceCancelledError,
    SourceError,
    SourceTimeoutError,
)
from .pagination import PaginatedResult, PaginationConfig, fetch_all_pages
from .records import ControlRecord, StatementRecord, SystemRecord, TableMapping

__all__ = [
    "AuthFailedError",
    "ConnectionFailedError",
    "ConnectionTestResult",
    "ControlRecord",
    "ErrorKind",
    "InvalidResponseError",
    "NotFoundError",
    "PaginatedResult",
    "PaginationConfig",
    "RateLimitedError",
    "RecordRejectedError",
    "RemoteConflictError",
    "ServerError",
    "SourceCancelledError",
    "SourceClient",
    "SourceError",
    "SourceTimeoutError",
    "StatementRecord",
    "SystemRecord",
    "TableMapping",
    "fetch_all_pages",
    "parse_retry_after",
]
