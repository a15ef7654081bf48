"""
Errors raised by the remote source client.

Callers branch on ``kind`` (or the subclass), never on raw status codes.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    AUTH_FAILED = "auth_failed"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    INVALID_RESPONSE = "invalid_response"
    CONNECTION_FAILED = "connection_failed"
    TIMEOUT = "timeout"
    # single-record writes only
    CONFLICT = "conflict"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TRANSIENT_KINDS = frozenset({ErrorKind.SERVER_ERROR, ErrorKind.CONNECTION_FAILED, ErrorKind.RATE_LIMITED})


class SourceError(Exception):
    """Base class for remote source failures.

    ``partial`` carries whatever a paginated fetch collected before failing.
    """

    kind = ErrorKind.SERVER_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        partial: Optional[Any] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.partial = partial
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind.value,
            "status_code": self.status_code,
            "message": self.message,
        }


class AuthFailedError(SourceError):
    kind = ErrorKind.AUTH_FAILED


class NotFoundError(SourceError):
    kind = ErrorKind.NOT_FOUND


class RateLimitedError(SourceError):
    kind = ErrorKind.RATE_LIMITED


class ServerError(SourceError):
    kind = ErrorKind.SERVER_ERROR


class InvalidResponseError(SourceError):
    kind = ErrorKind.INVALID_RESPONSE


class ConnectionFailedError(SourceError):
    kind = ErrorKind.CONNECTION_FAILED


class SourceTimeoutError(SourceError):
    kind = ErrorKind.TIMEOUT


class RemoteConflictError(SourceError):
    """The remote observed a conflicting change (409)."""

    kind = ErrorKind.CONFLICT


class RecordRejectedError(SourceError):
    """The remote refused a write for a reason other than 404 or 409."""

    kind = ErrorKind.REJECTED


class SourceCancelledError(SourceError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Operation cancelled", partial: Optional[Any] = None):
        super().__init__(message, partial=partial)


def read_error_for_status(status_code: int, detail: str = "") -> SourceError:
    """Map a failed read response to its error kind."""
    suffix = f": {detail}" if detail else ""
    if status_code == 401:
        return AuthFailedError(f"Authentication failed{suffix}", status_code)
    if status_code == 403:
        return AuthFailedError(f"Access forbidden{suffix}", status_code)
    if status_code == 404:
        return NotFoundError(f"Resource not found{suffix}", status_code)
    if status_code == 429:
        return RateLimitedError(f"Rate limit exceeded{suffix}", status_code)
    if status_code in (408, 504):
        return SourceTimeoutError(f"Remote timed out (status {status_code}){suffix}", status_code)
    if status_code >= 500:
        return ServerError(f"Server error (status {status_code}){suffix}", status_code)
    return InvalidResponseError(f"Unexpected status {status_code}{suffix}", status_code)


def write_error_for_status(status_code: int, detail: str = "") -> SourceError:
    """Map a failed single-record write response to its error kind."""
    suffix = f": {detail}" if detail else ""
    if status_code in (401, 403):
        return AuthFailedError(f"Not authorized to update record{suffix}", status_code)
    if status_code == 404:
        return NotFoundError(f"Remote record no longer exists{suffix}", status_code)
    if status_code == 409:
        return RemoteConflictError(f"Remote reported a conflicting change{suffix}", status_code)
    if status_code == 429:
        return RateLimitedError(f"Rate limit exceeded{suffix}", status_code)
    return RecordRejectedError(f"Remote rejected the update (status {status_code}){suffix}", status_code)
