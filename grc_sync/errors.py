"""
Sync domain errors.

Raised by the store services and orchestrators; the API maps them to HTTP status
codes through ``http_status`` and returns ``to_dict()`` as the response detail.
"""

from typing import Any, Dict, List, Optional


class SyncError(Exception):
    """Base class for sync domain errors."""

    code = "SYNC_ERROR"
    http_status = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "code": self.http_status,
            "message": self.message,
        }


class InvalidInputError(SyncError):
    code = "INVALID_INPUT"
    http_status = 422


class JobNotFoundError(SyncError):
    code = "JOB_NOT_FOUND"
    http_status = 404

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobAlreadyFinishedError(SyncError):
    code = "JOB_ALREADY_FINISHED"
    http_status = 409

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} already finished with status {status}")


class ConcurrentJobError(SyncError):
    """A job for the same scope is already pending or running."""

    code = "JOB_ALREADY_ACTIVE"
    http_status = 409

    def __init__(self, scope: str, active_job_id: Optional[str] = None):
        self.scope = scope
        self.active_job_id = active_job_id
        message = f"A job is already active for {scope}"
        if active_job_id:
            message += f" (job {active_job_id})"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["active_job_id"] = self.active_job_id
        return data


class StatementNotFoundError(SyncError):
    code = "STATEMENT_NOT_FOUND"
    http_status = 404

    def __init__(self, statement_id: str):
        self.statement_id = statement_id
        super().__init__(f"Statement {statement_id} not found")


class StatementNotModifiedError(SyncError):
    code = "STATEMENT_NOT_MODIFIED"
    http_status = 422

    def __init__(self, statement_ids: List[str]):
        self.statement_ids = statement_ids
        super().__init__(f"Statements have no local changes to push: {', '.join(statement_ids)}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["statement_ids"] = self.statement_ids
        return data


class StatementHasConflictError(SyncError):
    code = "STATEMENT_HAS_CONFLICT"
    http_status = 409

    def __init__(self, statement_ids: List[str]):
        self.statement_ids = statement_ids
        super().__init__(f"Statements must be resolved before push: {', '.join(statement_ids)}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["statement_ids"] = self.statement_ids
        return data


class NoConflictToResolveError(SyncError):
    code = "NO_CONFLICT"
    http_status = 409

    def __init__(self, statement_id: str):
        self.statement_id = statement_id
        super().__init__(f"Statement {statement_id} is not in conflict")


class ConcurrentModificationError(SyncError):
    """A compare-and-set write kept losing to other writers."""

    code = "CONCURRENT_MODIFICATION"
    http_status = 409

    def __init__(self, statement_id: str):
        self.statement_id = statement_id
        super().__init__(f"Statement {statement_id} changed concurrently; retry the operation")
