"""
Synchronization engine: pull, conflict detection and push orchestration.

``build_services`` wires the orchestrators around one job runner, one audit
service and a remote client factory; the API and the CLI share it.
"""

from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import sessionmaker

from ..config import Settings, get_settings
from ..db.audit_service import AuditService
from ..db.base import get_session_local
from ..source import SourceClient
from .conflicts import ConflictCheckResult, ConflictDetector, Resolution
from .jobs import JobRunner
from .pull import PullOrchestrator
from .push import PushItemResult, PushOrchestrator


@dataclass
class SyncServices:
    settings: Settings
    session_factory: sessionmaker
    client_factory: Callable[[], SourceClient]
    audit: AuditService
    runner: JobRunner
    pull: PullOrchestrator
    push: PushOrchestrator
    conflicts: ConflictDetector

    def recover_interrupted_jobs(self) -> int:
        return self.pull.recover_interrupted_jobs() + self.push.recover_interrupted_jobs()

    def shutdown(self, wait: bool = True) -> None:
        self.runner.shutdown(cancel_running=True, wait=wait)
        self.audit.shutdown()


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    client_factory: Optional[Callable[[], SourceClient]] = None,
    transport: Optional[httpx.BaseTransport] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> SyncServices:
    """Assemble the sync services from settings.

    ``transport`` and ``sleep`` are passed to every SourceClient the default
    factory builds; tests use them to simulate the remote without real waits.
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_local()
    if client_factory is None:

        def client_factory() -> SourceClient:
            return SourceClient.from_settings(settings, transport=transport, sleep=sleep)

    audit = AuditService.from_settings(session_factory, settings)
    runner = JobRunner(max_workers=settings.max_concurrent_jobs)
    conflicts = ConflictDetector(session_factory, client_factory, audit)
    pull = PullOrchestrator(
        session_factory,
        client_factory,
        audit,
        runner,
        progress_flush_every=settings.pull_progress_flush_every,
        fetch_concurrency=settings.pull_fetch_concurrency,
    )
    push = PushOrchestrator(
        session_factory,
        client_factory,
        audit,
        runner,
        conflicts,
        concurrency=settings.push_concurrency,
        item_timeout=settings.push_item_timeout_seconds,
    )
    return SyncServices(
        settings=settings,
        session_factory=session_factory,
        client_factory=client_factory,
        audit=audit,
        runner=runner,
        pull=pull,
        push=push,
        conflicts=conflicts,
    )


__all__ = [
    "ConflictCheckResult",
    "ConflictDetector",
    "JobRunner",
    "PullOrchestrator",
    "PushItemResult",
    "PushOrchestrator",
    "Resolution",
    "SyncServices",
    "build_services",
]
