"""
Background job execution.

Jobs run on a bounded thread pool, decoupled from the request that started them.
Each job gets its own ``threading.Event``; the orchestrators check it at their
cancellation points and the remote client waits on it instead of sleeping.
"""

import contextvars
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger()

JobBody = Callable[[threading.Event], None]


class JobRunner:
    """Thread pool plus a cancellation registry keyed by job id."""

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="grc-sync-job")
        self._lock = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}

    def submit(self, job_id: str, body: JobBody) -> Future:
        """Run ``body(cancel_event)`` in the background under the caller's context."""
        cancel = threading.Event()
        ctx = contextvars.copy_context()
        with self._lock:
            self._cancel_events[job_id] = cancel
            future = self._executor.submit(ctx.run, self._run, job_id, body, cancel)
            self._futures[job_id] = future
        return future

    def _run(self, job_id: str, body: JobBody, cancel: threading.Event) -> None:
        logger.debug("job_thread_started", job_id=job_id)
        try:
            body(cancel)
        except Exception:
            logger.exception("job_thread_crashed", job_id=job_id)
            raise
        finally:
            with self._lock:
                self._cancel_events.pop(job_id, None)
                self._futures.pop(job_id, None)

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancel_events

    def cancel(self, job_id: str) -> bool:
        """Signal a running job. Returns False if this runner does not own it."""
        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info("job_cancel_requested", job_id=job_id)
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> None:
        """Block until the job's thread finishes. Re-raises an unexpected crash.

        Returns at once for jobs that already finished or that this runner does
        not own.
        """
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)

    def shutdown(self, cancel_running: bool = True, wait: bool = True) -> None:
        if cancel_running:
            with self._lock:
                events = list(self._cancel_events.values())
            for event in events:
                event.set()
        self._executor.shutdown(wait=wait)
