"""
Request/actor context shared by logging and the audit log.

The API middleware and the CLI bind who is acting and under which request id;
audit events and structlog lines both pick the values up from here. Job threads
receive a copy of the starting caller's context.
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import structlog

DEFAULT_ACTOR = "system"

_actor: contextvars.ContextVar[str] = contextvars.ContextVar("grc_sync_actor", default=DEFAULT_ACTOR)
_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("grc_sync_request_id", default=None)
_ip_address: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("grc_sync_ip_address", default=None)


@dataclass(frozen=True)
class RequestContext:
    actor: str
    request_id: Optional[str]
    ip_address: Optional[str]


def current_context() -> RequestContext:
    """Snapshot of the active actor/request context."""
    return RequestContext(
        actor=_actor.get(),
        request_id=_request_id.get(),
        ip_address=_ip_address.get(),
    )


@contextmanager
def request_context(
    actor: Optional[str] = None,
    request_id: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Iterator[RequestContext]:
    """Bind actor/request values for the duration of a block."""
    tokens = [
        (_actor, _actor.set(actor or DEFAULT_ACTOR)),
        (_request_id, _request_id.set(request_id)),
        (_ip_address, _ip_address.set(ip_address)),
    ]
    structlog.contextvars.bind_contextvars(actor=actor or DEFAULT_ACTOR, request_id=request_id)
    try:
        yield current_context()
    finally:
        structlog.contextvars.unbind_contextvars("actor", "request_id")
        for var, token in reversed(tokens):
            var.reset(token)
