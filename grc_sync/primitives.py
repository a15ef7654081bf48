"""
Small shared helpers: identifiers and UTC time handling.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ulid import ULID

REMOTE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def generate_ulid() -> str:
    """Generate a ULID string (sortable by creation time)."""
    return str(ULID())


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_remote_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """Parse a remote updated-on value.

    The remote table API reports ``YYYY-MM-DD HH:MM:SS`` in UTC; ISO-8601 values
    are accepted as well. Unparseable values yield ``None``.
    """
    if not raw:
        return None
    raw = raw.strip()
    try:
        return datetime.strptime(raw, REMOTE_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    try:
        return ensure_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        return None


def format_remote_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime the way the remote table API reports it."""
    value = ensure_utc(value)
    if value is None:
        return None
    return value.strftime(REMOTE_TIMESTAMP_FORMAT)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 rendering that tolerates None."""
    return value.isoformat() if value else None
