"""
Database package for GRC Sync.
"""

from .audit_models import AuditEventModel, AuditImmutableError
from .base import Base, get_engine, get_session_local, init_database
from .models import ControlModel, PullJobModel, PushJobModel, StatementModel, SystemModel

__all__ = [
    "Base",
    "get_engine",
    "get_session_local",
    "init_database",
    "AuditEventModel",
    "AuditImmutableError",
    "ControlModel",
    "PullJobModel",
    "PushJobModel",
    "StatementModel",
    "SystemModel",
]
