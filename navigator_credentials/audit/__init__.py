"""Audit Trail — Redacted, append-only log of sensitive actions."""

from .models import (
    AccessLevel,
    AuditAction,
    AuditFilters,
    AuditLogEntry,
    AuthContext,
    RequestMetadata,
    SENSITIVE_ENTITIES,
)
from .redactor import redact, collect_secrets
from .recorder import AuditRecorder, AuditDispatcher, classify
from .store import AuditStore
from .query import AuditQueryService, AuditPage, CSV_COLUMNS

__all__ = [
    "AccessLevel",
    "AuditAction",
    "AuditFilters",
    "AuditLogEntry",
    "AuthContext",
    "RequestMetadata",
    "SENSITIVE_ENTITIES",
    "redact",
    "collect_secrets",
    "AuditRecorder",
    "AuditDispatcher",
    "classify",
    "AuditStore",
    "AuditQueryService",
    "AuditPage",
    "CSV_COLUMNS",
]
