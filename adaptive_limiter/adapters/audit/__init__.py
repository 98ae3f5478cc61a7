"""Audit event sinks.

Every component that emits audit events takes a sink through its
constructor; nothing reaches for a process-wide audit logger.
"""

from adaptive_limiter.adapters.audit.base import (
    AuditCategory,
    AuditSeverity,
    AuditSink,
    NullAuditSink,
    safe_emit,
)
from adaptive_limiter.adapters.audit.logging_sink import LoggingAuditSink

__all__ = [
    "AuditCategory",
    "AuditSeverity",
    "AuditSink",
    "LoggingAuditSink",
    "NullAuditSink",
    "safe_emit",
]
