"""Audit sink that writes events to the dedicated audit logger.

The JSON formatter configured in ``core.logging`` turns these into
machine-readable records, so shipping audit events is a log pipeline
concern rather than something the limiter handles itself.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from adaptive_limiter.adapters.audit.base import AuditCategory, AuditSeverity, AuditSink
from adaptive_limiter.core.logging import AUDIT_LOGGER_NAME

_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARNING: logging.WARNING,
    AuditSeverity.ERROR: logging.ERROR,
}


class LoggingAuditSink(AuditSink):
    """Emit audit events as structured log records."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def emit(
        self,
        category: AuditCategory,
        action: str,
        severity: AuditSeverity,
        context: Mapping[str, Any],
    ) -> None:
        self._logger.log(
            _LEVELS.get(severity, logging.INFO),
            action,
            extra={
                "audit_category": category.value,
                "audit_severity": severity.value,
                "audit_context": dict(context),
            },
        )
