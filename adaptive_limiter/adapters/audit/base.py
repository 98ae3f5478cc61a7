"""Audit sink interface and fire-and-forget emission helper."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class AuditCategory(str, Enum):
    SYSTEM = "system"
    SECURITY = "security"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class AuditSink(ABC):
    """Destination for audit events (rule changes, violations, cluster lifecycle)."""

    @abstractmethod
    def emit(
        self,
        category: AuditCategory,
        action: str,
        severity: AuditSeverity,
        context: Mapping[str, Any],
    ) -> None:
        raise NotImplementedError


class NullAuditSink(AuditSink):
    """Discards every event."""

    def emit(
        self,
        category: AuditCategory,
        action: str,
        severity: AuditSeverity,
        context: Mapping[str, Any],
    ) -> None:
        return None


def safe_emit(
    sink: AuditSink | None,
    category: AuditCategory,
    action: str,
    severity: AuditSeverity = AuditSeverity.INFO,
    context: Mapping[str, Any] | None = None,
) -> None:
    """Emit an audit event without letting sink failures escape.

    Audit emission is fire-and-forget: a broken sink must never abort or
    alter a rate limit decision, so failures are logged and dropped here.
    """

    if sink is None:
        return
    try:
        sink.emit(category, action, severity, dict(context or {}))
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "audit.emit_failed",
            extra={
                "audit_action": action,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
