"""Audit sink — structured, fire-and-forget records of trading activity.

Every record goes to the application log; when a repository is attached it
is also stored in ``audit_logs``.  Recording never raises.
"""

import logging
from enum import Enum
from typing import Optional

from scantrader.repos.audit_repo import AuditRepo

logger = logging.getLogger("scantrader.audit")


class AuditAction(str, Enum):
    SIGNAL_GENERATED = "SIGNAL_GENERATED"
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_FAILED = "ORDER_FAILED"
    ORDER_CLOSED = "ORDER_CLOSED"
    BRACKET_PLACED = "BRACKET_PLACED"
    BRACKET_FAILED = "BRACKET_FAILED"
    SCAN_STARTED = "SCAN_STARTED"
    SCAN_STOPPED = "SCAN_STOPPED"
    CYCLE_COMPLETE = "CYCLE_COMPLETE"
    SCAN_WARNING = "SCAN_WARNING"


class AuditLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"
    SYSTEM = "SYSTEM"


_LOG_LEVELS = {
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARN: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
    AuditLevel.SUCCESS: logging.INFO,
    AuditLevel.SYSTEM: logging.INFO,
}


class AuditLogger:
    """Audit sink used by the order gateway and the scheduler.

    Args:
        repo: Optional ``AuditRepo`` for durable storage.
    """

    def __init__(self, repo: Optional[AuditRepo] = None) -> None:
        self._repo = repo

    def record(
        self,
        action: AuditAction,
        level: AuditLevel = AuditLevel.INFO,
        details: Optional[dict] = None,
    ) -> None:
        details = details or {}
        logger.log(
            _LOG_LEVELS[level],
            "[%s] %s %s",
            level.value,
            action.value,
            " ".join(f"{k}={v}" for k, v in details.items()),
        )
        if self._repo is None:
            return
        try:
            self._repo.insert(action.value, level.value, details)
        except Exception as exc:
            logger.warning("Failed to store audit record %s: %s", action.value, exc)
