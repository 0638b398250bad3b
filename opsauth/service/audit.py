from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from opsauth.logging import get_logger
from opsauth.storage.models import Origin, utcnow

logger = get_logger(__name__)


class AuditCategory(str, Enum):
    AUTHENTICATION = "Authentication"
    SESSION = "Session"
    USER_MANAGEMENT = "UserManagement"
    SECURITY = "Security"


class AuditResult(str, Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"
    WARNING = "Warning"
    ERROR = "Error"


@dataclass(frozen=True)
class AuditRecord:
    category: AuditCategory
    action: str
    result: AuditResult
    details: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    origin: Optional[Origin] = None
    timestamp: datetime = field(default_factory=utcnow)


class AuditSink(Protocol):
    async def record(
        self,
        category: AuditCategory,
        action: str,
        result: AuditResult,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
        origin: Optional[Origin] = None,
    ) -> None: ...


class MemoryAuditSink:
    """Append-only in-process trail, mostly for tests and local runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[AuditRecord] = []

    async def record(
        self,
        category: AuditCategory,
        action: str,
        result: AuditResult,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
        origin: Optional[Origin] = None,
    ) -> None:
        entry = AuditRecord(
            category=category,
            action=action,
            result=result,
            details=dict(details or {}),
            user_id=user_id,
            user_name=user_name,
            origin=origin,
        )
        with self._lock:
            self._records.append(entry)

    @property
    def records(self) -> List[AuditRecord]:
        with self._lock:
            return list(self._records)

    def find(self, action: str, result: Optional[AuditResult] = None) -> List[AuditRecord]:
        return [
            r
            for r in self.records
            if r.action == action and (result is None or r.result == result)
        ]


class LoggingAuditSink:
    """Writes every audit record as one structured log line."""

    def __init__(self, logger_name: str = "opsauth.audit") -> None:
        self.logger = get_logger(logger_name)

    async def record(
        self,
        category: AuditCategory,
        action: str,
        result: AuditResult,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
        origin: Optional[Origin] = None,
    ) -> None:
        log = self.logger.warning if result != AuditResult.SUCCESS else self.logger.info
        log(
            "audit_event",
            category=category.value,
            action=action,
            result=result.value,
            details=details or {},
            user_id=user_id,
            user_name=user_name,
            ip_addr=origin.ip_addr if origin else None,
            user_agent=origin.user_agent if origin else None,
        )
