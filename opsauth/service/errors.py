from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable codes carried by failed result models.

    Domain failures are returned, not raised; these codes are what callers
    branch on.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DISABLED = "account_disabled"
    POLICY_VIOLATION = "policy_violation"
    SESSION_CONFLICT = "session_conflict"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    LAST_ADMINISTRATOR_PROTECTED = "last_administrator_protected"
    INTERNAL_ERROR = "internal_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION_ERROR = "validation_error"
    FORBIDDEN = "forbidden"


class ServiceError(Exception):
    """Base class for collaborator faults raised inside the service layer.

    These never leave ``AuthService``; the facade converts them to result
    models (or to ``internal_error`` when nothing more specific applies).
    """

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[ErrorCode] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class DirectoryUnavailableError(ServiceError):
    """Directory service could not be reached or answered garbage."""
