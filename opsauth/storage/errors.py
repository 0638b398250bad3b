from __future__ import annotations

from typing import Any, Dict, Optional

# What went wrong with the named field
MISSING = "missing"
DUPLICATE = "duplicate"
UNKNOWN = "unknown"
IN_USE = "in_use"


class ConstraintViolation(Exception):
    """A store write would break a uniqueness or reference rule.

    ``field`` is one of ``username``, ``role``, ``user_id``, ``session_id`` or
    ``refresh_token``; ``reason`` is one of the module constants above.
    """

    def __init__(self, field: str, reason: str, value: Optional[Any] = None):
        self.field = field
        self.reason = reason
        self.value = value
        super().__init__(self.message)

    @property
    def message(self) -> str:
        noun = self.field.replace("_id", "").replace("_", " ")
        if self.reason == MISSING:
            return f"{noun} is required"
        if self.reason == DUPLICATE:
            return f"{noun} already exists"
        if self.reason == IN_USE:
            return f"{noun} still owns active sessions"
        return f"{noun} does not exist"

    @property
    def detail(self) -> Dict[str, Any]:
        return {"field": self.field, "reason": self.reason, "value": self.value}


__all__ = ["ConstraintViolation", "DUPLICATE", "IN_USE", "MISSING", "UNKNOWN"]
