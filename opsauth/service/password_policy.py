from __future__ import annotations

from typing import List, Optional

from opsauth.config import Settings
from opsauth.schemas import PasswordValidation

# Matched as case-insensitive substrings
WEAK_PATTERNS: tuple[str, ...] = ("123456", "password", "qwerty", "abc123", "admin")


class PasswordPolicyValidator:
    """Stateless strength check driven by the password settings."""

    def __init__(self, settings: Settings) -> None:
        self.min_length = settings.password_min_length
        self.require_uppercase = settings.require_uppercase
        self.require_lowercase = settings.require_lowercase
        self.require_numbers = settings.require_numbers
        self.require_special_chars = settings.require_special_chars

    def validate(self, password: Optional[str]) -> PasswordValidation:
        if not password:
            return PasswordValidation(ok=False, violations=["Password is required"])

        violations: List[str] = []
        if len(password) < self.min_length:
            violations.append(
                f"Password must be at least {self.min_length} characters long"
            )
        if self.require_uppercase and not any(c.isupper() for c in password):
            violations.append("Password must contain at least one uppercase letter")
        if self.require_lowercase and not any(c.islower() for c in password):
            violations.append("Password must contain at least one lowercase letter")
        if self.require_numbers and not any(c.isdigit() for c in password):
            violations.append("Password must contain at least one number")
        if self.require_special_chars and all(c.isalnum() for c in password):
            violations.append("Password must contain at least one special character")

        lowered = password.lower()
        if any(pattern in lowered for pattern in WEAK_PATTERNS):
            violations.append("Password contains a common weak pattern")

        return PasswordValidation(ok=not violations, violations=violations)

    def describe(self) -> dict:
        return {
            "min_length": self.min_length,
            "require_uppercase": self.require_uppercase,
            "require_lowercase": self.require_lowercase,
            "require_numbers": self.require_numbers,
            "require_special_chars": self.require_special_chars,
        }
