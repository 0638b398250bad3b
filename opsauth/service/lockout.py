from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from opsauth.storage.models import User, UserStatus


@dataclass(frozen=True)
class LockCheck:
    blocked: bool
    minutes_remaining: int = 0
    # True when an elapsed lock was cleared by this check
    unlocked: bool = False


class AccountLockoutTracker:
    """Failed-attempt counter and time-boxed lock for one account at a time.

    Methods mutate the ``User`` they are handed; the caller persists it while
    still holding that user's lock.
    """

    def __init__(self, max_login_attempts: int, lockout_minutes: int) -> None:
        self.max_login_attempts = max_login_attempts
        self.lockout = timedelta(minutes=lockout_minutes)

    def check(self, user: User, now: datetime) -> LockCheck:
        if user.status != UserStatus.LOCKED:
            return LockCheck(blocked=False)
        if user.locked_until is not None and user.locked_until > now:
            seconds = (user.locked_until - now).total_seconds()
            return LockCheck(blocked=True, minutes_remaining=max(1, math.ceil(seconds / 60)))
        self.unlock(user)
        return LockCheck(blocked=False, unlocked=True)

    def record_failure(self, user: User, now: datetime) -> bool:
        """Count one failure; returns True when this failure locked the account."""

        user.failed_login_attempts += 1
        user.last_failed_login_at = now
        if (
            user.status == UserStatus.ACTIVE
            and user.failed_login_attempts >= self.max_login_attempts
        ):
            user.status = UserStatus.LOCKED
            user.locked_until = now + self.lockout
            return True
        return False

    def record_success(self, user: User) -> None:
        self.unlock(user)

    def unlock(self, user: User) -> None:
        user.failed_login_attempts = 0
        user.locked_until = None
        if user.status == UserStatus.LOCKED:
            user.status = UserStatus.ACTIVE

    def remaining_attempts(self, user: User) -> int:
        return max(0, self.max_login_attempts - user.failed_login_attempts)

    def lock_expired(self, user: User, now: datetime) -> bool:
        return (
            user.status == UserStatus.LOCKED
            and (user.locked_until is None or user.locked_until <= now)
        )
