from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    DISABLED = "disabled"


class SystemRole(str, Enum):
    """Predefined roles of the operator console."""

    ADMINISTRATOR = "Administrator"
    OPERATOR = "Operator"
    MAINTENANCE = "Maintenance"
    VIEWER = "Viewer"
    AUDITOR = "Auditor"


class AuthEventType(str, Enum):
    LOGIN_SUCCESS = "LoginSuccess"
    LOGIN_FAILED = "LoginFailed"
    LOGIN_BLOCKED = "LoginBlocked"
    LOGOUT = "Logout"
    PASSWORD_CHANGED = "PasswordChanged"
    PASSWORD_RESET = "PasswordReset"
    ACCOUNT_LOCKED = "AccountLocked"
    ACCOUNT_UNLOCKED = "AccountUnlocked"
    SESSION_EXPIRED = "SessionExpired"
    SESSION_REFRESHED = "SessionRefreshed"


@dataclass(frozen=True)
class Origin:
    """Where a request came from."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Role:
    name: str
    description: Optional[str] = None
    system_role: Optional[SystemRole] = None
    # resource -> allowed actions, e.g. {"plc": ["read", "write"]}
    permissions: Dict[str, List[str]] = field(default_factory=dict)

    def permission_strings(self) -> List[str]:
        return [
            f"{resource}:{action}"
            for resource, actions in self.permissions.items()
            for action in actions
        ]


@dataclass
class User:
    id: str
    username: str
    password_hash: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    is_directory_user: bool = False
    directory_dn: Optional[str] = None
    status: UserStatus = UserStatus.ACTIVE
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    must_change_password: bool = False
    roles: List[str] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    created_by: Optional[str] = None
    modified_at: Optional[datetime] = None
    modified_by: Optional[str] = None
    notes: Optional[str] = None

    def has_role(self, role_name: str) -> bool:
        wanted = role_name.lower()
        return any(r.lower() == wanted for r in self.roles)


@dataclass
class Session:
    id: str
    user_id: str
    access_token_id: str
    refresh_token_hash: str
    issued_at: datetime
    expires_at: datetime
    refresh_expires_at: datetime
    last_activity_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        access_token_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        refresh_ttl_minutes: int,
        origin: Optional[Origin] = None,
        remember_me: bool = False,
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
    ) -> "Session":
        issued = now or utcnow()
        if expires_at <= issued:
            raise ValueError("session expiry must be after issue time")
        origin = origin or Origin()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            access_token_id=access_token_id,
            refresh_token_hash=refresh_token_hash,
            issued_at=issued,
            expires_at=expires_at,
            refresh_expires_at=max(
                expires_at, issued + timedelta(minutes=refresh_ttl_minutes)
            ),
            last_activity_at=issued,
            ip_addr=origin.ip_addr,
            user_agent=origin.user_agent,
            remember_me=remember_me,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now


@dataclass(frozen=True)
class LoginAttempt:
    """Write-once record of an authentication event."""

    username: str
    success: bool
    event_type: AuthEventType
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    auth_method: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
