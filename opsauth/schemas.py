from __future__ import annotations

import re
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from opsauth.service.errors import ErrorCode
from opsauth.storage.models import AuthEventType, UserStatus

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9._@-]+$")


def _validate_username(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("username is required")
    if not USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, digits and . _ @ -")
    return value


class PasswordValidation(BaseModel):
    ok: bool
    violations: List[str] = Field(default_factory=list)


class UserProfile(BaseModel):
    """What an authenticated caller learns about itself."""

    id: str
    username: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    must_change_password: bool = False
    is_directory_user: bool = False
    last_login_at: Optional[datetime] = None


class LoginResult(BaseModel):
    """Outcome of ``login`` and ``refresh_token``.

    Failure payloads carry only ``success``, ``message`` and ``error_code``
    unless the failure kind needs more (lockout minutes, the occupying user
    of a single-session role).
    """

    success: bool
    message: str
    error_code: Optional[ErrorCode] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    session_id: Optional[str] = None
    must_change_password: Optional[bool] = None
    user: Optional[UserProfile] = None
    lockout_minutes_remaining: Optional[int] = None
    remaining_attempts: Optional[int] = None
    occupying_user: Optional[str] = None


class OperationResult(BaseModel):
    success: bool
    message: str
    error_code: Optional[ErrorCode] = None
    count: Optional[int] = None


class TokenValidationResult(BaseModel):
    valid: bool
    error_code: Optional[ErrorCode] = None
    session_id: Optional[str] = None
    user: Optional[UserProfile] = None


class ChangePasswordResult(BaseModel):
    success: bool
    message: str
    error_code: Optional[ErrorCode] = None
    violations: List[str] = Field(default_factory=list)


class UserSummary(BaseModel):
    id: str
    username: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    status: UserStatus
    roles: List[str] = Field(default_factory=list)
    is_directory_user: bool = False
    directory_dn: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    must_change_password: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime
    created_by: Optional[str] = None
    modified_at: Optional[datetime] = None
    modified_by: Optional[str] = None
    notes: Optional[str] = None


class UserResult(BaseModel):
    success: bool
    message: str
    error_code: Optional[ErrorCode] = None
    user: Optional[UserSummary] = None
    violations: List[str] = Field(default_factory=list)


class SessionInfo(BaseModel):
    id: str
    user_id: str
    username: Optional[str] = None
    issued_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    is_active: bool
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None


class LoginAttemptInfo(BaseModel):
    username: str
    success: bool
    event_type: AuthEventType
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    auth_method: Optional[str] = None
    timestamp: datetime


class CreateUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., max_length=64)
    password: Optional[str] = Field(default=None, max_length=256)
    full_name: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = Field(default=None, max_length=254)
    roles: List[str] = Field(default_factory=list)
    is_directory_user: bool = False
    directory_dn: Optional[str] = Field(default=None, max_length=512)
    notes: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)


class UpdateUserRequest(BaseModel):
    """Partial update; ``None`` leaves a field untouched and ``roles`` replaces."""

    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = Field(default=None, max_length=254)
    roles: Optional[List[str]] = None
    status: Optional[UserStatus] = None
    is_directory_user: Optional[bool] = None
    directory_dn: Optional[str] = Field(default=None, max_length=512)
    must_change_password: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=1024)


class SessionConfig(BaseModel):
    session_timeout_minutes: int
    inactivity_timeout_minutes: int
    max_concurrent_sessions: int
    single_session_roles: List[str]
    single_session_behavior: str
    track_last_activity: bool
    remember_me_days: int


class AuthSystemStatus(BaseModel):
    users_total: int
    users_active: int
    users_locked: int
    users_disabled: int
    active_sessions: int
    directory_auth_enabled: bool
    directory_configured: bool
    fallback_to_local: bool
    password_policy: Dict[str, object]
    session_config: SessionConfig


class SweepResult(BaseModel):
    success: bool = True
    message: str = ""
    error_code: Optional[ErrorCode] = None
    idle_sessions_revoked: int = 0
    expired_sessions_revoked: int = 0
    accounts_unlocked: int = 0
    sessions_purged: int = 0
    attempts_purged: int = 0


class UsersResult(BaseModel):
    success: bool
    message: str = ""
    error_code: Optional[ErrorCode] = None
    users: List[UserSummary] = Field(default_factory=list)


class SessionsResult(BaseModel):
    success: bool
    message: str = ""
    error_code: Optional[ErrorCode] = None
    sessions: List[SessionInfo] = Field(default_factory=list)


class LoginAttemptsResult(BaseModel):
    success: bool
    message: str = ""
    error_code: Optional[ErrorCode] = None
    attempts: List[LoginAttemptInfo] = Field(default_factory=list)
