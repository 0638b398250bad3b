from __future__ import annotations

import asyncio
import functools
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple

from opsauth.config import Settings
from opsauth.logging import auth_call_context, bind_subject, get_logger
from opsauth.schemas import (
    AuthSystemStatus,
    ChangePasswordResult,
    CreateUserRequest,
    LoginAttemptInfo,
    LoginAttemptsResult,
    LoginResult,
    OperationResult,
    PasswordValidation,
    SessionConfig,
    SessionInfo,
    SessionsResult,
    SweepResult,
    TokenValidationResult,
    UpdateUserRequest,
    UserProfile,
    UserResult,
    UsersResult,
    UserSummary,
)
from opsauth.service.audit import (
    AuditCategory,
    AuditRecord,
    AuditResult,
    AuditSink,
    LoggingAuditSink,
)
from opsauth.service.auth_store import AuthStore
from opsauth.service.credentials import PasswordHashing, Verification, select_verifier
from opsauth.service.directory import DirectoryAuthenticator
from opsauth.service.errors import ErrorCode
from opsauth.service.lockout import AccountLockoutTracker
from opsauth.service.locks import KeyedLock
from opsauth.service.password_policy import PasswordPolicyValidator
from opsauth.service.policy import REASON_EVICTED, SessionPolicyEngine
from opsauth.service.tokens import TokenIssuer, TokenStatus, hash_refresh_token
from opsauth.storage.errors import DUPLICATE, ConstraintViolation
from opsauth.storage.models import (
    AuthEventType,
    LoginAttempt,
    Origin,
    Session,
    SystemRole,
    User,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid username or password"
INTERNAL_ERROR_MESSAGE = "An internal error occurred"
ADMIN_GUARD_KEY = "guard:administrators"

_Pending = List[AuditRecord]


def _facade_boundary(failure: Callable[[], Any]):
    """Turn any unexpected fault inside a facade operation into ``failure()``.

    The fault is logged with its traceback and audited as an Error; callers
    never see exception text.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self: "AuthService", *args, **kwargs):
            with auth_call_context():
                try:
                    return await func(self, *args, **kwargs)
                except Exception as exc:
                    self.logger.exception(
                        "auth_operation_failed",
                        operation=func.__name__,
                        error_type=type(exc).__name__,
                    )
                    await self._audit(
                        AuditRecord(
                            category=AuditCategory.SECURITY,
                            action=func.__name__,
                            result=AuditResult.ERROR,
                            details={"error_type": type(exc).__name__},
                        )
                    )
                    return failure()

        return wrapper

    return decorator


def _login_failure() -> LoginResult:
    return LoginResult(
        success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
    )


def _operation_failure() -> OperationResult:
    return OperationResult(
        success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
    )


class AuthService:
    """Public authentication and session-control operations.

    Domain outcomes come back as result models. Read-check-write sequences on
    a user run under ``KeyedLock`` keys (``user:<id>``, ``role:<name>``) and
    never await while a key is held; audit records gathered inside a held
    section are emitted once the keys are released.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        audit: Optional[AuditSink] = None,
        directory: Optional[DirectoryAuthenticator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        hashing: Optional[PasswordHashing] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit or LoggingAuditSink()
        self.directory = directory
        self._clock = clock or utcnow
        self.hashing = hashing or PasswordHashing()
        self.password_policy = PasswordPolicyValidator(settings)
        self.lockout = AccountLockoutTracker(
            settings.max_login_attempts, settings.lockout_minutes
        )
        self.tokens = TokenIssuer(
            settings.signing_key,
            settings.token_issuer,
            settings.token_audience,
            clock=self._now,
        )
        self.policy = SessionPolicyEngine(settings, store)
        self.locks = KeyedLock()
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # -- helpers -------------------------------------------------------------

    async def _audit(self, record: AuditRecord) -> None:
        try:
            await self.audit.record(
                record.category,
                record.action,
                record.result,
                record.details,
                user_id=record.user_id,
                user_name=record.user_name,
                origin=record.origin,
            )
        except Exception as exc:
            # The operation already happened; losing the record must not undo it
            self.logger.error(
                "audit_record_failed",
                action=record.action,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _flush(self, pending: _Pending) -> None:
        for record in pending:
            await self._audit(record)

    def _record_attempt(
        self,
        username: str,
        success: bool,
        event_type: AuthEventType,
        origin: Optional[Origin],
        *,
        failure_reason: Optional[str] = None,
        auth_method: Optional[str] = None,
    ) -> None:
        origin = origin or Origin()
        self.store.record_login_attempt(
            LoginAttempt(
                username=username,
                success=success,
                event_type=event_type,
                ip_addr=origin.ip_addr,
                user_agent=origin.user_agent,
                failure_reason=failure_reason,
                auth_method=auth_method,
                timestamp=self._now(),
            )
        )

    def _permissions(self, roles: List[str]) -> List[str]:
        perms: List[str] = []
        for name in roles:
            role = self.store.get_role(name)
            if not role:
                continue
            for perm in role.permission_strings():
                if perm not in perms:
                    perms.append(perm)
        return perms

    def _profile(self, user: User) -> UserProfile:
        return UserProfile(
            id=user.id,
            username=user.username,
            full_name=user.full_name,
            email=user.email,
            roles=list(user.roles),
            permissions=self._permissions(user.roles),
            must_change_password=user.must_change_password,
            is_directory_user=user.is_directory_user,
            last_login_at=user.last_login_at,
        )

    @staticmethod
    def _summary(user: User) -> UserSummary:
        return UserSummary(
            id=user.id,
            username=user.username,
            full_name=user.full_name,
            email=user.email,
            status=user.status,
            roles=list(user.roles),
            is_directory_user=user.is_directory_user,
            directory_dn=user.directory_dn,
            failed_login_attempts=user.failed_login_attempts,
            locked_until=user.locked_until,
            must_change_password=user.must_change_password,
            last_login_at=user.last_login_at,
            last_login_ip=user.last_login_ip,
            password_changed_at=user.password_changed_at,
            created_at=user.created_at,
            created_by=user.created_by,
            modified_at=user.modified_at,
            modified_by=user.modified_by,
            notes=user.notes,
        )

    def _session_info(self, session: Session, now: datetime) -> SessionInfo:
        owner = self.store.get_user(session.user_id)
        return SessionInfo(
            id=session.id,
            user_id=session.user_id,
            username=owner.username if owner else None,
            issued_at=session.issued_at,
            expires_at=session.expires_at,
            last_activity_at=session.last_activity_at,
            ip_addr=session.ip_addr,
            user_agent=session.user_agent,
            remember_me=session.remember_me,
            is_active=session.is_active(now),
            revoked_at=session.revoked_at,
            revoked_reason=session.revoked_reason,
        )

    def _lock_account(
        self,
        user: User,
        name: str,
        method: str,
        origin: Optional[Origin],
        pending: _Pending,
    ) -> LoginResult:
        """Report the failure that crossed the threshold as a lockout only."""

        self._record_attempt(
            name,
            False,
            AuthEventType.ACCOUNT_LOCKED,
            origin,
            failure_reason=f"{user.failed_login_attempts} failed attempts",
            auth_method=method,
        )
        pending.append(
            AuditRecord(
                category=AuditCategory.SECURITY,
                action="AccountLocked",
                result=AuditResult.WARNING,
                details={
                    "failed_attempts": user.failed_login_attempts,
                    "locked_until": user.locked_until.isoformat(),
                },
                user_id=user.id,
                user_name=user.username,
                origin=origin,
            )
        )
        self.logger.warning(
            "account_locked",
            user_id=user.id,
            locked_until=user.locked_until.isoformat(),
        )
        return self._locked(self.settings.lockout_minutes)

    def _invalid_credentials(self, remaining: Optional[int]) -> LoginResult:
        return LoginResult(
            success=False,
            message=INVALID_CREDENTIALS_MESSAGE,
            error_code=ErrorCode.INVALID_CREDENTIALS,
            remaining_attempts=remaining if self.settings.reveal_remaining_attempts else None,
        )

    @staticmethod
    def _locked(minutes: int) -> LoginResult:
        return LoginResult(
            success=False,
            message=f"Account is locked. Try again in {minutes} minute(s)",
            error_code=ErrorCode.ACCOUNT_LOCKED,
            lockout_minutes_remaining=minutes,
        )

    @staticmethod
    def _disabled() -> LoginResult:
        return LoginResult(
            success=False,
            message="Account is disabled. Contact an administrator",
            error_code=ErrorCode.ACCOUNT_DISABLED,
        )

    def _session_expiry(self, now: datetime, remember_me: bool) -> datetime:
        if remember_me:
            return now + timedelta(days=self.settings.remember_me_days)
        return now + timedelta(minutes=self.settings.session_timeout_minutes)

    def _open_session(
        self, user: User, now: datetime, *, remember_me: bool, origin: Optional[Origin]
    ) -> LoginResult:
        """Create the session row and mint its token pair; caller holds the user key."""

        expires_at = self._session_expiry(now, remember_me)
        session_id = str(uuid.uuid4())
        issued = self.tokens.issue(user, session_id=session_id, expires_at=expires_at)
        session = Session.new(
            user.id,
            access_token_id=issued.token_id,
            refresh_token_hash=issued.refresh_token_hash,
            expires_at=expires_at,
            refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
            origin=origin,
            remember_me=remember_me,
            now=now,
            session_id=session_id,
        )
        self.store.add_session(session)
        return LoginResult(
            success=True,
            message="Login successful",
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            token_type="Bearer",
            expires_at=expires_at,
            session_id=session_id,
            must_change_password=user.must_change_password,
            user=self._profile(user),
        )

    def _eviction_records(self, admission, new_user: User, origin: Optional[Origin]) -> _Pending:
        return [
            AuditRecord(
                category=AuditCategory.SESSION,
                action="SessionEvicted",
                result=AuditResult.WARNING,
                details={
                    "session_id": ev.session_id,
                    "role": ev.role,
                    "reason": ev.reason,
                    "evicted_by": new_user.username,
                },
                user_id=ev.user_id,
                user_name=ev.username,
                origin=origin,
            )
            for ev in admission.evictions
            if ev.reason == REASON_EVICTED
        ]

    def _holds_admin_role(self, roles: List[str]) -> bool:
        for name in roles:
            role = self.store.get_role(name)
            if role and role.system_role == SystemRole.ADMINISTRATOR:
                return True
        return False

    def _is_last_administrator(self, user: User) -> bool:
        if not self._holds_admin_role(user.roles):
            return False
        others = [
            u
            for u in self.store.users_with_system_role(SystemRole.ADMINISTRATOR)
            if u.id != user.id and u.status != UserStatus.DISABLED
        ]
        return not others

    # -- login ---------------------------------------------------------------

    @_facade_boundary(_login_failure)
    async def login(
        self,
        username: str,
        password: str,
        remember_me: bool = False,
        origin: Optional[Origin] = None,
    ) -> LoginResult:
        origin = origin or Origin()
        name = (username or "").strip()
        user = self.store.get_user_by_username(name) if name else None
        if user is None:
            return await self._reject_unknown_user(name, password, origin)
        bind_subject(user_id=user.id)

        # Lock and disabled checks never reach the verifier
        pending: _Pending = []
        with self.locks.hold(f"user:{user.id}"):
            user = self.store.get_user(user.id)
            early = self._pre_verification(user, name, origin, pending) if user else None
        await self._flush(pending)
        if user is None:
            return await self._reject_unknown_user(name, password, origin)
        if early is not None:
            return early

        verifier = select_verifier(user, self.settings, self.hashing, self.directory)
        verification = await verifier.verify(user, password or "")

        pending = []
        while True:
            keys = self.policy.lock_keys(user)
            with self.locks.hold(*keys):
                current = self.store.get_user(user.id)
                if current is not None and self.policy.lock_keys(current) != keys:
                    # Roles changed while verifying; take the right role keys
                    user = current
                    continue
                result = self._complete_login(
                    current, name, verification, remember_me, origin, pending
                )
            break
        await self._flush(pending)
        return result

    async def _reject_unknown_user(
        self, name: str, password: Optional[str], origin: Origin
    ) -> LoginResult:
        await asyncio.to_thread(self.hashing.dummy_verify, password)
        self._record_attempt(
            name, False, AuthEventType.LOGIN_FAILED, origin, failure_reason="unknown user"
        )
        await self._audit(
            AuditRecord(
                category=AuditCategory.AUTHENTICATION,
                action="Login",
                result=AuditResult.FAILURE,
                details={"reason": "unknown_user"},
                user_name=name,
                origin=origin,
            )
        )
        self.logger.info("login_failed", username=name, reason="unknown_user")
        return self._invalid_credentials(None)

    def _pre_verification(
        self, user: User, name: str, origin: Origin, pending: _Pending
    ) -> Optional[LoginResult]:
        now = self._now()
        check = self.lockout.check(user, now)
        if check.unlocked:
            self.store.save_user(user)
            self.logger.info("account_lock_expired", user_id=user.id)
        if check.blocked:
            self._record_attempt(
                name,
                False,
                AuthEventType.LOGIN_BLOCKED,
                origin,
                failure_reason="account locked",
            )
            pending.append(
                AuditRecord(
                    category=AuditCategory.AUTHENTICATION,
                    action="Login",
                    result=AuditResult.FAILURE,
                    details={
                        "reason": "account_locked",
                        "minutes_remaining": check.minutes_remaining,
                    },
                    user_id=user.id,
                    user_name=user.username,
                    origin=origin,
                )
            )
            self.logger.info("login_blocked_locked", user_id=user.id)
            return self._locked(check.minutes_remaining)
        if user.status == UserStatus.DISABLED:
            return self._disabled_attempt(user, name, origin, pending)
        return None

    def _disabled_attempt(
        self, user: User, name: str, origin: Origin, pending: _Pending
    ) -> LoginResult:
        self._record_attempt(
            name, False, AuthEventType.LOGIN_BLOCKED, origin, failure_reason="account disabled"
        )
        pending.append(
            AuditRecord(
                category=AuditCategory.AUTHENTICATION,
                action="Login",
                result=AuditResult.FAILURE,
                details={"reason": "account_disabled"},
                user_id=user.id,
                user_name=user.username,
                origin=origin,
            )
        )
        self.logger.info("login_blocked_disabled", user_id=user.id)
        return self._disabled()

    def _complete_login(
        self,
        user: Optional[User],
        name: str,
        verification: Verification,
        remember_me: bool,
        origin: Origin,
        pending: _Pending,
    ) -> LoginResult:
        """Apply the verification outcome; runs with the user and role keys held."""

        now = self._now()
        method = verification.method.value
        if user is None:
            self._record_attempt(
                name, False, AuthEventType.LOGIN_FAILED, origin, failure_reason="unknown user"
            )
            pending.append(
                AuditRecord(
                    category=AuditCategory.AUTHENTICATION,
                    action="Login",
                    result=AuditResult.FAILURE,
                    details={"reason": "unknown_user"},
                    user_name=name,
                    origin=origin,
                )
            )
            return self._invalid_credentials(None)
        if user.status == UserStatus.DISABLED:
            return self._disabled_attempt(user, name, origin, pending)

        check = self.lockout.check(user, now)
        if check.blocked:
            # Locked by a concurrent attempt while this one was verifying
            self._record_attempt(
                name,
                False,
                AuthEventType.LOGIN_BLOCKED,
                origin,
                failure_reason="account locked",
                auth_method=method,
            )
            pending.append(
                AuditRecord(
                    category=AuditCategory.AUTHENTICATION,
                    action="Login",
                    result=AuditResult.FAILURE,
                    details={
                        "reason": "account_locked",
                        "minutes_remaining": check.minutes_remaining,
                    },
                    user_id=user.id,
                    user_name=user.username,
                    origin=origin,
                )
            )
            return self._locked(check.minutes_remaining)

        if not verification.matched:
            locked_now = self.lockout.record_failure(user, now)
            self.store.save_user(user)
            if locked_now:
                return self._lock_account(user, name, method, origin, pending)
            self._record_attempt(
                name,
                False,
                AuthEventType.LOGIN_FAILED,
                origin,
                failure_reason="invalid password",
                auth_method=method,
            )
            pending.append(
                AuditRecord(
                    category=AuditCategory.AUTHENTICATION,
                    action="Login",
                    result=AuditResult.FAILURE,
                    details={
                        "reason": "invalid_credentials",
                        "auth_method": method,
                        "failed_attempts": user.failed_login_attempts,
                    },
                    user_id=user.id,
                    user_name=user.username,
                    origin=origin,
                )
            )
            self.logger.info(
                "login_failed",
                user_id=user.id,
                reason="invalid_credentials",
                failed_attempts=user.failed_login_attempts,
            )
            return self._invalid_credentials(self.lockout.remaining_attempts(user))

        self.lockout.record_success(user)
        admission = self.policy.admit(user, now)
        if not admission.admitted:
            self.store.save_user(user)
            reason = f"role {admission.conflict_role} already in use by {admission.occupying_user}"
            self._record_attempt(
                name,
                False,
                AuthEventType.LOGIN_BLOCKED,
                origin,
                failure_reason=reason,
                auth_method=method,
            )
            pending.append(
                AuditRecord(
                    category=AuditCategory.AUTHENTICATION,
                    action="Login",
                    result=AuditResult.FAILURE,
                    details={
                        "reason": "session_conflict",
                        "role": admission.conflict_role,
                        "occupying_user": admission.occupying_user,
                    },
                    user_id=user.id,
                    user_name=user.username,
                    origin=origin,
                )
            )
            return LoginResult(
                success=False,
                message=(
                    f"A {admission.conflict_role} session is already active "
                    f"({admission.occupying_user}). Only one session per role is allowed"
                ),
                error_code=ErrorCode.SESSION_CONFLICT,
                occupying_user=admission.occupying_user,
            )

        user.last_login_at = now
        user.last_login_ip = origin.ip_addr
        self.store.save_user(user)
        result = self._open_session(user, now, remember_me=remember_me, origin=origin)
        pending.extend(self._eviction_records(admission, user, origin))
        self._record_attempt(
            name, True, AuthEventType.LOGIN_SUCCESS, origin, auth_method=method
        )
        pending.append(
            AuditRecord(
                category=AuditCategory.AUTHENTICATION,
                action="Login",
                result=AuditResult.SUCCESS,
                details={
                    "auth_method": method,
                    "session_id": result.session_id,
                    "remember_me": remember_me,
                },
                user_id=user.id,
                user_name=user.username,
                origin=origin,
            )
        )
        self.logger.info(
            "login_succeeded", user_id=user.id, session_id=result.session_id, auth_method=method
        )
        return result

    # -- sessions ------------------------------------------------------------

    @_facade_boundary(_operation_failure)
    async def logout(self, access_token: str) -> OperationResult:
        check = self.tokens.validate_signature(access_token, verify_exp=False)
        if not check.ok:
            await self._audit(
                AuditRecord(
                    category=AuditCategory.SESSION,
                    action="Logout",
                    result=AuditResult.FAILURE,
                    details={"reason": "token_invalid"},
                )
            )
            return OperationResult(
                success=False, message="Invalid token", error_code=ErrorCode.TOKEN_INVALID
            )
        payload = check.payload
        bind_subject(user_id=payload["sub"], session_id=payload["sid"])
        session = self.store.get_session(payload["sid"])
        if session is not None and (
            session.access_token_id != payload["jti"] or session.user_id != payload["sub"]
        ):
            await self._audit(
                AuditRecord(
                    category=AuditCategory.SESSION,
                    action="Logout",
                    result=AuditResult.FAILURE,
                    details={"reason": "token_mismatch", "session_id": session.id},
                    user_id=payload["sub"],
                    user_name=payload.get("name"),
                )
            )
            return OperationResult(
                success=False, message="Invalid token", error_code=ErrorCode.TOKEN_INVALID
            )

        now = self._now()
        revoked = bool(session) and self.store.revoke_session(session.id, "logout", now)
        if revoked:
            self._record_attempt(
                payload.get("name") or payload["sub"],
                True,
                AuthEventType.LOGOUT,
                Origin(ip_addr=session.ip_addr, user_agent=session.user_agent),
            )
        await self._audit(
            AuditRecord(
                category=AuditCategory.SESSION,
                action="Logout",
                result=AuditResult.SUCCESS,
                details={"session_id": payload["sid"], "already_closed": not revoked},
                user_id=payload["sub"],
                user_name=payload.get("name"),
            )
        )
        self.logger.info("logout", user_id=payload["sub"], session_id=payload["sid"])
        message = "Logged out" if revoked else "Session already closed"
        return OperationResult(success=True, message=message)

    @_facade_boundary(_operation_failure)
    async def logout_all_sessions(
        self, user_id: str, reason: str = "logout all sessions", *, actor: Optional[str] = None
    ) -> OperationResult:
        bind_subject(user_id=user_id)
        user = self.store.get_user(user_id)
        if user is None:
            await self._audit(
                AuditRecord(
                    category=AuditCategory.SESSION,
                    action="LogoutAllSessions",
                    result=AuditResult.FAILURE,
                    details={"reason": "not_found", "target_user_id": user_id},
                    user_name=actor,
                )
            )
            return OperationResult(
                success=False, message="User not found", error_code=ErrorCode.NOT_FOUND
            )
        count = self.store.revoke_user_sessions(user.id, reason, self._now())
        await self._audit(
            AuditRecord(
                category=AuditCategory.SESSION,
                action="LogoutAllSessions",
                result=AuditResult.SUCCESS,
                details={"reason": reason, "count": count, "actor": actor},
                user_id=user.id,
                user_name=user.username,
            )
        )
        self.logger.info("logout_all_sessions", user_id=user.id, count=count)
        return OperationResult(success=True, message=f"{count} session(s) closed", count=count)

    @_facade_boundary(lambda: TokenValidationResult(valid=False, error_code=ErrorCode.INTERNAL_ERROR))
    async def validate_token(self, access_token: str) -> TokenValidationResult:
        check = self.tokens.validate_signature(access_token)
        if check.status == TokenStatus.EXPIRED:
            return TokenValidationResult(valid=False, error_code=ErrorCode.TOKEN_EXPIRED)
        if not check.ok:
            return TokenValidationResult(valid=False, error_code=ErrorCode.TOKEN_INVALID)

        payload = check.payload
        invalid = TokenValidationResult(valid=False, error_code=ErrorCode.TOKEN_INVALID)
        bind_subject(user_id=payload["sub"], session_id=payload["sid"])
        session = self.store.get_session(payload["sid"])
        if (
            session is None
            or session.access_token_id != payload["jti"]
            or session.user_id != payload["sub"]
            or session.is_revoked
        ):
            return invalid
        now = self._now()
        if session.expires_at <= now:
            return TokenValidationResult(valid=False, error_code=ErrorCode.TOKEN_EXPIRED)

        revoked = self.policy.check_activity(session, now)
        if revoked is not None:
            if revoked:
                await self._session_timed_out(session, payload.get("name"))
            return invalid

        user = self.store.get_user(session.user_id)
        if user is None or user.status == UserStatus.DISABLED:
            return invalid
        return TokenValidationResult(valid=True, session_id=session.id, user=self._profile(user))

    async def _session_timed_out(self, session: Session, username: Optional[str]) -> None:
        self._record_attempt(
            username or session.user_id,
            False,
            AuthEventType.SESSION_EXPIRED,
            Origin(ip_addr=session.ip_addr, user_agent=session.user_agent),
            failure_reason="inactivity",
        )
        await self._audit(
            AuditRecord(
                category=AuditCategory.SESSION,
                action="SessionExpired",
                result=AuditResult.WARNING,
                details={
                    "session_id": session.id,
                    "reason": "inactivity",
                    "inactivity_timeout_minutes": self.settings.inactivity_timeout_minutes,
                },
                user_id=session.user_id,
                user_name=username,
            )
        )
        self.logger.info("session_inactivity_timeout", session_id=session.id)

    @_facade_boundary(_login_failure)
    async def refresh_token(
        self, refresh_token: str, origin: Optional[Origin] = None
    ) -> LoginResult:
        invalid = LoginResult(
            success=False, message="Invalid refresh token", error_code=ErrorCode.TOKEN_INVALID
        )
        session = (
            self.store.get_session_by_refresh_hash(hash_refresh_token(refresh_token))
            if refresh_token
            else None
        )
        user = self.store.get_user(session.user_id) if session else None
        if session is not None:
            bind_subject(user_id=session.user_id, session_id=session.id)
        if session is None or user is None:
            await self._audit(
                AuditRecord(
                    category=AuditCategory.SESSION,
                    action="RefreshToken",
                    result=AuditResult.FAILURE,
                    details={"reason": "unknown_refresh_token"},
                    origin=origin,
                )
            )
            return invalid

        pending: _Pending = []
        while True:
            keys = self.policy.lock_keys(user)
            with self.locks.hold(*keys):
                current_user = self.store.get_user(user.id)
                if current_user is not None and self.policy.lock_keys(current_user) != keys:
                    user = current_user
                    continue
                result = self._rotate(session.id, current_user, origin, pending)
            break
        await self._flush(pending)
        return result

    def _rotate(
        self,
        session_id: str,
        user: Optional[User],
        origin: Optional[Origin],
        pending: _Pending,
    ) -> LoginResult:
        """Redeem one refresh token; runs with the user and role keys held."""

        now = self._now()
        session = self.store.get_session(session_id)

        def fail(reason: str, code: ErrorCode, message: str) -> LoginResult:
            pending.append(
                AuditRecord(
                    category=AuditCategory.SESSION,
                    action="RefreshToken",
                    result=AuditResult.FAILURE,
                    details={"reason": reason, "session_id": session_id},
                    user_id=user.id if user else None,
                    user_name=user.username if user else None,
                    origin=origin,
                )
            )
            self.logger.info("refresh_rejected", session_id=session_id, reason=reason)
            return LoginResult(success=False, message=message, error_code=code)

        if session is None or user is None or session.is_revoked:
            return fail("refresh_token_reused", ErrorCode.TOKEN_INVALID, "Invalid refresh token")
        if session.refresh_expires_at <= now:
            self.store.revoke_session(session.id, "refresh token expired", now)
            return fail("refresh_token_expired", ErrorCode.TOKEN_EXPIRED, "Refresh token expired")
        if self.policy.is_idle(session, now):
            self.store.revoke_session(session.id, "inactivity", now)
            return fail("inactivity", ErrorCode.TOKEN_INVALID, "Invalid refresh token")
        if user.status == UserStatus.DISABLED:
            self.store.revoke_session(session.id, "account disabled", now)
            return fail("account_disabled", ErrorCode.ACCOUNT_DISABLED, self._disabled().message)
        check = self.lockout.check(user, now)
        if check.unlocked:
            self.store.save_user(user)
        if check.blocked:
            return fail(
                "account_locked",
                ErrorCode.ACCOUNT_LOCKED,
                self._locked(check.minutes_remaining).message,
            )

        admission = self.policy.admit(user, now, replacing=session.id)
        if not admission.admitted:
            return fail(
                "session_conflict",
                ErrorCode.SESSION_CONFLICT,
                f"A {admission.conflict_role} session is already active ({admission.occupying_user})",
            )
        self.store.revoke_session(session.id, "token refreshed", now)
        origin = origin or Origin(ip_addr=session.ip_addr, user_agent=session.user_agent)
        result = self._open_session(user, now, remember_me=session.remember_me, origin=origin)
        result.message = "Token refreshed"
        pending.extend(self._eviction_records(admission, user, origin))
        self._record_attempt(user.username, True, AuthEventType.SESSION_REFRESHED, origin)
        pending.append(
            AuditRecord(
                category=AuditCategory.SESSION,
                action="RefreshToken",
                result=AuditResult.SUCCESS,
                details={"previous_session_id": session.id, "session_id": result.session_id},
                user_id=user.id,
                user_name=user.username,
                origin=origin,
            )
        )
        self.logger.info(
            "token_refreshed",
            user_id=user.id,
            previous_session_id=session.id,
            session_id=result.session_id,
        )
        return result

    # -- passwords -----------------------------------------------------------

    @_facade_boundary(
        lambda: PasswordValidation(ok=False, violations=[INTERNAL_ERROR_MESSAGE])
    )
    async def validate_password_policy(self, password: Optional[str]) -> PasswordValidation:
        return self.password_policy.validate(password)

    @_facade_boundary(
        lambda: ChangePasswordResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> ChangePasswordResult:
        user = self.store.get_user(user_id)
        bind_subject(user_id=user_id)

        async def fail(
            reason: str, code: ErrorCode, message: str, violations: Optional[List[str]] = None
        ) -> ChangePasswordResult:
            await self._audit(
                AuditRecord(
                    category=AuditCategory.SECURITY,
                    action="ChangePassword",
                    result=AuditResult.FAILURE,
                    details={"reason": reason},
                    user_id=user_id,
                    user_name=user.username if user else None,
                )
            )
            return ChangePasswordResult(
                success=False, message=message, error_code=code, violations=violations or []
            )

        if user is None:
            return await fail("not_found", ErrorCode.NOT_FOUND, "User not found")
        if user.is_directory_user and not (self.settings.fallback_to_local and user.password_hash):
            return await fail(
                "directory_account",
                ErrorCode.VALIDATION_ERROR,
                "Directory accounts change their password in the directory",
            )
        matched = await asyncio.to_thread(
            self.hashing.verify, user.password_hash, current_password
        )
        if not matched:
            return await fail(
                "invalid_current_password",
                ErrorCode.INVALID_CREDENTIALS,
                "Current password is incorrect",
            )
        if new_password != confirm_password:
            return await fail(
                "confirmation_mismatch",
                ErrorCode.VALIDATION_ERROR,
                "New password and confirmation do not match",
            )
        validation = self.password_policy.validate(new_password)
        if not validation.ok:
            return await fail(
                "policy_violation",
                ErrorCode.POLICY_VIOLATION,
                "Password does not meet the policy",
                validation.violations,
            )
        if await asyncio.to_thread(self.hashing.verify, user.password_hash, new_password):
            return await fail(
                "password_reused",
                ErrorCode.POLICY_VIOLATION,
                "New password must differ from the current password",
                ["New password must differ from the current password"],
            )

        new_hash = await asyncio.to_thread(self.hashing.hash, new_password)
        with self.locks.hold(f"user:{user.id}"):
            current = self.store.get_user(user.id)
            if current is None:
                count = None
            else:
                now = self._now()
                current.password_hash = new_hash
                current.must_change_password = False
                current.password_changed_at = now
                current.modified_at = now
                current.modified_by = current.username
                self.store.save_user(current)
                count = self.store.revoke_user_sessions(current.id, "password changed", now)
                self._record_attempt(current.username, True, AuthEventType.PASSWORD_CHANGED, None)
        if count is None:
            return await fail("not_found", ErrorCode.NOT_FOUND, "User not found")

        await self._audit(
            AuditRecord(
                category=AuditCategory.SECURITY,
                action="ChangePassword",
                result=AuditResult.SUCCESS,
                details={"sessions_revoked": count},
                user_id=user.id,
                user_name=user.username,
            )
        )
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=count)
        return ChangePasswordResult(
            success=True, message="Password changed. Please sign in again"
        )

    # -- administration ------------------------------------------------------

    async def _admin_failure(
        self,
        action: str,
        code: ErrorCode,
        message: str,
        *,
        actor: Optional[str],
        target: Optional[str] = None,
        violations: Optional[List[str]] = None,
    ) -> UserResult:
        await self._audit(
            AuditRecord(
                category=AuditCategory.USER_MANAGEMENT,
                action=action,
                result=AuditResult.FAILURE,
                details={"reason": code.value, "target": target},
                user_name=actor,
            )
        )
        return UserResult(
            success=False, message=message, error_code=code, violations=violations or []
        )

    async def _admin_success(
        self, action: str, user: User, message: str, *, actor: Optional[str], **details: Any
    ) -> UserResult:
        await self._audit(
            AuditRecord(
                category=AuditCategory.USER_MANAGEMENT,
                action=action,
                result=AuditResult.SUCCESS,
                details={"target": user.username, "target_user_id": user.id, **details},
                user_name=actor,
            )
        )
        self.logger.info("user_admin_action", action=action, user_id=user.id, actor=actor)
        return UserResult(success=True, message=message, user=self._summary(user))

    def _missing_roles(self, roles: List[str]) -> List[str]:
        return [r for r in roles if self.store.get_role(r) is None]

    @_facade_boundary(
        lambda: UserResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def create_user(
        self, request: CreateUserRequest, *, actor: Optional[str] = None
    ) -> UserResult:
        roles = request.roles or [self.settings.default_role]
        missing = self._missing_roles(roles)
        if missing:
            return await self._admin_failure(
                "CreateUser",
                ErrorCode.VALIDATION_ERROR,
                f"Unknown role(s): {', '.join(missing)}",
                actor=actor,
                target=request.username,
            )
        if not request.is_directory_user and not request.password:
            return await self._admin_failure(
                "CreateUser",
                ErrorCode.VALIDATION_ERROR,
                "Local accounts need a password",
                actor=actor,
                target=request.username,
            )
        password_hash = None
        if request.password:
            validation = self.password_policy.validate(request.password)
            if not validation.ok:
                return await self._admin_failure(
                    "CreateUser",
                    ErrorCode.POLICY_VIOLATION,
                    "Password does not meet the policy",
                    actor=actor,
                    target=request.username,
                    violations=validation.violations,
                )
            password_hash = await asyncio.to_thread(self.hashing.hash, request.password)
        try:
            user = self.store.create_user(
                request.username,
                password_hash=password_hash,
                roles=roles,
                full_name=request.full_name,
                email=request.email,
                is_directory_user=request.is_directory_user,
                directory_dn=request.directory_dn,
                must_change_password=(
                    self.settings.force_password_change_on_first_login
                    and not request.is_directory_user
                ),
                created_by=actor,
                notes=request.notes,
                created_at=self._now(),
            )
        except ConstraintViolation as exc:
            return await self._admin_failure(
                "CreateUser",
                ErrorCode.CONFLICT,
                "Username already exists"
                if (exc.field, exc.reason) == ("username", DUPLICATE)
                else exc.message.capitalize(),
                actor=actor,
                target=request.username,
            )
        return await self._admin_success(
            "CreateUser", user, "User created", actor=actor, roles=user.roles
        )

    @_facade_boundary(
        lambda: UserResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def update_user(
        self, user_id: str, request: UpdateUserRequest, *, actor: Optional[str] = None
    ) -> UserResult:
        if request.roles is not None:
            missing = self._missing_roles(request.roles)
            if missing:
                return await self._admin_failure(
                    "UpdateUser",
                    ErrorCode.VALIDATION_ERROR,
                    f"Unknown role(s): {', '.join(missing)}",
                    actor=actor,
                    target=user_id,
                )

        revoked = 0
        grant = None
        role_keys = self.policy.role_keys(request.roles or [])
        with self.locks.hold(f"user:{user_id}", ADMIN_GUARD_KEY, *role_keys):
            user = self.store.get_user(user_id)
            if user is None:
                code = ErrorCode.NOT_FOUND
            else:
                now = self._now()
                new_roles = request.roles if request.roles is not None else user.roles
                drops_admin = self._holds_admin_role(user.roles) and (
                    not self._holds_admin_role(new_roles)
                    or request.status == UserStatus.DISABLED
                )
                if drops_admin and self._is_last_administrator(user):
                    code = ErrorCode.LAST_ADMINISTRATOR_PROTECTED
                else:
                    code = None
                    if request.roles is not None and request.status != UserStatus.DISABLED:
                        grant = self.policy.grant_roles(user, request.roles, now)
                        if not grant.admitted:
                            code = ErrorCode.SESSION_CONFLICT
                if code is None:
                    self._apply_update(user, request, now)
                    user.modified_at = now
                    user.modified_by = actor
                    user = self.store.save_user(user)
                    if grant is not None:
                        revoked = len(grant.evictions)
                    if user.status == UserStatus.DISABLED:
                        revoked += self.store.revoke_user_sessions(user.id, "account disabled", now)

        if code == ErrorCode.NOT_FOUND:
            return await self._admin_failure(
                "UpdateUser", code, "User not found", actor=actor, target=user_id
            )
        if code == ErrorCode.LAST_ADMINISTRATOR_PROTECTED:
            return await self._admin_failure(
                "UpdateUser",
                code,
                "Cannot remove or disable the last administrator",
                actor=actor,
                target=user.username,
            )
        if code == ErrorCode.SESSION_CONFLICT:
            return await self._admin_failure(
                "UpdateUser",
                code,
                f"A {grant.conflict_role} session is already active ({grant.occupying_user})",
                actor=actor,
                target=user.username,
            )
        return await self._admin_success(
            "UpdateUser",
            user,
            "User updated",
            actor=actor,
            changes=sorted(request.model_dump(exclude_none=True)),
            sessions_revoked=revoked,
        )

    def _apply_update(self, user: User, request: UpdateUserRequest, now: datetime) -> None:
        if request.full_name is not None:
            user.full_name = request.full_name
        if request.email is not None:
            user.email = request.email
        if request.roles is not None:
            user.roles = list(request.roles)
        if request.is_directory_user is not None:
            user.is_directory_user = request.is_directory_user
        if request.directory_dn is not None:
            user.directory_dn = request.directory_dn
        if request.must_change_password is not None:
            user.must_change_password = request.must_change_password
        if request.notes is not None:
            user.notes = request.notes
        if request.status is not None and request.status != user.status:
            if request.status == UserStatus.ACTIVE:
                self.lockout.unlock(user)
                user.status = UserStatus.ACTIVE
            elif request.status == UserStatus.LOCKED:
                user.status = UserStatus.LOCKED
                user.locked_until = now + self.lockout.lockout
            else:
                user.status = UserStatus.DISABLED

    @_facade_boundary(_operation_failure)
    async def delete_user(self, user_id: str, *, actor: Optional[str] = None) -> OperationResult:
        with self.locks.hold(f"user:{user_id}", ADMIN_GUARD_KEY):
            user = self.store.get_user(user_id)
            if user is None:
                code, count = ErrorCode.NOT_FOUND, 0
            elif self._is_last_administrator(user):
                code, count = ErrorCode.LAST_ADMINISTRATOR_PROTECTED, 0
            else:
                now = self._now()
                code = None
                count = self.store.revoke_user_sessions(user.id, "account deleted", now)
                self.store.delete_user(user.id, now=now)

        if code is not None:
            message = (
                "User not found"
                if code == ErrorCode.NOT_FOUND
                else "Cannot delete the last administrator"
            )
            await self._admin_failure(
                "DeleteUser", code, message, actor=actor, target=user.username if user else user_id
            )
            return OperationResult(success=False, message=message, error_code=code)
        await self._audit(
            AuditRecord(
                category=AuditCategory.USER_MANAGEMENT,
                action="DeleteUser",
                result=AuditResult.SUCCESS,
                details={"target": user.username, "target_user_id": user.id, "sessions_revoked": count},
                user_name=actor,
            )
        )
        self.logger.info("user_deleted", user_id=user.id, actor=actor, sessions_revoked=count)
        return OperationResult(success=True, message="User deleted", count=count)

    @_facade_boundary(
        lambda: UserResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def unlock_user(self, user_id: str, *, actor: Optional[str] = None) -> UserResult:
        with self.locks.hold(f"user:{user_id}"):
            user = self.store.get_user(user_id)
            if user is not None:
                was_locked = user.status == UserStatus.LOCKED
                self.lockout.unlock(user)
                user.modified_at = self._now()
                user.modified_by = actor
                user = self.store.save_user(user)
                self._record_attempt(user.username, True, AuthEventType.ACCOUNT_UNLOCKED, None)
        if user is None:
            return await self._admin_failure(
                "UnlockUser", ErrorCode.NOT_FOUND, "User not found", actor=actor, target=user_id
            )
        return await self._admin_success(
            "UnlockUser", user, "User unlocked", actor=actor, was_locked=was_locked
        )

    @_facade_boundary(
        lambda: UserResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def reset_password(
        self, user_id: str, new_password: str, *, actor: Optional[str] = None
    ) -> UserResult:
        validation = self.password_policy.validate(new_password)
        if not validation.ok:
            return await self._admin_failure(
                "ResetPassword",
                ErrorCode.POLICY_VIOLATION,
                "Password does not meet the policy",
                actor=actor,
                target=user_id,
                violations=validation.violations,
            )
        new_hash = await asyncio.to_thread(self.hashing.hash, new_password)
        count = 0
        with self.locks.hold(f"user:{user_id}"):
            user = self.store.get_user(user_id)
            if user is not None:
                now = self._now()
                user.password_hash = new_hash
                user.must_change_password = True
                user.password_changed_at = now
                user.modified_at = now
                user.modified_by = actor
                user = self.store.save_user(user)
                count = self.store.revoke_user_sessions(user.id, "password reset", now)
                self._record_attempt(user.username, True, AuthEventType.PASSWORD_RESET, None)
        if user is None:
            return await self._admin_failure(
                "ResetPassword", ErrorCode.NOT_FOUND, "User not found", actor=actor, target=user_id
            )
        return await self._admin_success(
            "ResetPassword", user, "Password reset", actor=actor, sessions_revoked=count
        )

    @_facade_boundary(
        lambda: UsersResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def list_users(self) -> UsersResult:
        return UsersResult(success=True, users=[self._summary(u) for u in self.store.list_users()])

    @_facade_boundary(
        lambda: UserResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def get_user(self, user_id: str) -> UserResult:
        user = self.store.get_user(user_id)
        if user is None:
            return UserResult(
                success=False, message="User not found", error_code=ErrorCode.NOT_FOUND
            )
        return UserResult(success=True, message="", user=self._summary(user))

    @_facade_boundary(
        lambda: SessionsResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def list_user_sessions(
        self, user_id: str, *, include_inactive: bool = False
    ) -> SessionsResult:
        if self.store.get_user(user_id) is None:
            return SessionsResult(
                success=False, message="User not found", error_code=ErrorCode.NOT_FOUND
            )
        now = self._now()
        sessions = self.store.list_user_sessions(user_id)
        if not include_inactive:
            sessions = [s for s in sessions if s.is_active(now)]
        return SessionsResult(
            success=True, sessions=[self._session_info(s, now) for s in sessions]
        )

    @_facade_boundary(
        lambda: SessionsResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def list_active_sessions(self) -> SessionsResult:
        now = self._now()
        return SessionsResult(
            success=True,
            sessions=[self._session_info(s, now) for s in self.store.list_active_sessions(now)],
        )

    @_facade_boundary(_operation_failure)
    async def close_session(self, user_id: str, session_id: str) -> OperationResult:
        """Close one of the caller's own sessions."""

        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            code = ErrorCode.NOT_FOUND if session is None else ErrorCode.FORBIDDEN
            await self._audit(
                AuditRecord(
                    category=AuditCategory.SESSION,
                    action="CloseSession",
                    result=AuditResult.FAILURE,
                    details={"reason": code.value, "session_id": session_id},
                    user_id=user_id,
                )
            )
            message = (
                "Session not found"
                if code == ErrorCode.NOT_FOUND
                else "You can only close your own sessions"
            )
            return OperationResult(success=False, message=message, error_code=code)
        return await self._close(session, "closed by user", user_id=user_id, actor=None)

    @_facade_boundary(_operation_failure)
    async def admin_close_session(
        self,
        session_id: str,
        *,
        actor: Optional[str] = None,
        reason: str = "closed by administrator",
    ) -> OperationResult:
        session = self.store.get_session(session_id)
        if session is None:
            await self._audit(
                AuditRecord(
                    category=AuditCategory.SESSION,
                    action="CloseSession",
                    result=AuditResult.FAILURE,
                    details={"reason": "not_found", "session_id": session_id},
                    user_name=actor,
                )
            )
            return OperationResult(
                success=False, message="Session not found", error_code=ErrorCode.NOT_FOUND
            )
        return await self._close(session, reason, user_id=session.user_id, actor=actor)

    async def _close(
        self, session: Session, reason: str, *, user_id: str, actor: Optional[str]
    ) -> OperationResult:
        revoked = self.store.revoke_session(session.id, reason, self._now())
        await self._audit(
            AuditRecord(
                category=AuditCategory.SESSION,
                action="CloseSession",
                result=AuditResult.SUCCESS,
                details={
                    "session_id": session.id,
                    "reason": reason,
                    "actor": actor,
                    "already_closed": not revoked,
                },
                user_id=user_id,
            )
        )
        return OperationResult(
            success=True, message="Session closed" if revoked else "Session already closed"
        )

    # -- status and housekeeping ---------------------------------------------

    @_facade_boundary(lambda: None)
    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        user = self.store.get_user(user_id)
        return self._profile(user) if user else None

    def get_session_config(self) -> SessionConfig:
        s = self.settings
        return SessionConfig(
            session_timeout_minutes=s.session_timeout_minutes,
            inactivity_timeout_minutes=s.inactivity_timeout_minutes,
            max_concurrent_sessions=s.max_concurrent_sessions,
            single_session_roles=list(s.single_session_roles),
            single_session_behavior=s.single_session_behavior.value,
            track_last_activity=s.track_last_activity,
            remember_me_days=s.remember_me_days,
        )

    @_facade_boundary(lambda: None)
    async def get_system_status(self) -> Optional[AuthSystemStatus]:
        users = self.store.list_users()
        now = self._now()

        def count(status: UserStatus) -> int:
            return sum(1 for u in users if u.status == status)

        return AuthSystemStatus(
            users_total=len(users),
            users_active=count(UserStatus.ACTIVE),
            users_locked=count(UserStatus.LOCKED),
            users_disabled=count(UserStatus.DISABLED),
            active_sessions=len(self.store.list_active_sessions(now)),
            directory_auth_enabled=self.settings.enable_directory_auth,
            directory_configured=self.directory is not None,
            fallback_to_local=self.settings.fallback_to_local,
            password_policy=self.password_policy.describe(),
            session_config=self.get_session_config(),
        )

    @_facade_boundary(
        lambda: LoginAttemptsResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def list_login_attempts(
        self, *, username: Optional[str] = None, limit: int = 100
    ) -> LoginAttemptsResult:
        rows = self.store.list_login_attempts(username=username, limit=limit)
        return LoginAttemptsResult(
            success=True,
            attempts=[
                LoginAttemptInfo(
                    username=a.username,
                    success=a.success,
                    event_type=a.event_type,
                    ip_addr=a.ip_addr,
                    user_agent=a.user_agent,
                    failure_reason=a.failure_reason,
                    auth_method=a.auth_method,
                    timestamp=a.timestamp,
                )
                for a in rows
            ],
        )

    @_facade_boundary(
        lambda: SweepResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def sweep_expired(self) -> SweepResult:
        """Housekeeping pass; every rule it applies is also enforced lazily."""

        now = self._now()
        result = SweepResult()
        for session in self.store.expired_unrevoked_sessions(now):
            if self.store.revoke_session(session.id, "expired", now):
                result.expired_sessions_revoked += 1
        for session in self.store.list_active_sessions(now):
            if self.policy.is_idle(session, now):
                if self.store.revoke_session(session.id, "inactivity", now):
                    result.idle_sessions_revoked += 1
        for user in self.store.list_users():
            if not self.lockout.lock_expired(user, now):
                continue
            with self.locks.hold(f"user:{user.id}"):
                current = self.store.get_user(user.id)
                if current is not None and self.lockout.lock_expired(current, now):
                    self.lockout.unlock(current)
                    self.store.save_user(current)
                    result.accounts_unlocked += 1
        cutoff = now - timedelta(days=self.settings.session_retention_days)
        result.sessions_purged = self.store.purge_sessions(cutoff)
        result.attempts_purged = self.store.purge_login_attempts(cutoff)
        self.logger.info("auth_sweep_completed", **result.model_dump(exclude={"message", "error_code"}))
        return result

    @_facade_boundary(
        lambda: UserResult(
            success=False, message=INTERNAL_ERROR_MESSAGE, error_code=ErrorCode.INTERNAL_ERROR
        )
    )
    async def ensure_admin_user(
        self, username: Optional[str] = None, password: Optional[str] = None
    ) -> UserResult:
        """Make sure at least one enabled administrator exists."""

        username = username or self.settings.bootstrap_admin_username
        password = password or self.settings.bootstrap_admin_password
        admins = [
            u
            for u in self.store.users_with_system_role(SystemRole.ADMINISTRATOR)
            if u.status != UserStatus.DISABLED
        ]
        if admins:
            return UserResult(
                success=True, message="Administrator already exists", user=self._summary(admins[0])
            )
        admin_role = next(
            (r.name for r in self.store.list_roles() if r.system_role == SystemRole.ADMINISTRATOR),
            None,
        )
        if admin_role is None:
            return await self._admin_failure(
                "CreateUser",
                ErrorCode.VALIDATION_ERROR,
                "No administrator role is defined",
                actor="bootstrap",
                target=username,
            )
        existing = self.store.get_user_by_username(username)
        if existing is not None:
            with self.locks.hold(f"user:{existing.id}"):
                user = self.store.get_user(existing.id)
                user.roles = [*user.roles, admin_role]
                self.lockout.unlock(user)
                user.status = UserStatus.ACTIVE
                user = self.store.save_user(user)
            return await self._admin_success(
                "PromoteAdministrator", user, "Existing user promoted to administrator", actor="bootstrap"
            )
        if not password:
            return await self._admin_failure(
                "CreateUser",
                ErrorCode.VALIDATION_ERROR,
                "A password is required to create the administrator",
                actor="bootstrap",
                target=username,
            )
        return await self.create_user(
            CreateUserRequest(username=username, password=password, roles=[admin_role],
                              full_name="Administrator"),
            actor="bootstrap",
        )
