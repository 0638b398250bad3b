from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from opsauth.logging import get_logger
from opsauth.storage.errors import DUPLICATE, IN_USE, MISSING, UNKNOWN, ConstraintViolation
from opsauth.storage.models import (
    AuthEventType,
    LoginAttempt,
    Role,
    Session,
    SystemRole,
    User,
    UserStatus,
)

DEFAULT_ROLES: tuple[Role, ...] = (
    Role(
        name="Administrator",
        description="Full access to the console and user administration",
        system_role=SystemRole.ADMINISTRATOR,
        permissions={
            "plc": ["read", "write"],
            "config": ["read", "write"],
            "users": ["read", "write"],
            "audit": ["read"],
            "backup": ["create", "restore"],
            "security": ["update"],
        },
    ),
    Role(
        name="Operator",
        description="Runs the plant from the control screens",
        system_role=SystemRole.OPERATOR,
        permissions={"plc": ["read", "write"], "alarms": ["acknowledge"]},
    ),
    Role(
        name="Maintenance",
        description="Commissioning and maintenance tasks",
        system_role=SystemRole.MAINTENANCE,
        permissions={"plc": ["read", "write"], "config": ["read"], "backup": ["create"]},
    ),
    Role(
        name="Viewer",
        description="Read-only access",
        system_role=SystemRole.VIEWER,
        permissions={"plc": ["read"]},
    ),
    Role(
        name="Auditor",
        description="Reads the audit trail",
        system_role=SystemRole.AUDITOR,
        permissions={"plc": ["read"], "audit": ["read", "export"]},
    ),
)


class MemoryStore:
    """In-process backing store for users, roles, sessions and login attempts.

    Every public method runs under one re-entrant lock and hands out copies,
    so callers never mutate stored records without going through ``save_user``
    or one of the session mutators.
    """

    def __init__(self, state_dir: str | None = None, *, persist: bool = False) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._username_index: Dict[str, str] = {}
        self.roles: Dict[str, Role] = {}
        self.sessions: Dict[str, Session] = {}
        self._refresh_index: Dict[str, str] = {}
        self.login_attempts: List[LoginAttempt] = []
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self.persist = persist and state_dir is not None
        self.state_dir = Path(state_dir) if state_dir else None

        if not self._load_state():
            self.default_roles()
            self._persist_state()

    def default_roles(self) -> None:
        with self._data_lock:
            for role in DEFAULT_ROLES:
                self.roles.setdefault(role.name.lower(), copy.deepcopy(role))

    # -- roles ---------------------------------------------------------------

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(name.lower())
            return copy.deepcopy(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [copy.deepcopy(r) for r in self.roles.values()]

    def _canonical_roles(self, names: Iterable[str]) -> List[str]:
        resolved: List[str] = []
        for name in names:
            role = self.roles.get(name.lower())
            if not role:
                raise ConstraintViolation("role", UNKNOWN, name)
            if role.name not in resolved:
                resolved.append(role.name)
        return resolved

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        username: str,
        *,
        password_hash: Optional[str] = None,
        roles: Iterable[str] = (),
        full_name: Optional[str] = None,
        email: Optional[str] = None,
        is_directory_user: bool = False,
        directory_dn: Optional[str] = None,
        must_change_password: bool = False,
        created_by: Optional[str] = None,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            key = username.strip().lower()
            if not key:
                raise ConstraintViolation("username", MISSING)
            if key in self._username_index:
                raise ConstraintViolation("username", DUPLICATE, username.strip())
            user = User(
                id=str(uuid.uuid4()),
                username=username.strip(),
                password_hash=password_hash,
                full_name=full_name,
                email=email,
                is_directory_user=is_directory_user,
                directory_dn=directory_dn,
                must_change_password=must_change_password,
                roles=self._canonical_roles(roles),
                created_by=created_by,
                notes=notes,
            )
            if created_at is not None:
                user.created_at = created_at
            self.users[user.id] = user
            self._username_index[key] = user.id
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._username_index.get(username.strip().lower())
            return self.get_user(user_id) if user_id else None

    def list_users(self) -> List[User]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.username.lower())
            return [copy.deepcopy(u) for u in users]

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user_id", UNKNOWN, user.id)
            stored = copy.deepcopy(user)
            stored.roles = self._canonical_roles(user.roles)
            self.users[user.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def delete_user(self, user_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            if self.active_sessions_for_user(user_id, now):
                raise ConstraintViolation("user_id", IN_USE, user_id)
            self.users.pop(user_id, None)
            self._username_index.pop(user.username.lower(), None)
            for sid in [sid for sid, s in self.sessions.items() if s.user_id == user_id]:
                sess = self.sessions.pop(sid)
                self._refresh_index.pop(sess.refresh_token_hash, None)
            self._persist_state()
            return True

    def users_with_system_role(self, system_role: SystemRole) -> List[User]:
        with self._data_lock:
            names = {
                r.name.lower() for r in self.roles.values() if r.system_role == system_role
            }
            return [
                copy.deepcopy(u)
                for u in self.users.values()
                if any(role.lower() in names for role in u.roles)
            ]

    # -- sessions ------------------------------------------------------------

    def add_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user_id", UNKNOWN, session.user_id)
            if session.id in self.sessions:
                raise ConstraintViolation("session_id", DUPLICATE, session.id)
            if session.refresh_token_hash in self._refresh_index:
                raise ConstraintViolation("refresh_token", DUPLICATE)
            stored = copy.copy(session)
            self.sessions[stored.id] = stored
            self._refresh_index[stored.refresh_token_hash] = stored.id
            self._persist_state()
            return copy.copy(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.copy(sess) if sess else None

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._refresh_index.get(refresh_hash)
            return self.get_session(session_id) if session_id else None

    def touch_session(self, session_id: str, at: datetime) -> None:
        # Last write wins; not persisted on every request.
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and not sess.is_revoked and at > sess.last_activity_at:
                sess.last_activity_at = at

    def revoke_session(self, session_id: str, reason: str, at: datetime) -> bool:
        """Revoke one session; returns False when it was already revoked or unknown."""

        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.is_revoked:
                return False
            sess.is_revoked = True
            sess.revoked_at = at
            sess.revoked_reason = reason
            self._persist_state()
            return True

    def revoke_user_sessions(self, user_id: str, reason: str, at: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and not sess.is_revoked:
                    sess.is_revoked = True
                    sess.revoked_at = at
                    sess.revoked_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def active_sessions_for_user(self, user_id: str, now: datetime) -> List[Session]:
        """Active sessions of one user, oldest first."""

        with self._data_lock:
            active = [
                copy.copy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active(now)
            ]
            return sorted(active, key=lambda s: s.issued_at)

    def active_session_for_role(
        self, role_name: str, now: datetime, *, exclude_user_id: Optional[str] = None
    ) -> Optional[Session]:
        """Oldest active session of any other user holding ``role_name``."""

        with self._data_lock:
            wanted = role_name.lower()
            matches = []
            for sess in self.sessions.values():
                if sess.user_id == exclude_user_id or not sess.is_active(now):
                    continue
                owner = self.users.get(sess.user_id)
                if owner and owner.has_role(wanted):
                    matches.append(sess)
            if not matches:
                return None
            return copy.copy(min(matches, key=lambda s: s.issued_at))

    def list_active_sessions(self, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [copy.copy(s) for s in self.sessions.values() if s.is_active(now)]
            return sorted(active, key=lambda s: s.issued_at)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            sessions = [copy.copy(s) for s in self.sessions.values() if s.user_id == user_id]
            return sorted(sessions, key=lambda s: s.issued_at, reverse=True)

    def expired_unrevoked_sessions(self, now: datetime) -> List[Session]:
        with self._data_lock:
            return [
                copy.copy(s)
                for s in self.sessions.values()
                if not s.is_revoked and s.expires_at <= now
            ]

    def purge_sessions(self, older_than: datetime) -> int:
        """Hard-delete inactive sessions whose end lies before ``older_than``."""

        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if (s.is_revoked and s.revoked_at and s.revoked_at < older_than)
                or (not s.is_revoked and s.expires_at < older_than)
            ]
            for sid in stale:
                sess = self.sessions.pop(sid)
                self._refresh_index.pop(sess.refresh_token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- login attempts ------------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()

    def list_login_attempts(
        self, *, username: Optional[str] = None, limit: int = 100
    ) -> List[LoginAttempt]:
        """Newest first."""

        with self._data_lock:
            wanted = username.lower() if username else None
            rows = [
                a
                for a in reversed(self.login_attempts)
                if wanted is None or a.username.lower() == wanted
            ]
            return rows[: max(limit, 0)]

    def purge_login_attempts(self, older_than: datetime) -> int:
        with self._data_lock:
            before = len(self.login_attempts)
            self.login_attempts = [a for a in self.login_attempts if a.timestamp >= older_than]
            removed = before - len(self.login_attempts)
            if removed:
                self._persist_state()
            return removed

    # -- persistence ---------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.state_dir is not None
        state_dir = self.state_dir / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "login_attempts": [self._serialize_attempt(a) for a in self.login_attempts],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist auth state: {exc}") from exc

    def _load_state(self) -> bool:
        if not self.persist:
            return False
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.roles = {
            r["name"].lower(): self._deserialize_role(r) for r in data.get("roles", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self._username_index = {u.username.lower(): u.id for u in self.users.values()}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._refresh_index = {s.refresh_token_hash: s.id for s in self.sessions.values()}
        self.login_attempts = [
            self._deserialize_attempt(a) for a in data.get("login_attempts", [])
        ]
        # Seed any role added since the snapshot was written
        self.default_roles()
        self.logger.info(
            "auth_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            path=str(path),
        )
        return True

    def _serialize_role(self, role: Role) -> dict:
        return {
            "name": role.name,
            "description": role.description,
            "system_role": role.system_role.value if role.system_role else None,
            "permissions": role.permissions,
        }

    def _deserialize_role(self, data: dict) -> Role:
        raw_system = data.get("system_role")
        return Role(
            name=data["name"],
            description=data.get("description"),
            system_role=SystemRole(raw_system) if raw_system else None,
            permissions={k: list(v) for k, v in (data.get("permissions") or {}).items()},
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "password_hash": user.password_hash,
            "full_name": user.full_name,
            "email": user.email,
            "is_directory_user": user.is_directory_user,
            "directory_dn": user.directory_dn,
            "status": user.status.value,
            "failed_login_attempts": user.failed_login_attempts,
            "last_failed_login_at": self._serialize_datetime(user.last_failed_login_at),
            "locked_until": self._serialize_datetime(user.locked_until),
            "must_change_password": user.must_change_password,
            "roles": list(user.roles),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "created_at": self._serialize_datetime(user.created_at),
            "created_by": user.created_by,
            "modified_at": self._serialize_datetime(user.modified_at),
            "modified_by": user.modified_by,
            "notes": user.notes,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            password_hash=data.get("password_hash"),
            full_name=data.get("full_name"),
            email=data.get("email"),
            is_directory_user=data.get("is_directory_user", False),
            directory_dn=data.get("directory_dn"),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            last_failed_login_at=self._deserialize_datetime(data.get("last_failed_login_at")),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            must_change_password=data.get("must_change_password", False),
            roles=list(data.get("roles", [])),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            created_by=data.get("created_by"),
            modified_at=self._deserialize_datetime(data.get("modified_at")),
            modified_by=data.get("modified_by"),
            notes=data.get("notes"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "access_token_id": session.access_token_id,
            "refresh_token_hash": session.refresh_token_hash,
            "issued_at": self._serialize_datetime(session.issued_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "refresh_expires_at": self._serialize_datetime(session.refresh_expires_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
            "remember_me": session.remember_me,
            "is_revoked": session.is_revoked,
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "revoked_reason": session.revoked_reason,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            access_token_id=data["access_token_id"],
            refresh_token_hash=data["refresh_token_hash"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            refresh_expires_at=self._deserialize_datetime(data["refresh_expires_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            remember_me=data.get("remember_me", False),
            is_revoked=data.get("is_revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
        )

    def _serialize_attempt(self, attempt: LoginAttempt) -> dict:
        return {
            "username": attempt.username,
            "success": attempt.success,
            "event_type": attempt.event_type.value,
            "ip_addr": attempt.ip_addr,
            "user_agent": attempt.user_agent,
            "failure_reason": attempt.failure_reason,
            "auth_method": attempt.auth_method,
            "timestamp": self._serialize_datetime(attempt.timestamp),
        }

    def _deserialize_attempt(self, data: dict) -> LoginAttempt:
        return LoginAttempt(
            username=data["username"],
            success=data["success"],
            event_type=AuthEventType(data["event_type"]),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            failure_reason=data.get("failure_reason"),
            auth_method=data.get("auth_method"),
            timestamp=self._deserialize_datetime(data["timestamp"]),
        )
