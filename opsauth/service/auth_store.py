from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from opsauth.storage.models import LoginAttempt, Role, Session, SystemRole, User


class AuthStore(Protocol):
    """Storage operations the auth services rely on; ``MemoryStore`` implements it."""

    def get_role(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def list_users(self) -> List[User]: ...

    def save_user(self, user: User) -> User: ...

    def delete_user(self, user_id: str, *, now: datetime) -> bool: ...

    def users_with_system_role(self, system_role: SystemRole) -> List[User]: ...

    def add_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> None: ...

    def revoke_session(self, session_id: str, reason: str, at: datetime) -> bool: ...

    def revoke_user_sessions(self, user_id: str, reason: str, at: datetime) -> int: ...

    def active_sessions_for_user(self, user_id: str, now: datetime) -> List[Session]: ...

    def active_session_for_role(
        self, role_name: str, now: datetime, *, exclude_user_id: Optional[str] = None
    ) -> Optional[Session]: ...

    def list_active_sessions(self, now: datetime) -> List[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def expired_unrevoked_sessions(self, now: datetime) -> List[Session]: ...

    def purge_sessions(self, older_than: datetime) -> int: ...

    def record_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def list_login_attempts(
        self, *, username: Optional[str] = None, limit: int = 100
    ) -> List[LoginAttempt]: ...

    def purge_login_attempts(self, older_than: datetime) -> int: ...
