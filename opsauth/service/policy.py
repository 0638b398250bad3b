from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from opsauth.config import Settings, SingleSessionBehavior
from opsauth.logging import get_logger
from opsauth.service.auth_store import AuthStore
from opsauth.storage.models import Session, User

logger = get_logger(__name__)

REASON_EVICTED = "evicted by new login"
REASON_CAP = "exceeded concurrent session limit"
REASON_INACTIVITY = "inactivity"
REASON_ROLE_GRANTED = "role granted while another session holds it"


@dataclass(frozen=True)
class Eviction:
    session_id: str
    user_id: str
    reason: str
    role: Optional[str] = None
    username: Optional[str] = None


@dataclass
class Admission:
    admitted: bool
    evictions: List[Eviction] = field(default_factory=list)
    conflict_role: Optional[str] = None
    occupying_user: Optional[str] = None


class SessionPolicyEngine:
    """Admission and inactivity rules applied around the session store.

    ``admit`` must run while the caller holds the user key and every role key
    returned by ``lock_keys`` so the read-check-then-revoke is atomic.
    """

    def __init__(self, settings: Settings, store: AuthStore) -> None:
        self.settings = settings
        self.store = store

    def single_session_roles_for(self, user: User) -> List[str]:
        return sorted(
            {role for role in user.roles if self.settings.is_single_session_role(role)}
        )

    def role_keys(self, roles: Iterable[str]) -> List[str]:
        return sorted(
            {f"role:{role.lower()}" for role in roles if self.settings.is_single_session_role(role)}
        )

    def lock_keys(self, user: User) -> List[str]:
        return [f"user:{user.id}", *self.role_keys(user.roles)]

    def admit(
        self, user: User, now: datetime, *, replacing: Optional[str] = None
    ) -> Admission:
        """Make room for one new session of ``user``.

        ``replacing`` names a session about to be retired by the caller; it does
        not count against the concurrent session cap.
        """

        admission = Admission(admitted=True)
        force = self.settings.single_session_behavior == SingleSessionBehavior.FORCE

        for role in self.single_session_roles_for(user):
            holder = self.store.active_session_for_role(role, now, exclude_user_id=user.id)
            if holder is None:
                continue
            holder_user = self.store.get_user(holder.user_id)
            holder_name = holder_user.username if holder_user else holder.user_id
            if not force:
                # Nothing has been revoked yet in reject mode
                logger.info(
                    "session_admission_rejected",
                    user_id=user.id,
                    role=role,
                    occupying_user=holder_name,
                )
                return Admission(
                    admitted=False, conflict_role=role, occupying_user=holder_name
                )
            while holder is not None:
                if self.store.revoke_session(holder.id, REASON_EVICTED, now):
                    admission.evictions.append(
                        Eviction(
                            session_id=holder.id,
                            user_id=holder.user_id,
                            reason=REASON_EVICTED,
                            role=role,
                            username=holder_name,
                        )
                    )
                    logger.warning(
                        "session_evicted_single_role",
                        evicted_user=holder_name,
                        new_user=user.username,
                        role=role,
                        session_id=holder.id,
                    )
                holder = self.store.active_session_for_role(
                    role, now, exclude_user_id=user.id
                )
                if holder is not None:
                    holder_user = self.store.get_user(holder.user_id)
                    holder_name = holder_user.username if holder_user else holder.user_id

        cap = self.settings.max_concurrent_sessions
        if cap > 0:
            active = [
                sess
                for sess in self.store.active_sessions_for_user(user.id, now)
                if sess.id != replacing
            ]
            overflow = len(active) + 1 - cap
            for sess in active[: max(overflow, 0)]:
                if self.store.revoke_session(sess.id, REASON_CAP, now):
                    admission.evictions.append(
                        Eviction(session_id=sess.id, user_id=user.id, reason=REASON_CAP)
                    )
            if overflow > 0:
                logger.info(
                    "session_cap_enforced",
                    user_id=user.id,
                    revoked=overflow,
                    max_concurrent_sessions=cap,
                )
        return admission

    def grant_roles(self, user: User, roles: Iterable[str], now: datetime) -> Admission:
        """Check that ``user`` may take on ``roles`` while its sessions stay open.

        Only single-session roles the user does not already hold matter, and only
        when the user has an active session. Reject mode refuses the grant; force
        mode revokes the user's own sessions so the next login goes through
        ``admit``. The caller holds the user key and ``role_keys(roles)``.
        """

        gained = sorted(
            {
                role
                for role in roles
                if self.settings.is_single_session_role(role) and not user.has_role(role)
            }
        )
        if not gained:
            return Admission(admitted=True)
        active = self.store.active_sessions_for_user(user.id, now)
        if not active:
            return Admission(admitted=True)

        for role in gained:
            holder = self.store.active_session_for_role(role, now, exclude_user_id=user.id)
            if holder is None:
                continue
            holder_user = self.store.get_user(holder.user_id)
            holder_name = holder_user.username if holder_user else holder.user_id
            if self.settings.single_session_behavior != SingleSessionBehavior.FORCE:
                logger.info(
                    "role_grant_rejected",
                    user_id=user.id,
                    role=role,
                    occupying_user=holder_name,
                )
                return Admission(admitted=False, conflict_role=role, occupying_user=holder_name)

            admission = Admission(admitted=True, conflict_role=role, occupying_user=holder_name)
            for sess in active:
                if self.store.revoke_session(sess.id, REASON_ROLE_GRANTED, now):
                    admission.evictions.append(
                        Eviction(
                            session_id=sess.id,
                            user_id=user.id,
                            reason=REASON_ROLE_GRANTED,
                            role=role,
                            username=user.username,
                        )
                    )
            logger.warning(
                "role_grant_revoked_sessions",
                user_id=user.id,
                role=role,
                occupying_user=holder_name,
                revoked=len(admission.evictions),
            )
            return admission
        return Admission(admitted=True)

    def is_idle(self, session: Session, now: datetime) -> bool:
        minutes = self.settings.inactivity_timeout_minutes
        if minutes <= 0:
            return False
        return now - session.last_activity_at > timedelta(minutes=minutes)

    def check_activity(self, session: Session, now: datetime) -> Optional[bool]:
        """Apply the inactivity rule to one session.

        Returns ``None`` when the session stays usable, otherwise whether this
        call performed the revocation.
        """

        if self.is_idle(session, now):
            return self.store.revoke_session(session.id, REASON_INACTIVITY, now)
        if self.settings.track_last_activity:
            self.store.touch_session(session.id, now)
        return None
