"""Unit tests for the in-memory store."""

from datetime import datetime, timedelta, timezone

import pytest

from opsauth.storage.errors import DUPLICATE, IN_USE, MISSING, UNKNOWN, ConstraintViolation
from opsauth.storage.memory import MemoryStore
from opsauth.storage.models import (
    AuthEventType,
    LoginAttempt,
    Origin,
    Session,
    SystemRole,
    UserStatus,
)

NOW = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


def _session(user_id, *, minutes_ago=0, ttl=30, token="t"):
    issued = NOW - timedelta(minutes=minutes_ago)
    return Session.new(
        user_id,
        access_token_id=f"jti-{token}",
        refresh_token_hash=f"hash-{token}",
        expires_at=issued + timedelta(minutes=ttl),
        refresh_ttl_minutes=60,
        origin=Origin(ip_addr="10.0.0.5", user_agent="pytest"),
        now=issued,
    )


class TestUsers:
    def test_system_roles_are_seeded(self, store):
        names = {r.name for r in store.list_roles()}

        assert names == {"Administrator", "Operator", "Maintenance", "Viewer", "Auditor"}
        assert store.get_role("administrator").system_role == SystemRole.ADMINISTRATOR

    def test_username_is_case_insensitive_unique(self, store):
        store.create_user("Alice", roles=["viewer"])

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("alice")
        assert (exc_info.value.field, exc_info.value.reason) == ("username", DUPLICATE)
        assert exc_info.value.message == "username already exists"
        assert store.get_user_by_username("ALICE").username == "Alice"

    def test_blank_username_is_missing_not_duplicate(self, store):
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("   ")

        assert (exc_info.value.field, exc_info.value.reason) == ("username", MISSING)

    def test_roles_are_canonicalised(self, store):
        user = store.create_user("bob", roles=["operator", "Operator"])

        assert user.roles == ["Operator"]

    def test_unknown_role_is_rejected(self, store):
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("bob", roles=["Wizard"])
        assert exc_info.value.detail == {"field": "role", "reason": UNKNOWN, "value": "Wizard"}

    def test_returned_users_are_copies(self, store):
        user = store.create_user("bob")
        user.status = UserStatus.DISABLED

        assert store.get_user(user.id).status == UserStatus.ACTIVE

    def test_delete_refuses_user_with_active_sessions(self, store):
        user = store.create_user("bob")
        store.add_session(_session(user.id))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.delete_user(user.id, now=NOW)
        assert (exc_info.value.field, exc_info.value.reason) == ("user_id", IN_USE)
        assert exc_info.value.message == "user still owns active sessions"
        store.revoke_user_sessions(user.id, "test", NOW)
        assert store.delete_user(user.id, now=NOW) is True
        assert store.get_user_by_username("bob") is None


class TestSessions:
    def test_session_expiry_must_follow_issue(self):
        with pytest.raises(ValueError):
            _session("u", ttl=0)

    def test_revoke_is_idempotent(self, store):
        user = store.create_user("bob")
        sess = store.add_session(_session(user.id))

        assert store.revoke_session(sess.id, "logout", NOW) is True
        assert store.revoke_session(sess.id, "again", NOW) is False
        stored = store.get_session(sess.id)
        assert stored.revoked_reason == "logout"
        assert store.revoke_session("missing", "logout", NOW) is False

    def test_active_sessions_oldest_first(self, store):
        user = store.create_user("bob")
        newer = store.add_session(_session(user.id, minutes_ago=1, token="a"))
        older = store.add_session(_session(user.id, minutes_ago=5, token="b"))
        store.add_session(_session(user.id, minutes_ago=60, token="c"))  # expired

        active = store.active_sessions_for_user(user.id, NOW)

        assert [s.id for s in active] == [older.id, newer.id]

    def test_active_session_for_role_skips_own_user(self, store):
        op1 = store.create_user("op1", roles=["Operator"])
        op2 = store.create_user("op2", roles=["Operator"])
        sess = store.add_session(_session(op1.id, token="a"))

        assert store.active_session_for_role("operator", NOW, exclude_user_id=op2.id).id == sess.id
        assert store.active_session_for_role("Operator", NOW, exclude_user_id=op1.id) is None

    def test_lookup_by_refresh_hash(self, store):
        user = store.create_user("bob")
        sess = store.add_session(_session(user.id, token="r"))

        assert store.get_session_by_refresh_hash("hash-r").id == sess.id
        assert store.get_session_by_refresh_hash("hash-x") is None

    def test_touch_only_moves_forward(self, store):
        user = store.create_user("bob")
        sess = store.add_session(_session(user.id))

        store.touch_session(sess.id, NOW + timedelta(minutes=3))
        store.touch_session(sess.id, NOW + timedelta(minutes=1))

        assert store.get_session(sess.id).last_activity_at == NOW + timedelta(minutes=3)

    def test_purge_removes_old_inactive_sessions(self, store):
        user = store.create_user("bob")
        old = store.add_session(_session(user.id, minutes_ago=600, token="old"))
        live = store.add_session(_session(user.id, token="live"))

        removed = store.purge_sessions(NOW - timedelta(minutes=60))

        assert removed == 1
        assert store.get_session(old.id) is None
        assert store.get_session(live.id) is not None


class TestLoginAttempts:
    def test_newest_first_and_filtered(self, store):
        for i, name in enumerate(["alice", "bob", "alice"]):
            store.record_login_attempt(
                LoginAttempt(
                    username=name,
                    success=bool(i % 2),
                    event_type=AuthEventType.LOGIN_FAILED,
                    timestamp=NOW + timedelta(seconds=i),
                )
            )

        rows = store.list_login_attempts(username="ALICE")

        assert [r.timestamp for r in rows] == [NOW + timedelta(seconds=2), NOW]
        assert len(store.list_login_attempts(limit=1)) == 1


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        first = MemoryStore(str(tmp_path), persist=True)
        user = first.create_user("alice", password_hash="h", roles=["Operator"])
        sess = first.add_session(_session(user.id))
        first.revoke_session(sess.id, "logout", NOW)

        second = MemoryStore(str(tmp_path), persist=True)

        loaded = second.get_user_by_username("alice")
        assert loaded.id == user.id
        assert loaded.roles == ["Operator"]
        restored = second.get_session(sess.id)
        assert restored.is_revoked is True
        assert restored.issued_at == sess.issued_at
        assert second.get_session_by_refresh_hash(sess.refresh_token_hash).id == sess.id
        assert (tmp_path / "state" / "auth_store.json").exists()
