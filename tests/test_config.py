"""Settings resolution, log redaction and runtime wiring."""

import pytest
from pydantic import ValidationError
from structlog.contextvars import get_contextvars, merge_contextvars

from conftest import PASSWORD
from opsauth.config import (
    Settings,
    SingleSessionBehavior,
    get_settings,
    reset_settings_cache,
)
from opsauth.logging import (
    REDACTED,
    _redact_credentials,
    auth_call_context,
    bind_subject,
    get_correlation_id,
)
from opsauth.service import runtime as runtime_module
from opsauth.service.directory import HttpDirectoryAuthenticator


class TestSettings:
    def test_defaults(self, settings):
        assert settings.max_login_attempts == 6
        assert settings.lockout_minutes == 15
        assert settings.session_timeout_minutes == 30
        assert settings.max_concurrent_sessions == 2
        assert settings.single_session_roles == ["Operator"]
        assert settings.single_session_behavior == SingleSessionBehavior.REJECT

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
        monkeypatch.setenv("SINGLE_SESSION_ROLES", "Operator, Maintenance ,")
        monkeypatch.setenv("SINGLE_SESSION_BEHAVIOR", "FORCE")
        monkeypatch.setenv("TRACK_LAST_ACTIVITY", "false")

        settings = Settings.from_env()

        assert settings.max_login_attempts == 3
        assert settings.single_session_roles == ["Operator", "Maintenance"]
        assert settings.single_session_behavior == SingleSessionBehavior.FORCE
        assert settings.track_last_activity is False

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("LOCKOUT_MINUTES", raising=False)
        (tmp_path / ".env").write_text("LOCKOUT_MINUTES=45\n")

        assert Settings.from_env().lockout_minutes == 45

    def test_environment_beats_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("LOCKOUT_MINUTES=45\n")
        monkeypatch.setenv("LOCKOUT_MINUTES", "20")

        assert Settings.from_env().lockout_minutes == 20

    def test_signing_key_generated_once(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))

        first = Settings(signing_key=None)
        second = Settings(signing_key=None)

        assert len(first.signing_key) >= 32
        assert first.signing_key == second.signing_key
        assert (tmp_path / ".signing_key").read_text() == first.signing_key

    def test_rejects_out_of_range_values(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(max_login_attempts=0)
        with pytest.raises(ValidationError):
            settings_factory(single_session_behavior="sometimes")

    def test_frozen(self, settings):
        with pytest.raises(ValidationError):
            settings.max_login_attempts = 1

    def test_single_session_role_match_ignores_case(self, settings):
        assert settings.is_single_session_role("operator") is True
        assert settings.is_single_session_role("Viewer") is False

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("LOCKOUT_MINUTES", "25")
        reset_settings_cache()

        assert get_settings().lockout_minutes == 25


class TestLogRedaction:
    def test_credentials_are_masked_whole(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "x",
                "password": "Valve-Control#42",
                "refresh_token": "abcdefgh",
                "password_hash": "$argon2id$v=19$m=65536$abc",
                "signing_key": "k" * 40,
            },
        )

        assert event["password"] == REDACTED
        assert event["refresh_token"] == REDACTED
        assert event["password_hash"] == REDACTED
        assert event["signing_key"] == REDACTED

    def test_operational_fields_pass_through(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "session_cap_enforced",
                "user_id": "u-1",
                "session_id": "s-1",
                "token_status": "expired",
                "max_concurrent_sessions": 2,
            },
        )

        assert event["user_id"] == "u-1"
        assert event["session_id"] == "s-1"
        assert event["token_status"] == "expired"
        assert event["max_concurrent_sessions"] == 2

    def test_email_keeps_domain(self):
        event = _redact_credentials(None, "info", {"email": "alice@plant.example"})

        assert event["email"] == "a***@plant.example"


class TestLogContext:
    def test_subject_is_bound_for_the_call_only(self):
        with auth_call_context() as cid:
            bind_subject(user_id="u-1", session_id="s-1")
            context = get_contextvars()
            assert context["correlation_id"] == cid
            assert context["user_id"] == "u-1"
            assert context["session_id"] == "s-1"

        assert "user_id" not in get_contextvars()
        assert get_correlation_id() is None

    def test_nested_call_keeps_outer_correlation_id(self):
        with auth_call_context() as outer:
            with auth_call_context() as inner:
                bind_subject(user_id="u-2")
            assert inner == outer
            assert "user_id" not in get_contextvars()

    def test_merged_into_log_events(self):
        with auth_call_context("cid-1"):
            bind_subject(user_id="u-1")
            event = merge_contextvars(None, "info", {"event": "login_failed"})

        assert event["correlation_id"] == "cid-1"
        assert event["user_id"] == "u-1"

    async def test_facade_call_leaves_no_context_behind(self, auth_service, make_user):
        make_user("viewer1")

        await auth_service.login("viewer1", PASSWORD)

        assert get_contextvars() == {}


class TestRuntime:
    def test_reset_builds_fresh_runtime(self):
        first = runtime_module.reset_runtime_for_tests()
        second = runtime_module.reset_runtime_for_tests()

        assert first is not second
        assert runtime_module.get_runtime() is second
        assert second.auth.store is second.store

    def test_reset_refused_outside_test_mode(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "false")

        with pytest.raises(RuntimeError):
            runtime_module.reset_runtime_for_tests()

    def test_directory_wiring(self, settings_factory):
        unconfigured = runtime_module.Runtime(settings_factory(enable_directory_auth=True))
        configured = runtime_module.Runtime(
            settings_factory(enable_directory_auth=True, directory_url="http://dir.local")
        )

        assert unconfigured.directory is None
        assert isinstance(configured.directory, HttpDirectoryAuthenticator)

    async def test_bootstrap_script(self):
        from scripts.bootstrap_admin import bootstrap_admin

        created = await bootstrap_admin("root", "Plant-Console#2024")
        again = await bootstrap_admin("root", "Plant-Console#2024")

        assert created["status"] == "created"
        assert again["status"] == "already_admin"
        assert runtime_module.get_runtime().store.get_user_by_username("root") is not None
