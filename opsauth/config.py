from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from opsauth.logging import get_logger

logger = get_logger(__name__)


class SingleSessionBehavior(str, Enum):
    """What happens when a single-session role is already occupied."""

    FORCE = "force"  # evict the current holder
    REJECT = "reject"  # refuse the new login


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Authentication and session-control tunables.

    Settings are resolved once (see ``get_settings``) and never mutated in
    place; the model is frozen so services can share one instance safely.
    """

    # Lockout
    max_login_attempts: int = env_field(6, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)

    # Sessions
    session_timeout_minutes: int = env_field(30, "SESSION_TIMEOUT_MINUTES", ge=1)
    remember_me_days: int = env_field(
        7, "REMEMBER_ME_DAYS", ge=1, description="Session lifetime when remember-me is set"
    )
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "REFRESH_TOKEN_TTL_MINUTES",
        ge=1,
        description="How long a refresh token may be redeemed after issue",
    )
    inactivity_timeout_minutes: int = env_field(
        15, "INACTIVITY_TIMEOUT_MINUTES", ge=0, description="0 disables the check"
    )
    max_concurrent_sessions: int = env_field(
        2, "MAX_CONCURRENT_SESSIONS", ge=0, description="0 disables the cap"
    )
    single_session_roles: list[str] = env_field(["Operator"], "SINGLE_SESSION_ROLES")
    single_session_behavior: SingleSessionBehavior = env_field(
        SingleSessionBehavior.REJECT, "SINGLE_SESSION_BEHAVIOR"
    )
    track_last_activity: bool = env_field(True, "TRACK_LAST_ACTIVITY")
    session_retention_days: int = env_field(
        30,
        "SESSION_RETENTION_DAYS",
        ge=1,
        description="Revoked/expired sessions older than this are purged by sweep_expired",
    )

    # Password policy
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH", ge=1)
    require_uppercase: bool = env_field(True, "REQUIRE_UPPERCASE")
    require_lowercase: bool = env_field(True, "REQUIRE_LOWERCASE")
    require_numbers: bool = env_field(True, "REQUIRE_NUMBERS")
    require_special_chars: bool = env_field(True, "REQUIRE_SPECIAL_CHARS")
    force_password_change_on_first_login: bool = env_field(
        True, "FORCE_PASSWORD_CHANGE_ON_FIRST_LOGIN"
    )

    # Tokens
    token_issuer: str = env_field("opsauth", "TOKEN_ISSUER")
    token_audience: str = env_field("opsauth-console", "TOKEN_AUDIENCE")
    signing_key: str = env_field(None, "SIGNING_KEY", validate_default=True)

    # Directory service
    enable_directory_auth: bool = env_field(False, "ENABLE_DIRECTORY_AUTH")
    fallback_to_local: bool = env_field(True, "FALLBACK_TO_LOCAL")
    directory_url: str | None = env_field(None, "DIRECTORY_URL")
    directory_timeout_seconds: float = env_field(10.0, "DIRECTORY_TIMEOUT_SECONDS", gt=0)

    # Accounts
    default_role: str = env_field("Viewer", "DEFAULT_ROLE")
    reveal_remaining_attempts: bool = env_field(
        False,
        "REVEAL_REMAINING_ATTEMPTS",
        description="Include remaining attempts in failed-login responses (leaks account existence)",
    )
    bootstrap_admin_username: str = env_field("admin", "BOOTSTRAP_ADMIN_USERNAME")
    bootstrap_admin_password: str | None = env_field(None, "BOOTSTRAP_ADMIN_PASSWORD")

    # Storage
    state_dir: str = env_field("/var/lib/opsauth", "STATE_DIR")
    persist_state: bool = env_field(False, "PERSIST_STATE")

    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("single_session_behavior", mode="before")
    @classmethod
    def _validate_behavior(cls, value: Any) -> SingleSessionBehavior:
        if isinstance(value, str):
            return SingleSessionBehavior(value.strip().lower())
        return SingleSessionBehavior(value)

    @field_validator("single_session_roles", mode="before")
    @classmethod
    def _split_roles(cls, value: Any) -> list[str]:
        # Env vars arrive as "Operator,Supervisor"
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return [str(part).strip() for part in value if str(part).strip()]

    @field_validator("signing_key", mode="before")
    @classmethod
    def _ensure_signing_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so tokens remain valid across restarts
        state_dir = Path(os.getenv("STATE_DIR", "/var/lib/opsauth"))
        key_path = state_dir / ".signing_key"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except Exception as exc:
            logger.warning(
                "signing_key_dir_setup",
                error=str(exc),
                path=str(state_dir),
                message="Could not set directory permissions",
            )

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except Exception as exc:
                logger.error("signing_key_read_failed", error=str(exc), path=str(key_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".signing_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except Exception as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("signing_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist signing key; set SIGNING_KEY or make STATE_DIR writable"
            ) from exc
        logger.warning("signing_key_generated", path=str(key_path))
        return generated

    def is_single_session_role(self, role_name: str) -> bool:
        wanted = role_name.lower()
        return any(r.lower() == wanted for r in self.single_session_roles)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
