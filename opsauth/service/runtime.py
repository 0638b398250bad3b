from __future__ import annotations

import threading
from typing import Optional

from opsauth.config import Settings, get_settings, reset_settings_cache
from opsauth.logging import get_logger
from opsauth.service.audit import AuditSink, LoggingAuditSink
from opsauth.service.auth import AuthService
from opsauth.service.directory import DirectoryAuthenticator, HttpDirectoryAuthenticator
from opsauth.storage.memory import MemoryStore

logger = get_logger(__name__)


def _build_directory(settings: Settings) -> Optional[DirectoryAuthenticator]:
    if not settings.enable_directory_auth:
        return None
    if not settings.directory_url:
        logger.warning(
            "directory_auth_unconfigured",
            message="ENABLE_DIRECTORY_AUTH is set but DIRECTORY_URL is empty",
        )
        return None
    return HttpDirectoryAuthenticator(
        settings.directory_url, timeout_seconds=settings.directory_timeout_seconds
    )


class Runtime:
    """Holds the process-wide store, audit sink and auth service."""

    def __init__(self, settings: Optional[Settings] = None, audit: Optional[AuditSink] = None):
        self.settings = settings or get_settings()
        try:
            self.store = MemoryStore(
                self.settings.state_dir, persist=self.settings.persist_state
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.audit = audit or LoggingAuditSink()
        self.directory = _build_directory(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            audit=self.audit,
            directory=self.directory,
        )
        logger.info(
            "runtime_initialized",
            persist_state=self.settings.persist_state,
            directory_enabled=self.directory is not None,
            single_session_roles=self.settings.single_session_roles,
            single_session_behavior=self.settings.single_session_behavior.value,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
