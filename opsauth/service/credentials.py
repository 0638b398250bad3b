from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from opsauth.config import Settings
from opsauth.logging import get_logger
from opsauth.service.directory import DirectoryAuthenticator
from opsauth.service.errors import DirectoryUnavailableError
from opsauth.storage.models import User

logger = get_logger(__name__)


class AuthMethod(str, Enum):
    LOCAL = "Local"
    DIRECTORY = "ActiveDirectory"
    LOCAL_FALLBACK = "LocalFallback"


@dataclass(frozen=True)
class Verification:
    matched: bool
    method: AuthMethod


class PasswordHashing:
    """argon2id hashing that never raises on bad input."""

    def __init__(self, **hasher_params) -> None:
        # hasher_params tune argon2 cost (time_cost, memory_cost, parallelism)
        self._pwd_hasher = PasswordHasher(type=Type.ID, **hasher_params)
        # Burned on unknown usernames so the miss costs one full verify
        self._dummy_hash = self._pwd_hasher.hash("opsauth-dummy-credential")

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, stored_hash: Optional[str], password: Optional[str]) -> bool:
        if not stored_hash or password is None:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def dummy_verify(self, password: Optional[str]) -> None:
        self.verify(self._dummy_hash, password or "")


class CredentialVerifier(Protocol):
    async def verify(self, user: User, secret: str) -> Verification: ...


class LocalVerifier:
    def __init__(self, hashing: PasswordHashing, method: AuthMethod = AuthMethod.LOCAL) -> None:
        self.hashing = hashing
        self.method = method

    async def verify(self, user: User, secret: str) -> Verification:
        matched = await asyncio.to_thread(self.hashing.verify, user.password_hash, secret)
        return Verification(matched=matched, method=self.method)


class DirectoryVerifier:
    def __init__(self, directory: Optional[DirectoryAuthenticator]) -> None:
        self.directory = directory

    async def verify(self, user: User, secret: str) -> Verification:
        if self.directory is None:
            logger.warning("directory_not_configured", username=user.username)
            return Verification(matched=False, method=AuthMethod.DIRECTORY)
        try:
            matched = await self.directory.authenticate(user.username, secret)
        except DirectoryUnavailableError as exc:
            logger.warning(
                "directory_auth_unavailable", username=user.username, error=exc.message
            )
            matched = False
        return Verification(matched=bool(matched), method=AuthMethod.DIRECTORY)


class FallbackChain:
    """Try the directory first, then the local hash under its own label."""

    def __init__(self, primary: CredentialVerifier, fallback: CredentialVerifier) -> None:
        self.primary = primary
        self.fallback = fallback

    async def verify(self, user: User, secret: str) -> Verification:
        result = await self.primary.verify(user, secret)
        if result.matched:
            return result
        logger.info("directory_auth_fallback", username=user.username)
        return await self.fallback.verify(user, secret)


def select_verifier(
    user: User,
    settings: Settings,
    hashing: PasswordHashing,
    directory: Optional[DirectoryAuthenticator],
) -> CredentialVerifier:
    if not (user.is_directory_user and settings.enable_directory_auth):
        return LocalVerifier(hashing)
    primary = DirectoryVerifier(directory)
    if settings.fallback_to_local and user.password_hash:
        return FallbackChain(primary, LocalVerifier(hashing, AuthMethod.LOCAL_FALLBACK))
    return primary
