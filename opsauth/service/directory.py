from __future__ import annotations

from typing import Optional, Protocol

import httpx

from opsauth.logging import get_logger
from opsauth.service.errors import DirectoryUnavailableError

logger = get_logger(__name__)


class DirectoryAuthenticator(Protocol):
    async def authenticate(self, username: str, password: str) -> bool: ...


class HttpDirectoryAuthenticator:
    """Bridge to a directory gateway that exposes ``POST /authenticate``.

    The gateway answers 200 with ``{"authenticated": bool}``; 401/403/404
    mean the account is unknown or the bind failed. Anything else, or a
    transport failure, raises ``DirectoryUnavailableError`` so callers can
    fall back to the local credential.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0))
        self._transport = transport

    async def authenticate(self, username: str, password: str) -> bool:
        url = f"{self.base_url}/authenticate"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                resp = await client.post(url, json={"username": username, "password": password})
        except httpx.TimeoutException as exc:
            logger.error("directory_auth_timeout", username=username, url=url)
            raise DirectoryUnavailableError("directory request timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("directory_auth_transport_error", username=username, error=str(exc))
            raise DirectoryUnavailableError("directory unreachable") from exc

        if resp.status_code in (401, 403, 404):
            return False
        if resp.status_code != 200:
            logger.error(
                "directory_auth_bad_status", username=username, status_code=resp.status_code
            )
            raise DirectoryUnavailableError(
                "directory returned an unexpected status",
                detail={"status_code": resp.status_code},
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise DirectoryUnavailableError("directory returned malformed JSON") from exc
        return bool(isinstance(body, dict) and body.get("authenticated") is True)
