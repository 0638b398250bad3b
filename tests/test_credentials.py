"""Unit tests for credential verification strategies."""

import httpx
import pytest

from conftest import PASSWORD, FakeDirectory
from opsauth.service.credentials import (
    AuthMethod,
    DirectoryVerifier,
    FallbackChain,
    LocalVerifier,
    select_verifier,
)
from opsauth.service.directory import HttpDirectoryAuthenticator
from opsauth.service.errors import DirectoryUnavailableError
from opsauth.storage.models import User


def _user(hashing, *, directory=False, password=PASSWORD):
    return User(
        id="u-1",
        username="jdoe",
        password_hash=hashing.hash(password) if password else None,
        is_directory_user=directory,
    )


class TestPasswordHashing:
    """argon2id wrapper."""

    def test_hash_is_salted_and_not_plaintext(self, hashing):
        first = hashing.hash(PASSWORD)
        second = hashing.hash(PASSWORD)

        assert first != PASSWORD
        assert first.startswith("$argon2id$")
        assert first != second

    def test_malformed_hash_is_a_mismatch(self, hashing):
        assert hashing.verify("not-a-hash", PASSWORD) is False
        assert hashing.verify(None, PASSWORD) is False
        assert hashing.verify("", PASSWORD) is False


class TestVerifiers:
    async def test_local_verifier(self, hashing):
        user = _user(hashing)
        verifier = LocalVerifier(hashing)

        assert (await verifier.verify(user, PASSWORD)).matched is True
        wrong = await verifier.verify(user, "Wrong-Secret#1")
        assert wrong.matched is False
        assert wrong.method == AuthMethod.LOCAL

    async def test_directory_verifier_delegates(self, hashing):
        user = _user(hashing, directory=True, password=None)
        directory = FakeDirectory({"jdoe": "Dir-Secret#123"})

        result = await DirectoryVerifier(directory).verify(user, "Dir-Secret#123")

        assert result.matched is True
        assert result.method == AuthMethod.DIRECTORY
        assert directory.calls == ["jdoe"]

    async def test_directory_outage_is_a_mismatch(self, hashing):
        user = _user(hashing, directory=True, password=None)

        result = await DirectoryVerifier(FakeDirectory(unavailable=True)).verify(user, "x")

        assert result.matched is False

    async def test_fallback_chain_labels_local_fallback(self, hashing):
        user = _user(hashing, directory=True)
        chain = FallbackChain(
            DirectoryVerifier(FakeDirectory(unavailable=True)),
            LocalVerifier(hashing, AuthMethod.LOCAL_FALLBACK),
        )

        result = await chain.verify(user, PASSWORD)

        assert result.matched is True
        assert result.method == AuthMethod.LOCAL_FALLBACK


class TestSelectVerifier:
    def test_local_account_uses_local(self, hashing, settings_factory):
        verifier = select_verifier(
            _user(hashing), settings_factory(enable_directory_auth=True), hashing, None
        )

        assert isinstance(verifier, LocalVerifier)

    def test_directory_account_with_local_hash_gets_fallback(self, hashing, settings_factory):
        verifier = select_verifier(
            _user(hashing, directory=True),
            settings_factory(enable_directory_auth=True, fallback_to_local=True),
            hashing,
            FakeDirectory(),
        )

        assert isinstance(verifier, FallbackChain)

    def test_directory_account_without_fallback(self, hashing, settings_factory):
        verifier = select_verifier(
            _user(hashing, directory=True),
            settings_factory(enable_directory_auth=True, fallback_to_local=False),
            hashing,
            FakeDirectory(),
        )

        assert isinstance(verifier, DirectoryVerifier)

    def test_directory_disabled_falls_back_to_local(self, hashing, settings_factory):
        verifier = select_verifier(
            _user(hashing, directory=True),
            settings_factory(enable_directory_auth=False),
            hashing,
            FakeDirectory(),
        )

        assert isinstance(verifier, LocalVerifier)


class TestHttpDirectoryAuthenticator:
    """HTTP bridge, exercised through httpx.MockTransport."""

    @staticmethod
    def _bridge(handler):
        return HttpDirectoryAuthenticator(
            "http://directory.local/", transport=httpx.MockTransport(handler)
        )

    async def test_authenticated(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"authenticated": True})

        assert await self._bridge(handler).authenticate("jdoe", "pw") is True
        assert seen["url"] == "http://directory.local/authenticate"

    async def test_rejected_bind(self):
        bridge = self._bridge(lambda request: httpx.Response(401))

        assert await bridge.authenticate("jdoe", "pw") is False

    async def test_server_error_raises_unavailable(self):
        bridge = self._bridge(lambda request: httpx.Response(503))

        with pytest.raises(DirectoryUnavailableError):
            await bridge.authenticate("jdoe", "pw")

    async def test_transport_error_raises_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DirectoryUnavailableError):
            await self._bridge(handler).authenticate("jdoe", "pw")
