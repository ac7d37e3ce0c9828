"""End-to-end tests: authorization, storage, refresh and revocation together.

The authorization server is the in-process FakeProvider; the loopback
listener is real and is driven by an httpx client playing the browser.
"""

import asyncio
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from cryptography.fernet import Fernet

from headless_auth.auth.errors import ErrorKind, ReauthorizationRequired
from headless_auth.auth.models import DevicePrompt, FlowKind
from headless_auth.auth.oauth_manager import OAuthManager
from headless_auth.auth.providers import ProviderRegistry
from headless_auth.auth.token_storage import (
    CredentialStore,
    CredentialStoreError,
    FileCredentialStore,
    MemoryCredentialStore,
)
from headless_auth.config import Settings

ManagerFactory = Callable[[CredentialStore], OAuthManager]


@pytest.fixture
def make_manager(
    providers: ProviderRegistry,
    http_client: httpx.AsyncClient,
    clock,
    waiter,
    sleep,
    tmp_path: Path,
) -> ManagerFactory:
    """Build managers that share the fake provider, clock and HTTP client."""
    settings = Settings(
        storage_backend="memory",
        token_path=tmp_path / "unused.json",
        providers_file=tmp_path / "providers.yaml",
        loopback_timeout=5,
    )

    def factory(storage: CredentialStore) -> OAuthManager:
        return OAuthManager(
            providers, storage, settings, http_client, clock=clock, waiter=waiter, sleep=sleep
        )

    return factory


async def _complete_in_browser(redirect_uri: str, code: str, state: str) -> httpx.Response:
    async with httpx.AsyncClient(trust_env=False, timeout=5.0) as browser:
        return await browser.get(redirect_uri, params={"code": code, "state": state})


@pytest.mark.integration
class TestDeviceFlowLifecycle:
    """Device authorization followed by refreshes."""

    @pytest.mark.asyncio
    async def test_should_authorize_then_refresh(
        self, make_manager: ManagerFactory, fake_provider, clock, waiter
    ) -> None:
        """Verify the full headless lifecycle for one account."""
        fake_provider.pending_polls = 2
        async with make_manager(MemoryCredentialStore()) as manager:
            with pytest.raises(ReauthorizationRequired):
                await manager.acquire_token("example")

            handle = await manager.start_authorization("example")
            assert isinstance(handle.prompt, DevicePrompt)
            assert handle.prompt.user_code == "WDJB-MJHT"
            await handle.result()

            assert waiter.waits == [5, 5, 5]
            assert await manager.acquire_token("example") == "access-1"

            # Inside the refresh skew
            clock.advance(3600 - 30)
            assert await manager.acquire_token("example") == "access-2"
            assert fake_provider.refresh_calls == 1
            stored = manager.storage.get("example", "default")
            assert stored.refresh_token == "refresh-2"
            assert stored.revision == 2

            # Fresh again: no further network traffic
            assert await manager.acquire_token("example") == "access-2"
            assert fake_provider.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_should_refresh_once_for_concurrent_tool_calls(
        self, make_manager: ManagerFactory, fake_provider, clock
    ) -> None:
        """Verify concurrent callers after expiry share one refresh."""
        async with make_manager(MemoryCredentialStore()) as manager:
            await manager.authenticate("example", flow_kind=FlowKind.DEVICE)
            clock.advance(7200)

            tokens = await asyncio.gather(*(manager.acquire_token("example") for _ in range(10)))

            assert set(tokens) == {"access-2"}
            assert fake_provider.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_should_require_login_after_rotated_token_reuse(
        self, make_manager: ManagerFactory, fake_provider, clock
    ) -> None:
        """Verify reusing a rotated refresh token invalidates the account."""
        store = MemoryCredentialStore()
        async with make_manager(store) as manager:
            original = await manager.authenticate("example", flow_kind=FlowKind.DEVICE)
            clock.advance(7200)
            await manager.acquire_token("example")

            # A stale copy (e.g. restored from backup) still holds refresh-1
            store.put("example", "default", original)
            with pytest.raises(ReauthorizationRequired) as exc_info:
                await manager.acquire_token("example")

            assert exc_info.value.kind == ErrorKind.INVALID_GRANT
            assert store.get("example", "default") is None

    @pytest.mark.asyncio
    async def test_should_keep_accounts_independent(
        self, make_manager: ManagerFactory
    ) -> None:
        """Verify two accounts of one provider hold separate credentials."""
        async with make_manager(MemoryCredentialStore()) as manager:
            work = await manager.authenticate("example", "work", flow_kind=FlowKind.DEVICE)
            home = await manager.authenticate("example", "home", flow_kind=FlowKind.DEVICE)

            assert await manager.acquire_token("example", "work") == work.access_token
            assert await manager.acquire_token("example", "home") == home.access_token

            await manager.revoke("example", "work")
            assert manager.list_accounts() == [("example", "home")]


@pytest.mark.integration
class TestLoopbackFlowLifecycle:
    """Loopback authorization persisted to an encrypted file."""

    @pytest.mark.asyncio
    async def test_should_persist_across_managers(
        self, make_manager: ManagerFactory, fake_provider, temp_token_path: Path
    ) -> None:
        """Verify a credential stored by one process is usable by the next."""
        key = Fernet.generate_key()

        async with make_manager(FileCredentialStore(temp_token_path, encryption_key=key)) as manager:
            handle = await manager.start_authorization("example", flow_kind=FlowKind.LOOPBACK)
            redirect_uri, code, state = fake_provider.approve(handle.prompt.authorization_url)

            response = await _complete_in_browser(redirect_uri, code, state)
            credential = await handle.result()
            assert response.status_code == 200

        assert b"access-" not in temp_token_path.read_bytes()
        requests_before = len(fake_provider.requests)

        async with make_manager(FileCredentialStore(temp_token_path, encryption_key=key)) as manager:
            assert await manager.acquire_token("example") == credential.access_token
        assert len(fake_provider.requests) == requests_before

        wrong_key = FileCredentialStore(temp_token_path, encryption_key=Fernet.generate_key())
        with pytest.raises(CredentialStoreError):
            wrong_key.get("example", "default")

    @pytest.mark.asyncio
    async def test_should_not_store_anything_on_state_mismatch(
        self, make_manager: ManagerFactory, fake_provider
    ) -> None:
        """Verify a forged callback leaves the store empty."""
        async with make_manager(MemoryCredentialStore()) as manager:
            handle = await manager.start_authorization("example", flow_kind=FlowKind.LOOPBACK)
            redirect_uri, code, _ = fake_provider.approve(handle.prompt.authorization_url)

            response = await _complete_in_browser(redirect_uri, code, "forged")
            with pytest.raises(ReauthorizationRequired) as exc_info:
                await handle.result()

            assert response.status_code == 400
            assert exc_info.value.kind == ErrorKind.STATE_MISMATCH
            assert manager.list_accounts() == []


@pytest.mark.integration
class TestRevocation:
    """Revocation against the provider."""

    @pytest.mark.asyncio
    async def test_should_revoke_at_provider_and_locally(
        self, make_manager: ManagerFactory, fake_provider
    ) -> None:
        """Verify revoked refresh tokens can no longer be used."""
        async with make_manager(MemoryCredentialStore()) as manager:
            credential = await manager.authenticate("example", flow_kind=FlowKind.DEVICE)

            assert await manager.revoke("example") is True
            assert fake_provider.revoked == [credential.refresh_token]
            assert credential.refresh_token not in fake_provider.active_refresh_tokens

            with pytest.raises(ReauthorizationRequired):
                await manager.acquire_token("example")
            assert await manager.revoke("example") is False
