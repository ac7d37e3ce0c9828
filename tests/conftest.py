"""Shared pytest fixtures for headless-auth tests.

This module provides provider configurations, credential fixtures, credential
stores, a controllable clock, and ``FakeProvider``: a stateful simulation of
an OAuth authorization server served through ``httpx.MockTransport``.
"""

import asyncio
import base64
import hashlib
import itertools
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import pytest
import pytest_asyncio

from headless_auth.auth.models import CredentialSet, ProviderConfig
from headless_auth.auth.providers import ProviderRegistry
from headless_auth.auth.token_client import TokenEndpointClient
from headless_auth.auth.token_storage import FileCredentialStore, MemoryCredentialStore

AUTH_BASE = "https://auth.example.test"
START_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

# =============================================================================
# Time Fixtures
# =============================================================================


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingWaiter:
    """Waiter that advances the fake clock instead of sleeping."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.waits: list[float] = []

    async def __call__(self, seconds: float, cancel_event: asyncio.Event) -> bool:
        self.waits.append(seconds)
        # Yield so other tasks (and cancellation) get a turn
        await asyncio.sleep(0)
        if cancel_event.is_set():
            return True
        self.clock.advance(seconds)
        return False


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock starting at a fixed time."""
    return FakeClock()


@pytest.fixture
def waiter(clock: FakeClock) -> RecordingWaiter:
    """Create a waiter that advances the fake clock."""
    return RecordingWaiter(clock)


@pytest.fixture
def sleep() -> RecordingSleep:
    """Create a sleep replacement that records backoff delays."""
    return RecordingSleep()


# =============================================================================
# Simulated Authorization Server
# =============================================================================


def _oauth_error(code: str, status_code: int = 400, description: str | None = None) -> httpx.Response:
    body: dict[str, Any] = {"error": code}
    if description:
        body["error_description"] = description
    return httpx.Response(status_code, json=body)


class FakeProvider:
    """Stateful authorization server simulation.

    Supports the device authorization grant, authorization code with PKCE,
    refresh with rotation (reusing a rotated refresh token yields
    ``invalid_grant``) and RFC 7009 revocation.

    Attributes:
        pending_polls: Device polls answered with ``authorization_pending``
            before the grant is issued.
        slow_down_polls: 1-based poll numbers answered with ``slow_down``.
        deny: Answer device polls with ``access_denied``.
        rotate: Issue a new refresh token on every refresh.
        failures: Queued responses or exceptions returned before normal handling.
        before_request: Hook called with (path, form) for every request.
        requests: (path, form) of every request received.
    """

    def __init__(self) -> None:
        self.user_code = "WDJB-MJHT"
        self.device_code = "device-code-123"
        self.device_expires_in = 1800
        self.interval: int | None = 5
        self.pending_polls = 0
        self.slow_down_polls: set[int] = set()
        self.deny = False
        self.expires_in = 3600
        self.rotate = True
        self.failures: list[httpx.Response | Exception] = []
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.revoke_status = 200
        self.revoked: list[str] = []
        self.device_polls = 0
        self.refresh_calls = 0
        self.active_refresh_tokens: set[str] = set()
        self.used_refresh_tokens: set[str] = set()
        self.before_request: Callable[[str, dict[str, str]], None] | None = None
        self._codes: dict[str, dict[str, str]] = {}
        self._counter = itertools.count(1)

    def requests_to(self, path: str) -> list[dict[str, str]]:
        return [form for request_path, form in self.requests if request_path == path]

    def issue_tokens(self) -> dict[str, Any]:
        n = next(self._counter)
        refresh_token = f"refresh-{n}"
        self.active_refresh_tokens.add(refresh_token)
        return {
            "access_token": f"access-{n}",
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "refresh_token": refresh_token,
            "scope": "read write",
        }

    def approve(self, authorization_url: str) -> tuple[str, str, str]:
        """Simulate the user approving in a browser.

        Returns:
            (redirect_uri, code, state) to deliver to the loopback listener.
        """
        params = {k: v[0] for k, v in parse_qs(urlparse(authorization_url).query).items()}
        code = f"code-{next(self._counter)}"
        self._codes[code] = {
            "challenge": params["code_challenge"],
            "redirect_uri": params["redirect_uri"],
        }
        return params["redirect_uri"], code, params["state"]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.requests.append((request.url.path, form))
        if self.before_request is not None:
            self.before_request(request.url.path, form)

        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure

        if request.url.path == "/device/code":
            body: dict[str, Any] = {
                "device_code": self.device_code,
                "user_code": self.user_code,
                "verification_uri": f"{AUTH_BASE}/device",
                "expires_in": self.device_expires_in,
            }
            if self.interval is not None:
                body["interval"] = self.interval
            return httpx.Response(200, json=body)
        if request.url.path == "/token":
            return self._token(form)
        if request.url.path == "/revoke":
            self.revoked.append(form.get("token", ""))
            self.active_refresh_tokens.discard(form.get("token", ""))
            return httpx.Response(self.revoke_status)
        return httpx.Response(404)

    def _token(self, form: dict[str, str]) -> httpx.Response:
        grant_type = form.get("grant_type")

        if grant_type == "urn:ietf:params:oauth:grant-type:device_code":
            self.device_polls += 1
            if form.get("device_code") != self.device_code:
                return _oauth_error("invalid_grant")
            if self.deny:
                return _oauth_error("access_denied")
            if self.device_polls in self.slow_down_polls:
                return _oauth_error("slow_down")
            if self.pending_polls > 0:
                self.pending_polls -= 1
                return _oauth_error("authorization_pending")
            return httpx.Response(200, json=self.issue_tokens())

        if grant_type == "authorization_code":
            issued = self._codes.pop(form.get("code", ""), None)
            if issued is None or issued["redirect_uri"] != form.get("redirect_uri"):
                return _oauth_error("invalid_grant")
            digest = hashlib.sha256(form.get("code_verifier", "").encode("ascii")).digest()
            challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
            if challenge != issued["challenge"]:
                return _oauth_error("invalid_grant", description="PKCE verification failed")
            return httpx.Response(200, json=self.issue_tokens())

        if grant_type == "refresh_token":
            self.refresh_calls += 1
            token = form.get("refresh_token", "")
            if token in self.used_refresh_tokens:
                return _oauth_error("invalid_grant", description="Refresh token reuse detected")
            if token not in self.active_refresh_tokens:
                return _oauth_error("invalid_grant")
            tokens = self.issue_tokens()
            if self.rotate:
                self.active_refresh_tokens.discard(token)
                self.used_refresh_tokens.add(token)
            else:
                self.active_refresh_tokens.discard(tokens["refresh_token"])
                del tokens["refresh_token"]
            return httpx.Response(200, json=tokens)

        return _oauth_error("unsupported_grant_type")


@pytest.fixture
def fake_provider() -> FakeProvider:
    """Create a fresh simulated authorization server."""
    return FakeProvider()


@pytest_asyncio.fixture
async def http_client(fake_provider: FakeProvider) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Create an AsyncClient whose requests are answered by the fake provider."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_provider.handler)) as client:
        yield client


@pytest.fixture
def token_client(http_client: httpx.AsyncClient) -> TokenEndpointClient:
    """Create a token endpoint client backed by the fake provider."""
    return TokenEndpointClient(http_client)


# =============================================================================
# Provider Fixtures
# =============================================================================


@pytest.fixture
def provider() -> ProviderConfig:
    """Create a provider supporting both flows and revocation."""
    return ProviderConfig(
        provider_id="example",
        authorization_endpoint=f"{AUTH_BASE}/authorize",
        device_authorization_endpoint=f"{AUTH_BASE}/device/code",
        token_endpoint=f"{AUTH_BASE}/token",
        revocation_endpoint=f"{AUTH_BASE}/revoke",
        client_id="test-client",
        scopes="read write",
    )


@pytest.fixture
def providers(provider: ProviderConfig) -> ProviderRegistry:
    """Create a registry holding the example provider."""
    return ProviderRegistry([provider])


# =============================================================================
# Credential Fixtures
# =============================================================================


def make_credential(
    access_token: str = "test_access_token_abc123",
    refresh_token: str | None = "test_refresh_token_xyz789",
    expires_at: datetime | None = None,
    provider_id: str = "example",
    account_key: str = "default",
) -> CredentialSet:
    """Build a CredentialSet; expires one hour after START_TIME by default."""
    return CredentialSet(
        provider_id=provider_id,
        account_key=account_key,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at or START_TIME + timedelta(hours=1),
        scopes=frozenset({"read", "write"}),
        issued_at=START_TIME,
    )


@pytest.fixture
def credential_factory():
    """Expose make_credential to tests."""
    return make_credential


@pytest.fixture
def valid_credential() -> CredentialSet:
    """Create a credential valid for an hour after START_TIME."""
    return make_credential()


@pytest.fixture
def expired_credential() -> CredentialSet:
    """Create a credential that expired an hour before START_TIME."""
    return make_credential(
        access_token="expired_access_token",
        expires_at=START_TIME - timedelta(hours=1),
    )


# =============================================================================
# Credential Store Fixtures
# =============================================================================


@pytest.fixture
def memory_store() -> MemoryCredentialStore:
    """Create an in-memory credential store."""
    return MemoryCredentialStore()


@pytest.fixture
def temp_credentials_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for credential storage tests."""
    creds_dir = tmp_path / ".headless-auth"
    creds_dir.mkdir(parents=True, mode=0o700)
    return creds_dir


@pytest.fixture
def temp_token_path(temp_credentials_dir: Path) -> Path:
    """Get the path for a temporary credentials.json file."""
    return temp_credentials_dir / "credentials.json"


@pytest.fixture
def file_store(temp_token_path: Path) -> FileCredentialStore:
    """Create an unencrypted file store in a temporary directory."""
    return FileCredentialStore(token_path=temp_token_path)


# =============================================================================
# CLI Test Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()
