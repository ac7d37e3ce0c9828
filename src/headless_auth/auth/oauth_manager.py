"""OAuth manager: the caller-facing entry point for headless token handling.

Ties together the provider registry, the credential store, the authorization
engine and the refresh coordinator. A tool handler only ever needs
``acquire_token``; when that raises ``ReauthorizationRequired`` the host
drives ``start_authorization`` and shows the handle's prompt to the user.

Environment Variables:
    See ``headless_auth.config`` for the variables read by ``Settings.from_env``.
"""

import asyncio
import logging
from pathlib import Path
from types import TracebackType

import httpx

from headless_auth.auth.device_flow import Clock, Waiter, wait_or_cancel
from headless_auth.auth.engine import AuthFlowHandle, AuthorizationEngine, PromptCallback
from headless_auth.auth.errors import AuthError
from headless_auth.auth.models import CredentialSet, FlowKind, TokenStatus, utcnow
from headless_auth.auth.providers import ProviderRegistry, load_providers
from headless_auth.auth.refresh import RefreshCoordinator, Sleep
from headless_auth.auth.token_client import TokenEndpointClient
from headless_auth.auth.token_storage import (
    CredentialStore,
    FileCredentialStore,
    create_credential_store,
)
from headless_auth.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_KEY = "default"


class OAuthManager:
    """OAuth token acquisition and lifecycle for a headless process.

    Attributes:
        settings: Operator settings.
        providers: Provider configuration lookup.
        storage: Credential store.
        engine: Runs authorization flows.
        coordinator: Refreshes stored credentials.

    Example:
        ```python
        async with OAuthManager() as manager:
            try:
                token = await manager.acquire_token("github")
            except ReauthorizationRequired:
                handle = await manager.start_authorization("github")
                print(handle.prompt)
                await handle.result()
                token = await manager.acquire_token("github")
        ```
    """

    def __init__(
        self,
        providers: ProviderRegistry | None = None,
        storage: CredentialStore | None = None,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        *,
        clock: Clock = utcnow,
        waiter: Waiter = wait_or_cancel,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the manager.

        Args:
            providers: Provider registry. Loaded from ``settings.providers_file``
                if not provided.
            storage: Credential store. Created from settings if not provided.
            settings: Operator settings. Read from the environment if not provided.
            http_client: Shared HTTP client. If not provided the manager
                creates one and closes it in ``close()``.
            clock: Time source for expiry decisions.
            waiter: Cancellable wait used between device flow polls.
            sleep: Sleep used between refresh retries.
        """
        self.settings = settings or Settings.from_env()
        self.providers = providers if providers is not None else load_providers(self.settings)
        self.storage = storage if storage is not None else create_credential_store(
            self.settings.storage_backend,
            token_path=self.settings.token_path,
            encryption_key=self.settings.encryption_key,
        )

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.settings.http_timeout)
        self.token_client = TokenEndpointClient(self.http_client, timeout=self.settings.http_timeout)

        self.engine = AuthorizationEngine(
            self.providers,
            self.token_client,
            loopback_timeout=self.settings.loopback_timeout,
            clock=clock,
            waiter=waiter,
        )
        self.coordinator = RefreshCoordinator(
            self.storage,
            self.providers,
            self.token_client,
            skew_seconds=self.settings.refresh_skew,
            max_attempts=self.settings.refresh_attempts,
            clock=clock,
            sleep=sleep,
        )
        self.clock = clock

    async def __aenter__(self) -> "OAuthManager":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def token_path(self) -> Path | None:
        """Get the credential file path, or None for non-file backends."""
        if isinstance(self.storage, FileCredentialStore):
            return self.storage.token_path
        return None

    async def acquire_token(self, provider_id: str, account_key: str = DEFAULT_ACCOUNT_KEY) -> str:
        """Get a valid access token for an account, refreshing if needed.

        Raises:
            ReauthorizationRequired: If the account must be authorized (again).
            AuthError: If a refresh failed for another reason.
        """
        return await self.coordinator.get_access_token(provider_id, account_key)

    def has_valid_credential(self, provider_id: str, account_key: str = DEFAULT_ACCOUNT_KEY) -> bool:
        """Check whether a non-expired credential is stored."""
        return self.storage.get_status(provider_id, account_key, now=self.clock()) == TokenStatus.VALID

    async def start_authorization(
        self,
        provider_id: str,
        account_key: str = DEFAULT_ACCOUNT_KEY,
        flow_kind: FlowKind | None = None,
        can_open_browser: bool = False,
    ) -> AuthFlowHandle:
        """Start an authorization flow; the granted credential is stored.

        Args:
            provider_id: Configured provider id.
            account_key: Account to authorize.
            flow_kind: Flow to run. Chosen from ``can_open_browser`` and the
                provider's capabilities if not given.
            can_open_browser: Whether the host can open a local browser.

        Returns:
            Handle whose ``prompt`` the host presents to the user.
        """
        if flow_kind is None:
            flow_kind = self.engine.select_flow_kind(provider_id, can_open_browser)

        def store_credential(credential: CredentialSet) -> None:
            stored = self.storage.put(provider_id, account_key, credential)
            logger.info(
                "Stored new credential for %s/%s (rev %d)", provider_id, account_key, stored.revision
            )

        return await self.engine.start_authorization(
            provider_id, account_key, flow_kind, on_granted=store_credential
        )

    async def authenticate(
        self,
        provider_id: str,
        account_key: str = DEFAULT_ACCOUNT_KEY,
        flow_kind: FlowKind | None = None,
        can_open_browser: bool = False,
        on_prompt: PromptCallback | None = None,
    ) -> CredentialSet:
        """Run an authorization flow to completion and store the result.

        Args:
            provider_id: Configured provider id.
            account_key: Account to authorize.
            flow_kind: Flow to run, or None to choose automatically.
            can_open_browser: Whether the host can open a local browser.
            on_prompt: Receives the DevicePrompt or LoopbackPrompt to show.

        Returns:
            The granted CredentialSet.

        Raises:
            AuthError: If the flow did not succeed.
        """
        handle = await self.start_authorization(provider_id, account_key, flow_kind, can_open_browser)
        if on_prompt is not None:
            on_prompt(handle.prompt)
        return await handle.result()

    def cancel(self, handle: AuthFlowHandle | str) -> bool:
        """Cancel an in-flight authorization. Safe to call repeatedly."""
        return self.engine.cancel(handle)

    async def revoke(self, provider_id: str, account_key: str = DEFAULT_ACCOUNT_KEY) -> bool:
        """Revoke an account's tokens at the provider and delete them locally.

        Revoking an account with no stored credential is a no-op. A failing
        revocation endpoint is logged and the local credential is deleted
        anyway.

        Returns:
            True if a stored credential was removed.
        """
        credential = self.storage.get(provider_id, account_key)
        if credential is None:
            logger.debug("Nothing to revoke for %s/%s", provider_id, account_key)
            return False

        if provider_id in self.providers:
            provider = self.providers.get(provider_id)
            if credential.refresh_token is not None:
                token, hint = credential.refresh_token, "refresh_token"
            else:
                token, hint = credential.access_token, "access_token"
            try:
                await self.token_client.revoke(provider, token, token_type_hint=hint)
            except AuthError as e:
                logger.warning(
                    "Revocation for %s/%s failed (%s); removing local credential anyway",
                    provider_id,
                    account_key,
                    e.error.summary(),
                )
        else:
            logger.warning("Provider %s is no longer configured; removing credential locally", provider_id)

        deleted = self.storage.delete(provider_id, account_key)
        logger.info("Revoked credential for %s/%s", provider_id, account_key)
        return deleted

    def get_status(
        self, provider_id: str, account_key: str = DEFAULT_ACCOUNT_KEY
    ) -> tuple[TokenStatus, CredentialSet | None]:
        """Get the status of a stored credential.

        Returns:
            Tuple of (TokenStatus, CredentialSet or None).
        """
        status = self.storage.get_status(provider_id, account_key, now=self.clock())
        credential = self.storage.get(provider_id, account_key) if status != TokenStatus.MISSING else None
        return (status, credential)

    def list_accounts(self) -> list[tuple[str, str]]:
        """List (provider_id, account_key) pairs with stored credentials."""
        return self.storage.list_keys()

    async def close(self) -> None:
        """Cancel in-flight flows and release the HTTP client if owned."""
        await self.engine.cancel_all()
        if self._owns_http_client:
            await self.http_client.aclose()
