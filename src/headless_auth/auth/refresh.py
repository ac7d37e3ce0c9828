"""Concurrency-safe access token refresh.

``RefreshCoordinator`` is the only component that rewrites stored
credentials. Refreshes for one (provider, account) pair are serialized by an
``asyncio.Lock``, so N concurrent callers holding an expired token cause
exactly one refresh request and all receive the same new access token.
Writes go through ``compare_and_swap`` against the value read under the lock.
"""

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from typing import Any

from headless_auth.auth.device_flow import Clock
from headless_auth.auth.errors import AuthError, ErrorKind, ReauthorizationRequired, auth_error
from headless_auth.auth.models import CredentialSet, ProviderConfig, utcnow
from headless_auth.auth.providers import ProviderRegistry
from headless_auth.auth.token_client import TokenEndpointClient
from headless_auth.auth.token_storage import CredentialStore

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

DEFAULT_SKEW_SECONDS = 60
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 0.5

# Retried with backoff; everything else surfaces on the first failure
TRANSIENT_REFRESH_ERRORS = frozenset(
    {ErrorKind.TRANSIENT_NETWORK, ErrorKind.SERVER_ERROR, ErrorKind.RATE_LIMITED}
)


class RefreshCoordinator:
    """Returns valid access tokens, refreshing them when they near expiry.

    Attributes:
        store: Credential store holding the CredentialSets.
        providers: Provider configuration lookup.
        token_client: Client for the provider token endpoint.
        skew_seconds: Refresh this long before ``expires_at``.
        max_attempts: Refresh attempts for transient failures.
        backoff_base: First retry delay in seconds; doubles per attempt.

    Example:
        ```python
        coordinator = RefreshCoordinator(store, providers, token_client)
        access_token = await coordinator.get_access_token("github", "default")
        ```
    """

    def __init__(
        self,
        store: CredentialStore,
        providers: ProviderRegistry,
        token_client: TokenEndpointClient,
        *,
        skew_seconds: float = DEFAULT_SKEW_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.providers = providers
        self.token_client = token_client
        self.skew_seconds = skew_seconds
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.clock = clock
        self.sleep = sleep
        # Entries live only while a caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, provider_id: str, account_key: str) -> asyncio.Lock:
        key = (provider_id, account_key)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _is_fresh(self, credential: CredentialSet) -> bool:
        return not credential.is_expired(buffer_seconds=self.skew_seconds, now=self.clock())

    def _read(self, provider_id: str, account_key: str) -> CredentialSet:
        credential = self.store.get(provider_id, account_key)
        if credential is None:
            raise auth_error(
                ErrorKind.CREDENTIAL_MISSING,
                description=f"No credential stored for {provider_id}/{account_key}",
            )
        return credential

    async def get_access_token(self, provider_id: str, account_key: str) -> str:
        """Get a valid access token, refreshing it if needed.

        Raises:
            ReauthorizationRequired: If there is no usable credential or the
                provider rejected the refresh token.
            AuthError: If the refresh failed for another reason, including a
                credential whose provider is no longer configured.
        """
        credential = await self.get_credential(provider_id, account_key)
        return credential.access_token

    async def get_credential(self, provider_id: str, account_key: str) -> CredentialSet:
        """Get a valid CredentialSet, refreshing it if needed."""
        credential = self._read(provider_id, account_key)
        if self._is_fresh(credential):
            return credential

        async with self._lock_for(provider_id, account_key):
            return await self._refresh_locked(provider_id, account_key)

    async def _refresh_locked(self, provider_id: str, account_key: str) -> CredentialSet:
        # Another caller may have refreshed while this one waited for the lock
        current = self._read(provider_id, account_key)
        if self._is_fresh(current):
            logger.debug("Credential for %s/%s already refreshed", provider_id, account_key)
            return current
        if current.refresh_token is None:
            return self._without_refresh_token(current)

        provider = self._provider_for(provider_id, account_key)
        refreshed = await self._refresh(provider, current, current.refresh_token)
        if self.store.compare_and_swap(provider_id, account_key, current, refreshed):
            return self._committed(current, refreshed)

        latest = self.store.get(provider_id, account_key)
        if latest is None:
            # Revoked or deleted mid-refresh; do not resurrect it
            raise auth_error(
                ErrorKind.CREDENTIAL_MISSING,
                description=f"Credential for {provider_id}/{account_key} was removed during refresh",
            )
        if self._is_fresh(latest):
            return latest
        if latest.refresh_token is None:
            return self._without_refresh_token(latest)

        logger.warning(
            "Stored credential for %s/%s changed during refresh; retrying once",
            provider_id,
            account_key,
        )
        # A rotated token already spent by the first request must not be sent again
        rotated = refreshed.refresh_token != current.refresh_token
        if latest.refresh_token != current.refresh_token or not rotated:
            refreshed = await self._refresh(provider, latest, latest.refresh_token)
        if self.store.compare_and_swap(provider_id, account_key, latest, refreshed):
            return self._committed(latest, refreshed)

        raise auth_error(
            ErrorKind.CONCURRENT_MODIFICATION,
            description=f"Credential for {provider_id}/{account_key} kept changing during refresh",
        )

    def _without_refresh_token(self, credential: CredentialSet) -> CredentialSet:
        if not credential.is_expired(buffer_seconds=0, now=self.clock()):
            return credential
        self.store.delete(credential.provider_id, credential.account_key)
        logger.warning(
            "Credential for %s/%s expired and has no refresh token; removed",
            credential.provider_id,
            credential.account_key,
        )
        raise auth_error(
            ErrorKind.CREDENTIAL_MISSING,
            description=(
                f"Credential for {credential.provider_id}/{credential.account_key} "
                "expired and cannot be refreshed"
            ),
        )

    def _provider_for(self, provider_id: str, account_key: str) -> ProviderConfig:
        try:
            return self.providers.get(provider_id)
        except KeyError:
            raise auth_error(
                ErrorKind.INVALID_REQUEST,
                description=(
                    f"Cannot refresh {provider_id}/{account_key}: "
                    f"provider {provider_id!r} is not configured"
                ),
            ) from None

    async def _refresh(
        self, provider: ProviderConfig, current: CredentialSet, refresh_token: str
    ) -> CredentialSet:
        payload = await self._request_refresh(provider, current, refresh_token)
        return CredentialSet.from_token_response(
            payload,
            provider=provider,
            account_key=current.account_key,
            now=self.clock(),
            previous=current,
        )

    def _committed(self, expected: CredentialSet, refreshed: CredentialSet) -> CredentialSet:
        logger.info(
            "Refreshed access token for %s/%s", refreshed.provider_id, refreshed.account_key
        )
        return refreshed.with_revision(expected.revision + 1)

    async def _request_refresh(
        self, provider: ProviderConfig, credential: CredentialSet, refresh_token: str
    ) -> dict[str, Any]:
        attempt = 0
        while True:
            try:
                return await self.token_client.refresh(provider, refresh_token)
            except AuthError as e:
                if e.kind == ErrorKind.INVALID_GRANT:
                    # Includes reuse of a rotated refresh token: the account must re-authorize
                    self.store.delete(credential.provider_id, credential.account_key)
                    logger.warning(
                        "Refresh token for %s/%s was rejected; credential removed",
                        credential.provider_id,
                        credential.account_key,
                    )
                    raise ReauthorizationRequired(e.error) from None
                if e.kind not in TRANSIENT_REFRESH_ERRORS or attempt + 1 >= self.max_attempts:
                    raise
                delay = self.backoff_base * 2**attempt
                logger.warning(
                    "Refresh for %s/%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    credential.provider_id,
                    credential.account_key,
                    e.kind.value,
                    delay,
                    attempt + 1,
                    self.max_attempts,
                )
                await self.sleep(delay)
                attempt += 1
