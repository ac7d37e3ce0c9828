"""OAuth authentication for headless MCP servers.

This package obtains, stores and refreshes OAuth credentials for processes
that have no guaranteed browser, using the Device Authorization Grant or an
Authorization Code + PKCE loopback redirect.

Quick Start:
    ```python
    from headless_auth.auth import OAuthManager, ReauthorizationRequired

    async with OAuthManager() as manager:
        try:
            token = await manager.acquire_token("github", "default")
        except ReauthorizationRequired:
            handle = await manager.start_authorization("github", "default")
            print(handle.prompt)  # user code + verification URI
            await handle.result()
            token = await manager.acquire_token("github", "default")
    ```
"""

from headless_auth.auth.engine import (
    AuthFlowHandle,
    AuthorizationEngine,
    FlowRegistry,
    select_flow_kind,
)
from headless_auth.auth.errors import (
    AuthError,
    ClassifiedError,
    ErrorKind,
    ReauthorizationRequired,
    RecommendedAction,
    classify_exception,
    classify_oauth_error,
    classify_response,
)
from headless_auth.auth.models import (
    CredentialSet,
    DevicePrompt,
    FlowKind,
    FlowStatus,
    LoopbackPrompt,
    ProviderConfig,
    StoredCredential,
    TokenStatus,
)
from headless_auth.auth.oauth_manager import DEFAULT_ACCOUNT_KEY, OAuthManager
from headless_auth.auth.providers import PRESETS, ProviderRegistry, load_providers
from headless_auth.auth.refresh import RefreshCoordinator
from headless_auth.auth.token_storage import (
    CredentialStore,
    CredentialStoreError,
    FileCredentialStore,
    MemoryCredentialStore,
    create_credential_store,
)

__all__ = [
    "OAuthManager",
    "DEFAULT_ACCOUNT_KEY",
    "AuthorizationEngine",
    "AuthFlowHandle",
    "FlowRegistry",
    "select_flow_kind",
    "RefreshCoordinator",
    "CredentialStore",
    "CredentialStoreError",
    "MemoryCredentialStore",
    "FileCredentialStore",
    "create_credential_store",
    "ProviderConfig",
    "ProviderRegistry",
    "PRESETS",
    "load_providers",
    "CredentialSet",
    "StoredCredential",
    "TokenStatus",
    "FlowKind",
    "FlowStatus",
    "DevicePrompt",
    "LoopbackPrompt",
    "AuthError",
    "ReauthorizationRequired",
    "ClassifiedError",
    "ErrorKind",
    "RecommendedAction",
    "classify_oauth_error",
    "classify_response",
    "classify_exception",
]
