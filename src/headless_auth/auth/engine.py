"""Authorization engine: runs device or loopback flows behind explicit handles.

In-flight attempts are tracked in an injected ``FlowRegistry`` keyed by
handle id, so several independent flows (for different accounts) can run at
once and nothing is held in module-level state.
"""

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime

from headless_auth.auth.device_flow import Clock, DeviceAuthorizationFlow, Waiter, wait_or_cancel
from headless_auth.auth.errors import AuthError
from headless_auth.auth.loopback_flow import DEFAULT_LOOPBACK_TIMEOUT, LoopbackAuthorizationFlow
from headless_auth.auth.models import (
    CredentialSet,
    DevicePrompt,
    FlowKind,
    FlowStatus,
    LoopbackPrompt,
    ProviderConfig,
    utcnow,
)
from headless_auth.auth.providers import ProviderRegistry
from headless_auth.auth.token_client import TokenEndpointClient

logger = logging.getLogger(__name__)

GrantCallback = Callable[[CredentialSet], None | Awaitable[None]]
PromptCallback = Callable[[DevicePrompt | LoopbackPrompt], None]
Flow = DeviceAuthorizationFlow | LoopbackAuthorizationFlow


def select_flow_kind(provider: ProviderConfig, can_open_browser: bool) -> FlowKind:
    """Choose a flow from what the host can do and what the provider supports.

    Args:
        provider: Provider to authorize against.
        can_open_browser: Whether the host can open a browser on this machine
            (and therefore receive a loopback redirect).

    Returns:
        LOOPBACK when a browser is available and the provider supports PKCE,
        otherwise DEVICE when the provider has a device endpoint.

    Raises:
        ValueError: If the provider supports neither flow.
    """
    if can_open_browser and provider.supports_loopback_flow:
        return FlowKind.LOOPBACK
    if provider.supports_device_flow:
        return FlowKind.DEVICE
    if provider.supports_loopback_flow:
        logger.warning(
            "Provider %s has no device endpoint; falling back to the loopback flow",
            provider.provider_id,
        )
        return FlowKind.LOOPBACK
    raise ValueError(
        f"Provider '{provider.provider_id}' supports neither the device flow nor PKCE"
    )


class AuthFlowHandle:
    """Caller-held reference to one in-flight authorization attempt.

    Attributes:
        id: Opaque handle id, usable with ``AuthorizationEngine.cancel``.
        provider_id: Provider being authorized against.
        account_key: Account being authorized.
        kind: Which flow is running.
        prompt: Data for the host to present to the user.
        created_at: When the attempt started.
    """

    def __init__(
        self,
        flow: Flow,
        prompt: DevicePrompt | LoopbackPrompt,
        created_at: datetime,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.provider_id = flow.provider.provider_id
        self.account_key = flow.account_key
        self.kind = flow.kind
        self.prompt = prompt
        self.created_at = created_at
        self._flow = flow
        self._task: asyncio.Task[CredentialSet] | None = None

    def __repr__(self) -> str:
        return (
            f"AuthFlowHandle(id={self.id!r}, provider_id={self.provider_id!r}, "
            f"account_key={self.account_key!r}, kind={self.kind.value}, status={self.status.value})"
        )

    @property
    def status(self) -> FlowStatus:
        return self._flow.status

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def result(self) -> CredentialSet:
        """Wait for the flow to finish.

        Cancelling the awaiting task does not cancel the flow; use ``cancel()``.

        Raises:
            AuthError: If the flow did not end in GRANTED.
        """
        if self._task is None:
            raise RuntimeError("Flow has not been started")
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        """Stop the flow. Waits and listeners are released promptly."""
        if not self.done():
            logger.info("Cancelling %s flow %s", self.kind.value, self.id)
        self._flow.cancel()


class FlowRegistry:
    """In-memory map of handle id to in-flight AuthFlowHandle."""

    def __init__(self) -> None:
        self._handles: dict[str, AuthFlowHandle] = {}

    def add(self, handle: AuthFlowHandle) -> None:
        self._handles[handle.id] = handle

    def get(self, handle_id: str) -> AuthFlowHandle | None:
        return self._handles.get(handle_id)

    def remove(self, handle_id: str) -> AuthFlowHandle | None:
        return self._handles.pop(handle_id, None)

    def active(self, provider_id: str | None = None, account_key: str | None = None) -> list[AuthFlowHandle]:
        """List in-flight handles, optionally for one provider/account."""
        return [
            handle
            for handle in self._handles.values()
            if (provider_id is None or handle.provider_id == provider_id)
            and (account_key is None or handle.account_key == account_key)
        ]

    def __len__(self) -> int:
        return len(self._handles)


class AuthorizationEngine:
    """Obtains a first CredentialSet through the device or loopback flow.

    The engine never persists credentials: pass ``on_granted`` to
    ``start_authorization`` to store the result.

    Attributes:
        providers: Provider configuration lookup.
        token_client: Client for provider endpoints.
        registry: In-flight handles.
        loopback_timeout: Seconds a loopback flow waits for its callback.

    Example:
        ```python
        engine = AuthorizationEngine(providers, TokenEndpointClient(http_client))
        handle = await engine.start_authorization("github", "default", FlowKind.DEVICE)
        print(handle.prompt.user_code, handle.prompt.verification_uri)
        credential = await handle.result()
        ```
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        token_client: TokenEndpointClient,
        *,
        registry: FlowRegistry | None = None,
        loopback_timeout: float = DEFAULT_LOOPBACK_TIMEOUT,
        clock: Clock = utcnow,
        waiter: Waiter = wait_or_cancel,
    ) -> None:
        self.providers = providers
        self.token_client = token_client
        self.registry = registry if registry is not None else FlowRegistry()
        self.loopback_timeout = loopback_timeout
        self.clock = clock
        self.waiter = waiter

    def select_flow_kind(self, provider_id: str, can_open_browser: bool) -> FlowKind:
        return select_flow_kind(self.providers.get(provider_id), can_open_browser)

    async def start_authorization(
        self,
        provider_id: str,
        account_key: str,
        flow_kind: FlowKind,
        on_granted: GrantCallback | None = None,
    ) -> AuthFlowHandle:
        """Start a flow and return once there is something to show the user.

        For the device flow this means the device code has been issued; for
        the loopback flow, the listener is bound and the URL is built.

        Args:
            provider_id: Configured provider id.
            account_key: Account the credential will belong to.
            flow_kind: Flow to run.
            on_granted: Called with the credential before the handle resolves.

        Returns:
            Handle exposing the prompt, status, result and cancellation.

        Raises:
            KeyError: If the provider is unknown.
            ValueError: If the provider does not support ``flow_kind``.
            AuthError: If the device authorization request fails.
        """
        provider = self.providers.get(provider_id)
        flow: Flow
        prompt: DevicePrompt | LoopbackPrompt

        if flow_kind == FlowKind.DEVICE:
            if not provider.supports_device_flow:
                raise ValueError(f"Provider '{provider_id}' has no device authorization endpoint")
            flow = DeviceAuthorizationFlow(
                provider,
                account_key,
                self.token_client,
                clock=self.clock,
                waiter=self.waiter,
            )
            prompt = await flow.request()
            run = flow.poll
        else:
            flow = LoopbackAuthorizationFlow(
                provider,
                account_key,
                self.token_client,
                timeout=self.loopback_timeout,
                clock=self.clock,
            )
            prompt = await flow.start()
            run = flow.complete

        handle = AuthFlowHandle(flow, prompt, created_at=self.clock())
        self.registry.add(handle)
        handle._task = asyncio.create_task(
            self._run(run, on_granted), name=f"authorize-{provider_id}-{handle.id[:8]}"
        )
        handle._task.add_done_callback(lambda task: self._finished(handle, task))
        logger.info(
            "Started %s authorization for %s/%s (handle %s)",
            flow_kind.value,
            provider_id,
            account_key,
            handle.id,
        )
        return handle

    async def _run(
        self,
        run: Callable[[], Awaitable[CredentialSet]],
        on_granted: GrantCallback | None,
    ) -> CredentialSet:
        credential = await run()
        if on_granted is not None:
            outcome = on_granted(credential)
            if inspect.isawaitable(outcome):
                await outcome
        return credential

    def _finished(self, handle: AuthFlowHandle, task: "asyncio.Task[CredentialSet]") -> None:
        self.registry.remove(handle.id)
        if task.cancelled():
            return
        # Retrieve the exception so unawaited handles do not warn
        error = task.exception()
        if error is not None and not isinstance(error, AuthError):
            logger.error("Authorization flow %s crashed", handle.id, exc_info=error)

    def cancel(self, handle: AuthFlowHandle | str) -> bool:
        """Cancel an in-flight flow by handle or handle id.

        Returns:
            True if a running flow was signalled, False if it had already
            finished or is unknown.
        """
        handle_id = handle if isinstance(handle, str) else handle.id
        active = self.registry.get(handle_id)
        if active is None:
            return False
        active.cancel()
        return True

    async def cancel_all(self) -> None:
        """Cancel every in-flight flow and wait for them to release resources."""
        handles = self.registry.active()
        for handle in handles:
            handle.cancel()
        tasks = [handle._task for handle in handles if handle._task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def authorize(
        self,
        provider_id: str,
        account_key: str,
        flow_kind: FlowKind,
        on_prompt: PromptCallback | None = None,
        on_granted: GrantCallback | None = None,
    ) -> CredentialSet:
        """Start a flow, hand its prompt to ``on_prompt`` and wait for the result."""
        handle = await self.start_authorization(provider_id, account_key, flow_kind, on_granted)
        if on_prompt is not None:
            on_prompt(handle.prompt)
        return await handle.result()
