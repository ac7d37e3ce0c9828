"""OAuth 2.0 Device Authorization Grant (RFC 8628).

States: REQUESTING -> AWAITING_USER -> POLLING -> {GRANTED, DENIED, EXPIRED,
FAILED, CANCELLED}.

Polling waits on a cancellation event with a timeout instead of sleeping, so a
cancel request ends the wait immediately rather than at the next poll.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from headless_auth.auth.errors import AuthError, ErrorKind, auth_error
from headless_auth.auth.models import (
    CredentialSet,
    DeviceFlowState,
    DevicePrompt,
    FlowKind,
    FlowStatus,
    ProviderConfig,
    utcnow,
)
from headless_auth.auth.token_client import TokenEndpointClient

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Waiter = Callable[[float, asyncio.Event], Awaitable[bool]]

# RFC 8628 section 3.2 and 3.5
DEFAULT_POLL_INTERVAL = 5
SLOW_DOWN_INCREMENT = 5
MAX_CONSECUTIVE_TRANSIENT_FAILURES = 3


async def wait_or_cancel(seconds: float, cancel_event: asyncio.Event) -> bool:
    """Wait up to ``seconds`` for ``cancel_event``.

    Returns:
        True if the event was set (cancelled), False if the time elapsed.
    """
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


class DeviceAuthorizationFlow:
    """One device authorization attempt for one account.

    Call ``request()`` to obtain the user code to show, then ``poll()`` to wait
    for the user. Nothing is persisted; ``poll()`` returns the CredentialSet.

    Attributes:
        provider: Provider being authorized against.
        account_key: Account the resulting credential belongs to.
        status: Current state machine state.
        poll_count: Token endpoint polls made so far.
        cancel_event: Set to cancel the attempt.
    """

    kind = FlowKind.DEVICE

    def __init__(
        self,
        provider: ProviderConfig,
        account_key: str,
        token_client: TokenEndpointClient,
        *,
        clock: Clock = utcnow,
        waiter: Waiter = wait_or_cancel,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.provider = provider
        self.account_key = account_key
        self.token_client = token_client
        self.clock = clock
        self.waiter = waiter
        self.cancel_event = cancel_event or asyncio.Event()
        self.status = FlowStatus.REQUESTING
        self.state: DeviceFlowState | None = None
        self.poll_count = 0

    def _transition(self, status: FlowStatus) -> None:
        logger.debug(
            "Device flow %s/%s: %s -> %s",
            self.provider.provider_id,
            self.account_key,
            self.status.value,
            status.value,
        )
        self.status = status

    def _fail(self, status: FlowStatus, error: AuthError) -> AuthError:
        self._transition(status)
        logger.info(
            "Device flow for %s/%s ended: %s",
            self.provider.provider_id,
            self.account_key,
            error.error.summary(),
        )
        return error

    @property
    def poll_interval(self) -> int | None:
        return self.state.poll_interval_seconds if self.state is not None else None

    async def request(self) -> DevicePrompt:
        """Request a device code and move to AWAITING_USER.

        Returns:
            The user code and verification URI for the host to display.

        Raises:
            AuthError: If the provider rejects the request or is unreachable.
        """
        try:
            payload = await self.token_client.request_device_authorization(self.provider)
        except AuthError as e:
            raise self._fail(FlowStatus.FAILED, e) from None

        now = self.clock()
        try:
            # Google still uses the draft name verification_url
            verification_uri = payload.get("verification_uri") or payload["verification_url"]
            interval = int(payload.get("interval") or DEFAULT_POLL_INTERVAL)
            self.state = DeviceFlowState(
                device_code=payload["device_code"],
                user_code=payload["user_code"],
                verification_uri=verification_uri,
                verification_uri_complete=payload.get("verification_uri_complete"),
                poll_interval_seconds=max(interval, 1),
                expires_at=now + timedelta(seconds=int(payload["expires_in"])),
            )
        except (KeyError, TypeError, ValueError):
            raise self._fail(
                FlowStatus.FAILED,
                auth_error(
                    ErrorKind.SERVER_ERROR,
                    description="Malformed device authorization response",
                ),
            ) from None

        self._transition(FlowStatus.AWAITING_USER)
        logger.info(
            "Device code issued for %s/%s; waiting for user at %s",
            self.provider.provider_id,
            self.account_key,
            self.state.verification_uri,
        )
        return self.state.to_prompt(now)

    async def poll(self) -> CredentialSet:
        """Poll the token endpoint until the user finishes, declines or time runs out.

        Returns:
            The granted CredentialSet.

        Raises:
            ReauthorizationRequired: On denial, expiry or cancellation.
            AuthError: On any other provider or network failure.
            RuntimeError: If ``request()`` was not called first.
        """
        if self.state is None:
            raise RuntimeError("request() must succeed before poll()")

        state = self.state
        self._transition(FlowStatus.POLLING)
        transient_failures = 0

        try:
            while True:
                wait_seconds = state.poll_interval_seconds * (2**transient_failures)
                if await self.waiter(wait_seconds, self.cancel_event):
                    raise self._fail(FlowStatus.CANCELLED, auth_error(ErrorKind.CANCELLED))

                if self.clock() >= state.expires_at:
                    raise self._fail(
                        FlowStatus.EXPIRED,
                        auth_error(
                            ErrorKind.FLOW_EXPIRED,
                            description="The device code expired before the user approved it",
                        ),
                    )

                self.poll_count += 1
                try:
                    payload = await self.token_client.poll_device_token(
                        self.provider, state.device_code
                    )
                except AuthError as e:
                    if self.cancel_event.is_set():
                        raise self._fail(
                            FlowStatus.CANCELLED, auth_error(ErrorKind.CANCELLED)
                        ) from None

                    kind = e.kind
                    if kind == ErrorKind.AUTHORIZATION_PENDING:
                        transient_failures = 0
                        continue
                    if kind == ErrorKind.RATE_LIMITED:
                        state.poll_interval_seconds += SLOW_DOWN_INCREMENT
                        transient_failures = 0
                        logger.info(
                            "Provider asked to slow down; poll interval now %ds",
                            state.poll_interval_seconds,
                        )
                        continue
                    if kind == ErrorKind.AUTHORIZATION_DENIED:
                        raise self._fail(FlowStatus.DENIED, e) from None
                    if kind == ErrorKind.FLOW_EXPIRED:
                        raise self._fail(FlowStatus.EXPIRED, e) from None
                    if e.error.retryable and transient_failures < MAX_CONSECUTIVE_TRANSIENT_FAILURES:
                        transient_failures += 1
                        logger.warning(
                            "Transient error while polling (%d/%d): %s",
                            transient_failures,
                            MAX_CONSECUTIVE_TRANSIENT_FAILURES,
                            e.error.description,
                        )
                        continue
                    raise self._fail(FlowStatus.FAILED, e) from None

                # A grant that lands after cancellation is discarded
                if self.cancel_event.is_set():
                    raise self._fail(FlowStatus.CANCELLED, auth_error(ErrorKind.CANCELLED))

                credential = CredentialSet.from_token_response(
                    payload,
                    provider=self.provider,
                    account_key=self.account_key,
                    now=self.clock(),
                )
                self._transition(FlowStatus.GRANTED)
                logger.info(
                    "Device flow for %s/%s granted after %d poll(s)",
                    self.provider.provider_id,
                    self.account_key,
                    self.poll_count,
                )
                return credential
        except asyncio.CancelledError:
            self._transition(FlowStatus.CANCELLED)
            raise
        finally:
            # Flow state is never kept past a terminal transition
            self.state = None

    def cancel(self) -> None:
        self.cancel_event.set()
