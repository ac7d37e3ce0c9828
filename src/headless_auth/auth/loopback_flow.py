"""OAuth authorization code flow with PKCE over a loopback redirect.

States: STARTING -> LISTENING -> AWAITING_CALLBACK -> EXCHANGING ->
{GRANTED, FAILED, CANCELLED}.

The callback listener binds an ephemeral port on the loopback interface only
and is closed on every exit path.
"""

import asyncio
import html
import logging
import socket
from datetime import timedelta
from urllib.parse import urlencode

from aiohttp import web

from headless_auth.auth.device_flow import Clock
from headless_auth.auth.errors import (
    AuthError,
    ClassifiedError,
    ErrorKind,
    auth_error,
    classified,
    classify_oauth_error,
    to_exception,
)
from headless_auth.auth.models import (
    CredentialSet,
    FlowKind,
    FlowStatus,
    LoopbackFlowState,
    LoopbackPrompt,
    ProviderConfig,
    utcnow,
)
from headless_auth.auth.pkce import generate_pkce_pair, generate_state, states_match
from headless_auth.auth.token_client import TokenEndpointClient

logger = logging.getLogger(__name__)

DEFAULT_LOOPBACK_TIMEOUT = 300  # 5 minutes

_SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authorization Successful</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 50px;">
<h1>Authorization Successful</h1>
<p>You can close this window and return to your agent.</p>
</body>
</html>
"""

_FAILURE_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authorization Failed</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 50px;">
<h1>Authorization Failed</h1>
<p>{message}</p>
<p>Please close this window and try again.</p>
</body>
</html>
"""


def build_authorization_url(
    provider: ProviderConfig,
    redirect_uri: str,
    code_challenge: str,
    state: str,
) -> str:
    """Build the authorization URL for the browser.

    Args:
        provider: Provider configuration.
        redirect_uri: Exact loopback redirect URI.
        code_challenge: S256 PKCE challenge.
        state: CSRF state value.

    Returns:
        Authorization endpoint URL with the query string appended.
    """
    params = {
        "response_type": "code",
        "client_id": provider.client_id,
        "redirect_uri": redirect_uri,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
    }
    if provider.scopes:
        params["scope"] = provider.scope_string()
    params.update(provider.extra_authorize_params)

    separator = "&" if "?" in provider.authorization_endpoint else "?"
    return f"{provider.authorization_endpoint}{separator}{urlencode(params)}"


def _bind_loopback_socket(host: str) -> socket.socket:
    """Bind an ephemeral port on the loopback interface."""
    if host == "::1":
        sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
        bind_host = "::1"
    else:
        # "localhost" may resolve to a non-loopback address on odd hosts
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        bind_host = "127.0.0.1"
    try:
        sock.bind((bind_host, 0))
    except OSError:
        sock.close()
        raise
    return sock


class LoopbackAuthorizationFlow:
    """One loopback authorization attempt for one account.

    Call ``start()`` to bind the listener and get the authorization URL, then
    ``complete()`` to wait for the browser redirect and exchange the code.

    Attributes:
        provider: Provider being authorized against.
        account_key: Account the resulting credential belongs to.
        timeout: Seconds to wait for the callback.
        status: Current state machine state.
        exchange_attempted: Whether the token exchange step was reached.
        cancel_event: Set to cancel the attempt.
    """

    kind = FlowKind.LOOPBACK

    def __init__(
        self,
        provider: ProviderConfig,
        account_key: str,
        token_client: TokenEndpointClient,
        *,
        timeout: float = DEFAULT_LOOPBACK_TIMEOUT,
        clock: Clock = utcnow,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if not provider.supports_pkce:
            raise ValueError(f"Provider '{provider.provider_id}' does not support PKCE")
        self.provider = provider
        self.account_key = account_key
        self.token_client = token_client
        self.timeout = timeout
        self.clock = clock
        self.cancel_event = cancel_event or asyncio.Event()
        self.status = FlowStatus.STARTING
        self.state: LoopbackFlowState | None = None
        self.exchange_attempted = False
        self._runner: web.AppRunner | None = None
        self._callback: asyncio.Future[str | ClassifiedError] | None = None

    def _transition(self, status: FlowStatus) -> None:
        logger.debug(
            "Loopback flow %s/%s: %s -> %s",
            self.provider.provider_id,
            self.account_key,
            self.status.value,
            status.value,
        )
        self.status = status

    def _fail(self, status: FlowStatus, error: AuthError) -> AuthError:
        self._transition(status)
        logger.info(
            "Loopback flow for %s/%s ended: %s",
            self.provider.provider_id,
            self.account_key,
            error.error.summary(),
        )
        return error

    @property
    def is_listening(self) -> bool:
        return self._runner is not None

    @property
    def redirect_uri(self) -> str | None:
        return self.state.redirect_uri if self.state is not None else None

    async def start(self) -> LoopbackPrompt:
        """Generate PKCE values, bind the listener and build the authorization URL.

        Returns:
            The authorization URL for the host to open.

        Raises:
            OSError: If no loopback port can be bound.
        """
        code_verifier, code_challenge = generate_pkce_pair()
        state = generate_state()

        sock = _bind_loopback_socket(self.provider.loopback_host)
        self._callback = asyncio.get_running_loop().create_future()

        app = web.Application()
        app.router.add_get(self.provider.redirect_path, self._handle_callback)
        runner = web.AppRunner(app, access_log=None)
        try:
            await runner.setup()
            await web.SockSite(runner, sock).start()
        except BaseException:
            await runner.cleanup()
            sock.close()
            raise
        self._runner = runner

        port = sock.getsockname()[1]
        host = "[::1]" if self.provider.loopback_host == "::1" else self.provider.loopback_host
        redirect_uri = f"http://{host}:{port}{self.provider.redirect_path}"

        self.state = LoopbackFlowState(
            code_verifier=code_verifier,
            code_challenge=code_challenge,
            state=state,
            listener_port=port,
            redirect_uri=redirect_uri,
            expires_at=self.clock() + timedelta(seconds=self.timeout),
        )
        self._transition(FlowStatus.LISTENING)
        logger.info("Callback server listening on %s", redirect_uri)

        return LoopbackPrompt(
            authorization_url=build_authorization_url(
                self.provider, redirect_uri, code_challenge, state
            )
        )

    async def _handle_callback(self, request: web.Request) -> web.Response:
        callback = self._callback
        if callback is None or callback.done() or self.state is None:
            return web.Response(text="This authorization attempt is no longer active.", status=410)

        params = request.query
        outcome: str | ClassifiedError
        if not states_match(self.state.state, params.get("state")):
            outcome = classified(ErrorKind.STATE_MISMATCH)
        elif "error" in params:
            outcome = classify_oauth_error(
                params.get("error"), description=params.get("error_description")
            )
        elif not params.get("code"):
            # Not the redirect we are waiting for; keep listening
            return web.Response(
                text=_FAILURE_PAGE.format(message="No authorization code received."),
                status=400,
                content_type="text/html",
            )
        else:
            outcome = params["code"]

        callback.set_result(outcome)

        if isinstance(outcome, ClassifiedError):
            return web.Response(
                text=_FAILURE_PAGE.format(message=html.escape(outcome.description)),
                status=400,
                content_type="text/html",
            )
        return web.Response(text=_SUCCESS_PAGE, content_type="text/html")

    async def _wait_for_callback(
        self,
        state: LoopbackFlowState,
        callback: "asyncio.Future[str | ClassifiedError]",
    ) -> str | ClassifiedError:
        remaining = max((state.expires_at - self.clock()).total_seconds(), 0.0)
        cancel_waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait(
                {callback, cancel_waiter},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_waiter.cancel()

        if self.cancel_event.is_set():
            raise self._fail(FlowStatus.CANCELLED, auth_error(ErrorKind.CANCELLED))
        if not callback.done():
            raise self._fail(
                FlowStatus.FAILED,
                auth_error(
                    ErrorKind.FLOW_EXPIRED,
                    description=f"No authorization callback within {self.timeout:g}s",
                ),
            )
        return callback.result()

    async def complete(self) -> CredentialSet:
        """Wait for the redirect, validate it and exchange the code.

        Returns:
            The granted CredentialSet.

        Raises:
            ReauthorizationRequired: On CSRF mismatch, denial, timeout or cancellation.
            AuthError: If the token exchange fails.
            RuntimeError: If ``start()`` was not called first.
        """
        if self.state is None or self._callback is None:
            raise RuntimeError("start() must succeed before complete()")

        state = self.state
        self._transition(FlowStatus.AWAITING_CALLBACK)
        try:
            outcome = await self._wait_for_callback(state, self._callback)
            if isinstance(outcome, ClassifiedError):
                raise self._fail(FlowStatus.FAILED, to_exception(outcome))

            self._transition(FlowStatus.EXCHANGING)
            self.exchange_attempted = True
            try:
                payload = await self.token_client.exchange_code(
                    self.provider,
                    code=outcome,
                    redirect_uri=state.redirect_uri,
                    code_verifier=state.code_verifier,
                )
            except AuthError as e:
                raise self._fail(FlowStatus.FAILED, e) from None

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
                "Loopback flow for %s/%s granted", self.provider.provider_id, self.account_key
            )
            return credential
        except asyncio.CancelledError:
            self._transition(FlowStatus.CANCELLED)
            raise
        finally:
            await self.close()
            self.state = None

    async def close(self) -> None:
        """Close the listener. Safe to call more than once."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.debug("Callback server closed")
        if self._callback is not None and not self._callback.done():
            self._callback.cancel()

    def cancel(self) -> None:
        self.cancel_event.set()
