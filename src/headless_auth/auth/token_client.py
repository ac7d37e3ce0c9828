"""Form-encoded requests to a provider's OAuth endpoints.

All outbound provider traffic goes through ``TokenEndpointClient`` so that
every failure leaves here as an ``AuthError`` carrying a classification.
Request bodies are never logged: they contain codes and tokens.
"""

import logging
from typing import Any

import httpx

from headless_auth.auth.errors import (
    AuthError,
    ErrorKind,
    auth_error,
    classify_exception,
    classify_oauth_error,
    classify_response,
    to_exception,
)
from headless_auth.auth.models import ProviderConfig

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_REQUEST_TIMEOUT = 10.0


class TokenEndpointClient:
    """Thin wrapper over ``httpx.AsyncClient`` for RFC 6749/7009/8628 requests.

    Attributes:
        http_client: Shared async HTTP client. Not owned; the caller closes it.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.http_client = http_client
        self.timeout = timeout

    @staticmethod
    def _client_auth(provider: ProviderConfig) -> dict[str, str]:
        data = {"client_id": provider.client_id}
        if provider.client_secret:
            data["client_secret"] = provider.client_secret
        return data

    async def _post_form(self, url: str, data: dict[str, str]) -> httpx.Response:
        try:
            return await self.http_client.post(
                url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            error = classify_exception(e)
            logger.warning("Request to %s failed: %s", url, error.description)
            raise AuthError(error) from e

    async def _post_for_json(
        self, url: str, data: dict[str, str], required_field: str
    ) -> dict[str, Any]:
        response = await self._post_form(url, data)

        if not response.is_success:
            raise to_exception(classify_response(response))

        try:
            payload = response.json()
        except ValueError:
            raise auth_error(
                ErrorKind.SERVER_ERROR,
                status_code=response.status_code,
                description=f"Non-JSON response from {url}",
            ) from None

        if not isinstance(payload, dict):
            raise auth_error(
                ErrorKind.SERVER_ERROR,
                status_code=response.status_code,
                description=f"Unexpected response shape from {url}",
            )

        # Some providers (GitHub) report OAuth errors with HTTP 200
        if payload.get("error"):
            raise to_exception(
                classify_oauth_error(
                    str(payload["error"]),
                    status_code=response.status_code,
                    description=payload.get("error_description"),
                )
            )

        if not payload.get(required_field):
            raise auth_error(
                ErrorKind.SERVER_ERROR,
                status_code=response.status_code,
                description=f"Response from {url} is missing '{required_field}'",
            )

        return payload

    async def request_device_authorization(self, provider: ProviderConfig) -> dict[str, Any]:
        """POST to the device authorization endpoint (RFC 8628 section 3.1)."""
        if provider.device_authorization_endpoint is None:
            raise auth_error(
                ErrorKind.INVALID_REQUEST,
                description=f"Provider '{provider.provider_id}' has no device authorization endpoint",
            )
        data = self._client_auth(provider)
        if provider.scopes:
            data["scope"] = provider.scope_string()
        logger.debug("Requesting device code from %s", provider.provider_id)
        return await self._post_for_json(
            provider.device_authorization_endpoint, data, required_field="device_code"
        )

    async def poll_device_token(self, provider: ProviderConfig, device_code: str) -> dict[str, Any]:
        """POST a device_code grant to the token endpoint (RFC 8628 section 3.4)."""
        data = {
            "grant_type": DEVICE_CODE_GRANT_TYPE,
            "device_code": device_code,
            **self._client_auth(provider),
        }
        return await self._post_for_json(provider.token_endpoint, data, required_field="access_token")

    async def exchange_code(
        self,
        provider: ProviderConfig,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> dict[str, Any]:
        """Exchange an authorization code plus PKCE verifier for tokens."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            **self._client_auth(provider),
        }
        logger.debug("Exchanging authorization code with %s", provider.provider_id)
        return await self._post_for_json(provider.token_endpoint, data, required_field="access_token")

    async def refresh(self, provider: ProviderConfig, refresh_token: str) -> dict[str, Any]:
        """Run a refresh_token grant."""
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            **self._client_auth(provider),
        }
        logger.debug("Refreshing access token with %s", provider.provider_id)
        return await self._post_for_json(provider.token_endpoint, data, required_field="access_token")

    async def revoke(
        self,
        provider: ProviderConfig,
        token: str,
        token_type_hint: str = "refresh_token",
    ) -> None:
        """Revoke a token (RFC 7009). Unknown tokens are a success per the RFC.

        Raises:
            AuthError: If the endpoint is unreachable or reports an error.
        """
        if provider.revocation_endpoint is None:
            logger.debug("Provider %s has no revocation endpoint", provider.provider_id)
            return
        data = {"token": token, "token_type_hint": token_type_hint, **self._client_auth(provider)}
        response = await self._post_form(provider.revocation_endpoint, data)
        if not response.is_success:
            raise to_exception(classify_response(response))
        logger.debug("Revoked %s at %s", token_type_hint, provider.provider_id)
