"""Provider configuration registry.

Providers are declared in a YAML file under a top-level ``providers:`` key::

    providers:
      github:
        preset: github
        client_id: Iv1.0123456789abcdef
        scopes: [repo, read:org]
      internal:
        authorization_endpoint: https://sso.example.com/authorize
        device_authorization_endpoint: https://sso.example.com/device
        token_endpoint: https://sso.example.com/token
        client_id: mcp-server
        scopes: openid offline_access

A ``preset`` supplies the well-known endpoints and quirk flags of a public
provider; any field given alongside it overrides the preset.
"""

import logging
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from headless_auth.auth.models import ProviderConfig
from headless_auth.config import Settings

logger = logging.getLogger(__name__)

PRESETS: dict[str, dict[str, Any]] = {
    "google": {
        "authorization_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
        "device_authorization_endpoint": "https://oauth2.googleapis.com/device/code",
        "token_endpoint": "https://oauth2.googleapis.com/token",
        "revocation_endpoint": "https://oauth2.googleapis.com/revoke",
        "supports_pkce": True,
        # Google only returns a refresh token for offline access with consent
        "extra_authorize_params": {"access_type": "offline", "prompt": "consent"},
    },
    "github": {
        "authorization_endpoint": "https://github.com/login/oauth/authorize",
        "device_authorization_endpoint": "https://github.com/login/device/code",
        "token_endpoint": "https://github.com/login/oauth/access_token",
        "supports_pkce": True,
        "scope_separator": ",",
        # GitHub OAuth app tokens without expiry are reported as 8 hours
        "default_expires_in": 28800,
    },
    "microsoft": {
        "authorization_endpoint": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "device_authorization_endpoint": (
            "https://login.microsoftonline.com/common/oauth2/v2.0/devicecode"
        ),
        "token_endpoint": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "supports_pkce": True,
        "loopback_host": "localhost",
    },
}


class ProviderRegistry:
    """Lookup of ProviderConfig by provider id.

    Example:
        ```python
        registry = ProviderRegistry.from_yaml(Path("providers.yaml"))
        provider = registry.get("github")
        ```
    """

    def __init__(self, providers: list[ProviderConfig] | None = None) -> None:
        self._providers: dict[str, ProviderConfig] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: ProviderConfig) -> None:
        """Add or replace a provider."""
        if provider.provider_id in self._providers:
            logger.info("Replacing provider configuration for %s", provider.provider_id)
        self._providers[provider.provider_id] = provider

    def get(self, provider_id: str) -> ProviderConfig:
        """Get a provider by id.

        Raises:
            KeyError: If the provider is not configured.
        """
        try:
            return self._providers[provider_id]
        except KeyError:
            configured = ", ".join(self.ids()) or "none"
            raise KeyError(
                f"Unknown provider '{provider_id}' (configured providers: {configured})"
            ) from None

    def ids(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(self._providers[provider_id] for provider_id in self.ids())

    def __len__(self) -> int:
        return len(self._providers)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProviderRegistry":
        """Build a registry from the parsed ``providers:`` document.

        Raises:
            ValueError: If the document is malformed, names an unknown preset,
                or a provider fails validation.
        """
        providers_data = data.get("providers", {}) if data else {}
        if not isinstance(providers_data, Mapping):
            raise ValueError("'providers' must be a mapping of provider id to settings")

        registry = cls()
        for provider_id, settings in providers_data.items():
            if not isinstance(settings, Mapping):
                raise ValueError(f"Provider '{provider_id}' settings must be a mapping")
            registry.register(build_provider(str(provider_id), settings))
        return registry

    @classmethod
    def from_yaml(cls, path: Path) -> "ProviderRegistry":
        """Load providers from a YAML file. A missing file yields an empty registry."""
        if not path.exists():
            logger.debug("No provider file at %s", path)
            return cls()

        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Failed to parse provider file {path}: {e}") from e

        if not isinstance(data, Mapping):
            raise ValueError(f"Provider file {path} must contain a mapping")
        registry = cls.from_mapping(data)
        logger.info("Loaded %d provider(s) from %s", len(registry), path)
        return registry


def build_provider(provider_id: str, settings: Mapping[str, Any]) -> ProviderConfig:
    """Validate one provider entry, applying its preset if it names one.

    Raises:
        ValueError: If the preset is unknown or validation fails.
    """
    fields = dict(settings)
    preset_name = fields.pop("preset", None)
    if preset_name is not None:
        if preset_name not in PRESETS:
            raise ValueError(
                f"Provider '{provider_id}' uses unknown preset '{preset_name}' "
                f"(available: {', '.join(sorted(PRESETS))})"
            )
        fields = {**PRESETS[preset_name], **fields}

    try:
        return ProviderConfig(provider_id=provider_id, **fields)
    except ValidationError as e:
        # Only locations and messages; the full error would echo client_secret
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValueError(f"Invalid configuration for provider '{provider_id}': {problems}") from None


def load_providers(settings: Settings) -> ProviderRegistry:
    """Load the provider registry named by ``settings.providers_file``."""
    return ProviderRegistry.from_yaml(settings.providers_file)
