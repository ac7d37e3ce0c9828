"""Data models for provider configuration, credentials and authorization flows.

Persisted models (``CredentialSet``, ``StoredCredential``) are Pydantic models
so they validate on load from the credential store. Flow state is kept in
plain dataclasses: it lives only for the duration of one authorization attempt
and is never serialized.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _split_scopes(value: Any, separator: str = " ") -> Any:
    if isinstance(value, str):
        return frozenset(part.strip() for part in value.split(separator) if part.strip())
    return value


class FlowKind(str, Enum):
    """Supported authorization flows."""

    DEVICE = "device"
    LOOPBACK = "loopback"


class FlowStatus(str, Enum):
    """States of the device and loopback authorization state machines."""

    # Device Authorization Grant
    REQUESTING = "requesting"
    AWAITING_USER = "awaiting_user"
    POLLING = "polling"
    # Loopback Authorization Code + PKCE
    STARTING = "starting"
    LISTENING = "listening"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    # Terminal
    GRANTED = "granted"
    DENIED = "denied"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_FLOW_STATUSES


_TERMINAL_FLOW_STATUSES = frozenset(
    {
        FlowStatus.GRANTED,
        FlowStatus.DENIED,
        FlowStatus.EXPIRED,
        FlowStatus.FAILED,
        FlowStatus.CANCELLED,
    }
)


class TokenStatus(str, Enum):
    """Status of a stored credential."""

    VALID = "valid"
    EXPIRED = "expired"  # access token expired, refresh token available
    TERMINAL = "terminal"  # expired with no refresh token
    MISSING = "missing"
    INVALID = "invalid"


class ProviderConfig(BaseModel):
    """Static description of an OAuth provider.

    Created once at configuration time and never mutated. Provider quirks are
    expressed as explicit flags here rather than as conditionals in the flows.

    Attributes:
        provider_id: Identifier used as the first half of the credential key.
        authorization_endpoint: Authorization endpoint for the loopback flow.
        device_authorization_endpoint: RFC 8628 endpoint, if the provider has one.
        token_endpoint: Token endpoint shared by all grants.
        revocation_endpoint: RFC 7009 endpoint, if the provider has one.
        client_id: Public client identifier.
        client_secret: Secret for "installed app" clients that still need one.
        scopes: Scopes requested during authorization.
        supports_pkce: Whether the provider accepts S256 code challenges.
        scope_separator: Separator used in the ``scope`` field of token responses.
        default_expires_in: Lifetime assumed when a response omits ``expires_in``.
        loopback_host: Host used in the loopback redirect URI.
        redirect_path: Path used in the loopback redirect URI.
        extra_authorize_params: Additional query parameters for the authorization URL.
    """

    model_config = ConfigDict(frozen=True)

    provider_id: str = Field(..., min_length=1, description="Provider identifier")
    authorization_endpoint: str = Field(..., description="Authorization endpoint URL")
    device_authorization_endpoint: str | None = Field(
        default=None, description="Device authorization endpoint URL"
    )
    token_endpoint: str = Field(..., description="Token endpoint URL")
    revocation_endpoint: str | None = Field(default=None, description="Revocation endpoint URL")
    client_id: str = Field(..., min_length=1, description="OAuth client ID")
    client_secret: str | None = Field(default=None, repr=False, description="OAuth client secret")
    scopes: frozenset[str] = Field(default_factory=frozenset, description="Requested scopes")
    supports_pkce: bool = Field(default=True, description="Provider accepts PKCE (S256)")
    scope_separator: str = Field(default=" ", description="Scope separator in token responses")
    default_expires_in: int = Field(default=3600, gt=0, description="Fallback token lifetime")
    loopback_host: str = Field(default="127.0.0.1", description="Loopback redirect host")
    redirect_path: str = Field(default="/callback", description="Loopback redirect path")
    extra_authorize_params: dict[str, str] = Field(
        default_factory=dict, description="Extra authorization URL parameters"
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, value: Any) -> Any:
        return _split_scopes(value)

    @field_validator("loopback_host")
    @classmethod
    def _require_loopback_host(cls, value: str) -> str:
        if value not in LOOPBACK_HOSTS:
            raise ValueError(f"loopback_host must be one of {sorted(LOOPBACK_HOSTS)}, got {value!r}")
        return value

    @field_validator("redirect_path")
    @classmethod
    def _require_absolute_path(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @property
    def supports_device_flow(self) -> bool:
        return self.device_authorization_endpoint is not None

    @property
    def supports_loopback_flow(self) -> bool:
        return self.supports_pkce

    def scope_string(self) -> str:
        """Space-separated scope parameter for authorization requests."""
        return " ".join(sorted(self.scopes))

    def parse_scopes(self, value: str | None) -> frozenset[str] | None:
        """Parse a ``scope`` field from a token response, or None if absent."""
        if not value:
            return None
        return _split_scopes(value, self.scope_separator)


class CredentialSet(BaseModel):
    """One authenticated identity for one provider.

    Immutable: refreshes produce a new instance. ``revision`` is assigned by the
    credential store and is what ``compare_and_swap`` compares.

    Token values are excluded from ``repr`` so credentials never leak into logs
    or tracebacks.
    """

    model_config = ConfigDict(frozen=True)

    provider_id: str = Field(..., description="Provider identifier")
    account_key: str = Field(..., description="Opaque account identifier")
    access_token: str = Field(..., repr=False, description="OAuth access token")
    refresh_token: str | None = Field(default=None, repr=False, description="OAuth refresh token")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_at: datetime = Field(..., description="Access token expiry (UTC)")
    scopes: frozenset[str] = Field(default_factory=frozenset, description="Granted scopes")
    issued_at: datetime = Field(default_factory=utcnow, description="When the token was issued")
    revision: int = Field(default=0, ge=0, description="Store-assigned revision")

    @field_validator("expires_at", "issued_at")
    @classmethod
    def _make_timezone_aware(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    @field_validator("scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, value: Any) -> Any:
        return _split_scopes(value)

    def is_expired(self, buffer_seconds: float = 60, now: datetime | None = None) -> bool:
        """Check if the access token is expired or will expire soon.

        Args:
            buffer_seconds: Treat the token as expired this many seconds early.
            now: Reference time. Defaults to the current UTC time.

        Returns:
            True if the token expires within ``buffer_seconds``.
        """
        now = now or utcnow()
        return now >= self.expires_at - timedelta(seconds=buffer_seconds)

    def is_terminal(self, now: datetime | None = None) -> bool:
        """A credential with no refresh token and an expired access token is unusable."""
        return self.refresh_token is None and self.is_expired(buffer_seconds=0, now=now)

    def with_revision(self, revision: int) -> "CredentialSet":
        return self.model_copy(update={"revision": revision})

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        *,
        provider: ProviderConfig,
        account_key: str,
        now: datetime | None = None,
        previous: "CredentialSet | None" = None,
    ) -> "CredentialSet":
        """Build a credential from a successful token endpoint response.

        Args:
            payload: Parsed JSON body containing at least ``access_token``.
            provider: Provider that issued the token.
            account_key: Account the credential belongs to.
            now: Issue time. Defaults to the current UTC time.
            previous: Credential being refreshed. Its refresh token and scopes
                are carried over when the response does not replace them.

        Returns:
            New CredentialSet whose ``expires_at`` is ``now + expires_in``.
        """
        now = now or utcnow()

        raw_expires_in = payload.get("expires_in")
        if raw_expires_in is None:
            raw_expires_in = provider.default_expires_in
        try:
            expires_in = int(raw_expires_in)
        except (TypeError, ValueError):
            expires_in = provider.default_expires_in
        # expires_at must be in the future right after creation
        expires_in = max(expires_in, 1)

        scopes = provider.parse_scopes(payload.get("scope"))
        if scopes is None:
            scopes = previous.scopes if previous is not None else provider.scopes

        refresh_token = payload.get("refresh_token") or (
            previous.refresh_token if previous is not None else None
        )

        return cls(
            provider_id=provider.provider_id,
            account_key=account_key,
            access_token=payload["access_token"],
            refresh_token=refresh_token,
            token_type=payload.get("token_type") or "Bearer",
            expires_at=now + timedelta(seconds=expires_in),
            scopes=scopes,
            issued_at=now,
            revision=previous.revision if previous is not None else 0,
        )


class StoredCredential(BaseModel):
    """On-disk envelope for a credential.

    Attributes:
        version: Record format version.
        credential: The stored credential.
        created_at: When the account was first stored.
        updated_at: When the record was last written.
    """

    version: int = Field(default=1, description="Record format version")
    credential: CredentialSet
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DevicePrompt(BaseModel):
    """What a host must show a human for the device flow."""

    model_config = ConfigDict(frozen=True)

    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_in_seconds: int


class LoopbackPrompt(BaseModel):
    """What a host must open (or show) for the loopback flow."""

    model_config = ConfigDict(frozen=True)

    authorization_url: str


@dataclass
class DeviceFlowState:
    """In-memory state of one device authorization attempt."""

    device_code: str = field(repr=False)
    user_code: str
    verification_uri: str
    poll_interval_seconds: int
    expires_at: datetime
    verification_uri_complete: str | None = None

    def to_prompt(self, now: datetime) -> DevicePrompt:
        remaining = max(int((self.expires_at - now).total_seconds()), 0)
        return DevicePrompt(
            user_code=self.user_code,
            verification_uri=self.verification_uri,
            verification_uri_complete=self.verification_uri_complete,
            expires_in_seconds=remaining,
        )


@dataclass
class LoopbackFlowState:
    """In-memory state of one loopback authorization attempt."""

    code_verifier: str = field(repr=False)
    code_challenge: str
    state: str = field(repr=False)
    listener_port: int
    redirect_uri: str
    expires_at: datetime
