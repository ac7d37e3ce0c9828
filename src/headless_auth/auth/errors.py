"""Error taxonomy shared by the authorization flows and the refresh coordinator.

Every failure (OAuth ``error`` code, HTTP status or network exception) is
mapped to exactly one ``ErrorKind``. The ``_POLICY`` table below is the single
source of truth for whether a kind is retryable and what the caller should do
about it.
"""

import logging
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Classification of an authentication failure."""

    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHORIZATION_DENIED = "authorization_denied"
    INVALID_GRANT = "invalid_grant"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    FLOW_EXPIRED = "flow_expired"
    STATE_MISMATCH = "state_mismatch"
    CANCELLED = "cancelled"
    CREDENTIAL_MISSING = "credential_missing"
    CONCURRENT_MODIFICATION = "concurrent_modification"


class RecommendedAction(str, Enum):
    """What the caller should do after a classified failure."""

    RETRY = "retry"
    BACKOFF = "backoff"
    REAUTHENTICATE = "reauthenticate"
    FATAL = "fatal"


# kind -> (retryable, action, default summary)
_POLICY: dict[ErrorKind, tuple[bool, RecommendedAction, str]] = {
    ErrorKind.TRANSIENT_NETWORK: (
        True,
        RecommendedAction.RETRY,
        "Could not reach the authorization server",
    ),
    ErrorKind.RATE_LIMITED: (
        True,
        RecommendedAction.BACKOFF,
        "The authorization server asked the client to slow down",
    ),
    ErrorKind.AUTHORIZATION_PENDING: (
        True,
        RecommendedAction.RETRY,
        "The user has not completed authorization yet",
    ),
    ErrorKind.AUTHORIZATION_DENIED: (
        False,
        RecommendedAction.REAUTHENTICATE,
        "The user declined the authorization request",
    ),
    ErrorKind.INVALID_GRANT: (
        False,
        RecommendedAction.REAUTHENTICATE,
        "The grant is no longer valid; re-authorization required",
    ),
    ErrorKind.INVALID_REQUEST: (
        False,
        RecommendedAction.FATAL,
        "The authorization server rejected the request as malformed",
    ),
    ErrorKind.SERVER_ERROR: (
        True,
        RecommendedAction.BACKOFF,
        "The authorization server reported an internal error",
    ),
    ErrorKind.FLOW_EXPIRED: (
        False,
        RecommendedAction.REAUTHENTICATE,
        "The authorization attempt expired before it was completed",
    ),
    ErrorKind.STATE_MISMATCH: (
        False,
        RecommendedAction.REAUTHENTICATE,
        "The authorization callback failed CSRF state validation",
    ),
    ErrorKind.CANCELLED: (
        False,
        RecommendedAction.REAUTHENTICATE,
        "The authorization attempt was cancelled",
    ),
    ErrorKind.CREDENTIAL_MISSING: (
        False,
        RecommendedAction.REAUTHENTICATE,
        "No stored credential for this account; authorization required",
    ),
    ErrorKind.CONCURRENT_MODIFICATION: (
        True,
        RecommendedAction.RETRY,
        "The stored credential changed while it was being refreshed",
    ),
}

_OAUTH_ERROR_CODES: dict[str, ErrorKind] = {
    "authorization_pending": ErrorKind.AUTHORIZATION_PENDING,
    "slow_down": ErrorKind.RATE_LIMITED,
    "access_denied": ErrorKind.AUTHORIZATION_DENIED,
    "invalid_grant": ErrorKind.INVALID_GRANT,
    "expired_token": ErrorKind.FLOW_EXPIRED,
    "invalid_request": ErrorKind.INVALID_REQUEST,
    "invalid_client": ErrorKind.INVALID_REQUEST,
    "unauthorized_client": ErrorKind.INVALID_REQUEST,
    "unsupported_grant_type": ErrorKind.INVALID_REQUEST,
    "unsupported_response_type": ErrorKind.INVALID_REQUEST,
    "invalid_scope": ErrorKind.INVALID_REQUEST,
    "server_error": ErrorKind.SERVER_ERROR,
    "temporarily_unavailable": ErrorKind.SERVER_ERROR,
}


class ClassifiedError(BaseModel):
    """A failure mapped into the taxonomy. Never persisted.

    Attributes:
        kind: Taxonomy entry.
        retryable: Whether retrying the same request may succeed.
        recommended_action: What the caller should do next.
        raw_code: OAuth ``error`` code or exception class name, if any.
        status_code: HTTP status of the failed response, if any.
        description: Human-readable summary; never contains token material.
    """

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    retryable: bool
    recommended_action: RecommendedAction
    raw_code: str | None = None
    status_code: int | None = None
    description: str

    @property
    def requires_reauthorization(self) -> bool:
        return self.recommended_action == RecommendedAction.REAUTHENTICATE

    def summary(self) -> str:
        detail = f" ({self.raw_code})" if self.raw_code else ""
        return f"{self.kind.value}: {self.description}{detail}"


class AuthError(Exception):
    """Raised by flows and the refresh coordinator with a classified error."""

    def __init__(self, error: ClassifiedError) -> None:
        super().__init__(error.summary())
        self.error = error

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


class ReauthorizationRequired(AuthError):
    """The account must go through an authorization flow again."""


def classified(
    kind: ErrorKind,
    *,
    raw_code: str | None = None,
    status_code: int | None = None,
    description: str | None = None,
) -> ClassifiedError:
    """Build a ClassifiedError for ``kind`` using the policy table."""
    retryable, action, default_description = _POLICY[kind]
    return ClassifiedError(
        kind=kind,
        retryable=retryable,
        recommended_action=action,
        raw_code=raw_code,
        status_code=status_code,
        description=description or default_description,
    )


def to_exception(error: ClassifiedError) -> AuthError:
    """Wrap a classified error in the matching exception type.

    Errors whose recommended action is re-authentication produce
    ``ReauthorizationRequired`` so callers can catch that one type.
    """
    if error.requires_reauthorization:
        return ReauthorizationRequired(error)
    return AuthError(error)


def auth_error(kind: ErrorKind, **kwargs: Any) -> AuthError:
    """Build the exception for ``kind``; keyword arguments go to ``classified``."""
    return to_exception(classified(kind, **kwargs))


def classify_oauth_error(
    code: str | None,
    status_code: int | None = None,
    description: str | None = None,
) -> ClassifiedError:
    """Classify an OAuth ``error`` code, falling back to the HTTP status.

    Args:
        code: Value of the ``error`` field, if the body had one.
        status_code: HTTP status of the response.
        description: ``error_description`` from the provider.

    Returns:
        The classified error.
    """
    kind = _OAUTH_ERROR_CODES.get(code or "")
    if kind is None:
        if status_code == 429:
            kind = ErrorKind.RATE_LIMITED
        elif status_code is not None and status_code >= 500:
            kind = ErrorKind.SERVER_ERROR
        else:
            if code:
                logger.debug("Unrecognized OAuth error code %r, treating as invalid_request", code)
            kind = ErrorKind.INVALID_REQUEST
    return classified(kind, raw_code=code, status_code=status_code, description=description)


def classify_response(response: httpx.Response) -> ClassifiedError:
    """Classify a non-successful token/device endpoint response."""
    code: str | None = None
    description: str | None = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        raw = body.get("error")
        code = raw if isinstance(raw, str) else None
        raw_description = body.get("error_description")
        description = raw_description if isinstance(raw_description, str) else None
    return classify_oauth_error(code, status_code=response.status_code, description=description)


def classify_exception(exc: BaseException) -> ClassifiedError:
    """Classify an exception raised while talking to the provider.

    Raises:
        TypeError: If ``exc`` is not a network failure this module understands.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_response(exc.response)
    # TimeoutException is a TransportError subclass
    if isinstance(exc, httpx.TransportError):
        return classified(
            ErrorKind.TRANSIENT_NETWORK,
            raw_code=type(exc).__name__,
            description=f"Network error talking to the authorization server: {type(exc).__name__}",
        )
    raise TypeError(f"Cannot classify {type(exc).__name__}")
