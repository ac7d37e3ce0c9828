"""PKCE (RFC 7636) verifier/challenge pairs and CSRF state tokens."""

import hashlib
import secrets
from base64 import urlsafe_b64encode

# RFC 7636 section 4.1: 43-128 characters from the unreserved set
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
UNRESERVED_CHARACTERS = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
)


def _b64url(data: bytes) -> str:
    return urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier(length: int = 64) -> str:
    """Generate a random PKCE code verifier.

    Args:
        length: Verifier length, between 43 and 128.

    Returns:
        A verifier drawn from the unreserved character set.

    Raises:
        ValueError: If ``length`` is outside the RFC 7636 range.
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"PKCE verifier length must be {MIN_VERIFIER_LENGTH}-{MAX_VERIFIER_LENGTH}, got {length}"
        )
    # token_urlsafe yields ~1.3 chars per byte, so this always over-produces
    return secrets.token_urlsafe(length)[:length]


def code_challenge_for(code_verifier: str) -> str:
    """Compute the S256 challenge: base64url(sha256(verifier)) without padding."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_pkce_pair(length: int = 64) -> tuple[str, str]:
    """Generate PKCE code verifier and challenge.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    code_verifier = generate_code_verifier(length)
    return code_verifier, code_challenge_for(code_verifier)


def generate_state() -> str:
    """Generate an unguessable CSRF ``state`` value bound to one attempt."""
    return secrets.token_urlsafe(32)


def states_match(expected: str, received: str | None) -> bool:
    """Compare callback ``state`` against the expected value in constant time."""
    if received is None:
        return False
    return secrets.compare_digest(expected.encode(), received.encode())
