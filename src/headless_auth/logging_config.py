"""Logging setup with token redaction."""

import logging
import re

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_REDACTED = "[REDACTED]"
_SECRET_PATTERNS = (
    re.compile(r"(?i)\b(access_token|refresh_token|device_code|code|client_secret)=([^&\s\"']+)"),
    re.compile(r"(?i)([\"'](?:access_token|refresh_token|device_code|code|client_secret)[\"']\s*:\s*[\"'])([^\"']+)"),
    re.compile(r"(?i)\b(Bearer)\s+([A-Za-z0-9\-._~+/]+=*)"),
)


def redact(message: str) -> str:
    """Mask token-like values in ``message``."""
    message = _SECRET_PATTERNS[0].sub(lambda m: f"{m.group(1)}={_REDACTED}", message)
    message = _SECRET_PATTERNS[1].sub(lambda m: f"{m.group(1)}{_REDACTED}", message)
    return _SECRET_PATTERNS[2].sub(lambda m: f"{m.group(1)} {_REDACTED}", message)


class TokenRedactingFilter(logging.Filter):
    """Rewrites records so token values never reach a handler.

    Applied to the fully formatted message, so tokens passed as ``%s``
    arguments are caught as well.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(level: str | int = "INFO") -> None:
    """Configure root logging and install the redacting filter on its handlers.

    Args:
        level: Logging level name or number.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(level=level, format=LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        if not any(isinstance(f, TokenRedactingFilter) for f in handler.filters):
            handler.addFilter(TokenRedactingFilter())

    # httpx logs full request URLs at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
