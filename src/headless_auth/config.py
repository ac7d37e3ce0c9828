"""Runtime configuration from environment variables.

Environment Variables:
    HEADLESS_AUTH_STORAGE: Credential backend, ``file`` or ``memory`` (default: file)
    HEADLESS_AUTH_TOKEN_PATH: Credential file (default: ./.headless-auth/credentials.json)
    HEADLESS_AUTH_ENCRYPTION_KEY: Fernet key; enables encryption at rest (default: unset)
    HEADLESS_AUTH_PROVIDERS_FILE: Provider definitions (default: ./.headless-auth/providers.yaml)
    HEADLESS_AUTH_LOOPBACK_TIMEOUT: Seconds to wait for the browser redirect (default: 300)
    HEADLESS_AUTH_REFRESH_SKEW: Refresh this many seconds before expiry (default: 60)
    HEADLESS_AUTH_REFRESH_ATTEMPTS: Refresh attempts for transient failures (default: 3)
    HEADLESS_AUTH_HTTP_TIMEOUT: Per-request timeout in seconds (default: 10)
    LOG_LEVEL: Logging level (default: INFO)
"""

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# Project-level credentials directory
CREDENTIALS_DIR = Path.cwd() / ".headless-auth"
DEFAULT_TOKEN_PATH = CREDENTIALS_DIR / "credentials.json"
DEFAULT_PROVIDERS_FILE = CREDENTIALS_DIR / "providers.yaml"

_ENV_FIELDS = {
    "storage_backend": "HEADLESS_AUTH_STORAGE",
    "token_path": "HEADLESS_AUTH_TOKEN_PATH",
    "encryption_key": "HEADLESS_AUTH_ENCRYPTION_KEY",
    "providers_file": "HEADLESS_AUTH_PROVIDERS_FILE",
    "loopback_timeout": "HEADLESS_AUTH_LOOPBACK_TIMEOUT",
    "refresh_skew": "HEADLESS_AUTH_REFRESH_SKEW",
    "refresh_attempts": "HEADLESS_AUTH_REFRESH_ATTEMPTS",
    "http_timeout": "HEADLESS_AUTH_HTTP_TIMEOUT",
    "log_level": "LOG_LEVEL",
}


class Settings(BaseModel):
    """Operator settings for the credential store, flows and refresh."""

    model_config = ConfigDict(frozen=True)

    storage_backend: str = Field(default="file")
    token_path: Path = Field(default=DEFAULT_TOKEN_PATH)
    encryption_key: str | None = Field(default=None, repr=False)
    providers_file: Path = Field(default=DEFAULT_PROVIDERS_FILE)
    loopback_timeout: float = Field(default=300, gt=0)
    refresh_skew: float = Field(default=60, ge=0)
    refresh_attempts: int = Field(default=3, ge=1)
    http_timeout: float = Field(default=10, gt=0)
    log_level: str = Field(default="INFO")

    @field_validator("storage_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        value = str(value).strip().lower()
        if value not in ("file", "memory"):
            raise ValueError(f"unsupported storage backend {value!r} (use 'file' or 'memory')")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return str(value).strip().upper()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables; unset ones keep their defaults.

        Raises:
            ValueError: If a variable holds an invalid value.
        """
        environ = os.environ if environ is None else environ
        values = {
            field: environ[variable]
            for field, variable in _ENV_FIELDS.items()
            if environ.get(variable, "").strip()
        }
        try:
            return cls(**values)
        except ValidationError as e:
            problems = "; ".join(
                f"{_ENV_FIELDS.get(str(err['loc'][0]) if err['loc'] else '', 'settings')}: {err['msg']}"
                for err in e.errors()
            )
            raise ValueError(f"Invalid configuration: {problems}") from None
