"""Credential storage for headless-auth.

One CredentialSet is stored per (provider_id, account_key) pair. Two backends
are provided:

- ``MemoryCredentialStore``: process-local, for tests and ephemeral servers.
- ``FileCredentialStore``: a JSON document, optionally Fernet-encrypted.

Storage Location (file backend): ./.headless-auth/credentials.json (project-level)

Credentials are stored at project level, next to the project's provider
definitions, so different projects can hold different accounts.

Every read-modify-write runs under one re-entrant lock, which makes
``compare_and_swap`` atomic for all tasks and threads in the process.
Token values are never logged.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from headless_auth.auth.models import CredentialSet, StoredCredential, TokenStatus, utcnow
from headless_auth.config import DEFAULT_TOKEN_PATH

logger = logging.getLogger(__name__)

TOKEN_FILE = DEFAULT_TOKEN_PATH

FILE_FORMAT_VERSION = 1

# provider_id -> account_key -> record
Records = dict[str, dict[str, StoredCredential]]


class CredentialStoreError(Exception):
    """The credential store cannot be read (e.g. wrong encryption key)."""


def get_token_path() -> Path:
    """Get the project-level credential storage path.

    Returns:
        Path to credentials.json in ./.headless-auth/
    """
    return TOKEN_FILE


class CredentialStore(ABC):
    """Per-(provider, account) credential storage with atomic updates.

    Subclasses implement ``_load`` and ``_save``; the get/put/compare-and-swap
    semantics live here so every backend behaves the same.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abstractmethod
    def _load(self) -> Records:
        """Return all records. The returned mapping may be mutated by the caller."""

    @abstractmethod
    def _save(self, records: Records) -> None:
        """Persist all records."""

    @abstractmethod
    def clear_all(self) -> None:
        """Delete every stored credential."""

    def _get_record(self, provider_id: str, account_key: str) -> StoredCredential | None:
        return self._load().get(provider_id, {}).get(account_key)

    def _write(
        self,
        records: Records,
        credential: CredentialSet,
        current: StoredCredential | None,
    ) -> CredentialSet:
        now = utcnow()
        revision = (current.credential.revision if current is not None else 0) + 1
        stored = credential.with_revision(revision)
        records.setdefault(credential.provider_id, {})[credential.account_key] = StoredCredential(
            version=FILE_FORMAT_VERSION,
            credential=stored,
            created_at=current.created_at if current is not None else now,
            updated_at=now,
        )
        self._save(records)
        return stored

    @staticmethod
    def _check_key(provider_id: str, account_key: str, credential: CredentialSet) -> None:
        if credential.provider_id != provider_id or credential.account_key != account_key:
            raise ValueError(
                f"Credential for {credential.provider_id}/{credential.account_key} "
                f"cannot be stored under {provider_id}/{account_key}"
            )

    def get(self, provider_id: str, account_key: str) -> CredentialSet | None:
        """Retrieve the stored credential.

        Returns:
            The CredentialSet, or None if absent or unreadable.
        """
        with self._lock:
            record = self._get_record(provider_id, account_key)
        return record.credential if record is not None else None

    def put(self, provider_id: str, account_key: str, credential: CredentialSet) -> CredentialSet:
        """Store a credential, overwriting any existing one.

        Returns:
            The stored credential carrying its new revision.
        """
        self._check_key(provider_id, account_key, credential)
        with self._lock:
            records = self._load()
            current = records.get(provider_id, {}).get(account_key)
            stored = self._write(records, credential, current)
        logger.debug("Stored credential for %s/%s (rev %d)", provider_id, account_key, stored.revision)
        return stored

    def compare_and_swap(
        self,
        provider_id: str,
        account_key: str,
        expected: CredentialSet | None,
        new: CredentialSet,
    ) -> bool:
        """Replace the stored credential only if it is still ``expected``.

        Args:
            provider_id: Provider identifier.
            account_key: Account identifier.
            expected: The value read before computing ``new``; None means
                "only if nothing is stored".
            new: Replacement credential.

        Returns:
            True if the swap happened, False if the stored value had changed.
        """
        self._check_key(provider_id, account_key, new)
        with self._lock:
            records = self._load()
            current = records.get(provider_id, {}).get(account_key)
            if expected is None:
                matches = current is None
            else:
                matches = current is not None and current.credential == expected
            if not matches:
                logger.debug("Compare-and-swap lost for %s/%s", provider_id, account_key)
                return False
            self._write(records, new, current)
        return True

    def delete(self, provider_id: str, account_key: str) -> bool:
        """Delete a stored credential.

        Returns:
            True if a credential was deleted, False if none existed.
        """
        with self._lock:
            records = self._load()
            accounts = records.get(provider_id, {})
            if account_key not in accounts:
                return False
            del accounts[account_key]
            if not accounts:
                del records[provider_id]
            self._save(records)
        logger.debug("Deleted credential for %s/%s", provider_id, account_key)
        return True

    def list_keys(self) -> list[tuple[str, str]]:
        """List all (provider_id, account_key) pairs with stored credentials."""
        with self._lock:
            records = self._load()
        return sorted(
            (provider_id, account_key)
            for provider_id, accounts in records.items()
            for account_key in accounts
        )

    def get_status(
        self, provider_id: str, account_key: str, now: datetime | None = None
    ) -> TokenStatus:
        """Get the status of a stored credential."""
        credential = self.get(provider_id, account_key)
        if credential is None:
            return TokenStatus.MISSING
        if credential.is_terminal(now=now):
            return TokenStatus.TERMINAL
        if credential.is_expired(buffer_seconds=0, now=now):
            return TokenStatus.EXPIRED
        return TokenStatus.VALID


class MemoryCredentialStore(CredentialStore):
    """Credential store that lives only as long as the process."""

    def __init__(self) -> None:
        super().__init__()
        self._records: Records = {}

    def _load(self) -> Records:
        return {provider_id: dict(accounts) for provider_id, accounts in self._records.items()}

    def _save(self, records: Records) -> None:
        self._records = records

    def clear_all(self) -> None:
        with self._lock:
            self._records = {}


class FileCredentialStore(CredentialStore):
    """JSON file storage for credentials, optionally encrypted with Fernet.

    The directory is created with 0700 and the file written with 0600
    permissions. Writes go to a temporary file that atomically replaces the
    previous document, so a crash never leaves a half-written store.

    Attributes:
        token_path: Path to the credentials file.
        encrypted: Whether the document is encrypted at rest.

    Example:
        ```python
        store = FileCredentialStore(encryption_key=Fernet.generate_key())
        store.put("github", "default", credential)
        stored = store.get("github", "default")
        ```
    """

    def __init__(
        self,
        token_path: Path | None = None,
        encryption_key: str | bytes | None = None,
    ) -> None:
        """Initialize file storage.

        Args:
            token_path: Custom path for the credentials file.
                Defaults to ./.headless-auth/credentials.json.
            encryption_key: Fernet key. When given, the whole document is
                encrypted at rest.
        """
        super().__init__()
        self.token_path = token_path or get_token_path()
        self._cipher: Fernet | None = None
        if encryption_key:
            key = encryption_key.encode() if isinstance(encryption_key, str) else encryption_key
            self._cipher = Fernet(key)
        self._ensure_credentials_dir()

    @property
    def encrypted(self) -> bool:
        return self._cipher is not None

    def _ensure_credentials_dir(self) -> None:
        """Create credentials directory with secure permissions if needed."""
        creds_dir = self.token_path.parent
        if not creds_dir.exists():
            creds_dir.mkdir(parents=True, mode=0o700)
        else:
            creds_dir.chmod(0o700)

    def _load_raw(self) -> dict[str, dict[str, Any]]:
        if not self.token_path.exists():
            return {}

        data = self.token_path.read_bytes()
        if self._cipher is not None:
            try:
                data = self._cipher.decrypt(data)
            except InvalidToken as e:
                raise CredentialStoreError(
                    f"Cannot decrypt {self.token_path}: wrong encryption key or unencrypted file"
                ) from e

        try:
            document = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Credential file %s is not valid JSON; ignoring it", self.token_path)
            return {}

        if not isinstance(document, dict):
            return {}
        credentials = document.get("credentials", {})
        return credentials if isinstance(credentials, dict) else {}

    def _load(self) -> Records:
        records: Records = {}
        for provider_id, accounts in self._load_raw().items():
            if not isinstance(accounts, dict):
                continue
            for account_key, raw in accounts.items():
                try:
                    record = StoredCredential.model_validate(raw)
                except ValidationError:
                    # The error text can echo field values, so only the key is logged
                    logger.warning("Skipping corrupt credential record %s/%s", provider_id, account_key)
                    continue
                records.setdefault(provider_id, {})[account_key] = record
        return records

    def _save(self, records: Records) -> None:
        self._ensure_credentials_dir()
        document = {
            "version": FILE_FORMAT_VERSION,
            "credentials": {
                provider_id: {
                    account_key: record.model_dump(mode="json")
                    for account_key, record in accounts.items()
                }
                for provider_id, accounts in records.items()
            },
        }
        data = json.dumps(document, indent=2).encode()
        if self._cipher is not None:
            data = self._cipher.encrypt(data)

        # mkstemp creates the file with 0600 permissions
        fd, tmp_name = tempfile.mkstemp(dir=self.token_path.parent, prefix=".credentials-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.token_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self.token_path.chmod(0o600)

    def get_status(
        self, provider_id: str, account_key: str, now: datetime | None = None
    ) -> TokenStatus:
        """Get the status of a stored credential, reporting corrupt records as INVALID."""
        with self._lock:
            status = super().get_status(provider_id, account_key, now=now)
            if status == TokenStatus.MISSING and account_key in self._load_raw().get(provider_id, {}):
                return TokenStatus.INVALID
        return status

    def clear_all(self) -> None:
        """Delete all stored credentials by removing the file."""
        with self._lock:
            if self.token_path.exists():
                self.token_path.unlink()


def create_credential_store(
    backend: str = "file",
    token_path: Path | None = None,
    encryption_key: str | bytes | None = None,
) -> CredentialStore:
    """Create the credential store for a backend name.

    Args:
        backend: ``"file"`` or ``"memory"`` (case-insensitive).
        token_path: File backend path.
        encryption_key: File backend Fernet key.

    Raises:
        ValueError: If the backend is not supported.
    """
    backend = backend.lower()
    if backend == "memory":
        return MemoryCredentialStore()
    if backend == "file":
        store = FileCredentialStore(token_path=token_path, encryption_key=encryption_key)
        if not store.encrypted:
            logger.warning("No encryption key configured; credentials stored unencrypted")
        return store
    raise ValueError(f"Unsupported storage backend: {backend}. Supported backends: memory, file")
