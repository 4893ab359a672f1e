"""Credential storage for the messaging session.

This module provides:
- new_credentials: Fresh credential set for a first pairing
- FileCredentialStore: Multi-file directory storage

Layout of the credentials directory:
- creds.json: session id and creation time
- key-<name>.json: one file per credential key

Security features:
- File permissions (600 for files, 700 for directory)
- Key name validation (prevent path traversal)
"""

import base64
import json
import os
import re
import secrets
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from msgbridge.errors import StoreUnavailableError
from msgbridge.protocols import Credentials

__all__ = [
    "FileCredentialStore",
    "StoreUnavailableError",
    "new_credentials",
]

# Valid key name pattern: alphanumeric, dots, hyphens, underscores
KEY_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")

CREDS_FILE = "creds.json"


def new_credentials() -> Credentials:
    """Create a fresh credential set.

    Returns:
        Credentials with a random session id and key material.
    """
    return Credentials(
        session_id=secrets.token_hex(16),
        created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        keys={
            "noise_key": base64.b64encode(secrets.token_bytes(32)).decode("ascii"),
            "identity_key": base64.b64encode(secrets.token_bytes(32)).decode("ascii"),
            "registration_id": secrets.randbelow(16380) + 1,
        },
    )


class FileCredentialStore:
    """Directory-backed credential storage.

    Attributes:
        directory: Storage directory path.
    """

    def __init__(self, directory: Path) -> None:
        """Initialize storage.

        The directory is created lazily on first save.

        Args:
            directory: Path to credentials directory.
        """
        self.directory = Path(directory).expanduser()

    def _validate_key_name(self, name: str) -> None:
        """Validate key name to prevent path traversal.

        Raises:
            StoreUnavailableError: If key name is invalid.
        """
        if not KEY_NAME_PATTERN.match(name) or name in (".", ".."):
            raise StoreUnavailableError(f"Invalid credential key name: {name}")

    def _key_path(self, name: str) -> Path:
        return self.directory / f"key-{name}.json"

    def _write_secure(self, path: Path, data: Any) -> None:
        """Write JSON with owner-only permissions."""
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, json.dumps(data, indent=2).encode())
        finally:
            os.close(fd)

    def exists(self) -> bool:
        """Check whether a credential set is stored."""
        return (self.directory / CREDS_FILE).exists()

    def load(self) -> Optional[Credentials]:
        """Load credentials from disk.

        Returns:
            Credentials if stored, None otherwise.

        Raises:
            StoreUnavailableError: If the stored files cannot be read.
        """
        creds_path = self.directory / CREDS_FILE
        if not creds_path.exists():
            return None

        try:
            meta = json.loads(creds_path.read_text())
            keys: dict[str, Any] = {}
            for path in sorted(self.directory.glob("key-*.json")):
                name = path.stem[len("key-"):]
                keys[name] = json.loads(path.read_text())
            return Credentials(
                session_id=meta["session_id"],
                created_at=meta["created_at"],
                keys=keys,
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreUnavailableError(f"Failed to load credentials: {e}") from e

    def save(self, credentials: Credentials) -> None:
        """Save credentials to disk with secure permissions.

        Keys no longer present in the credential set are removed.

        Raises:
            StoreUnavailableError: If writing fails or a key name is invalid.
        """
        for name in credentials.keys:
            self._validate_key_name(name)

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            os.chmod(self.directory, 0o700)

            self._write_secure(
                self.directory / CREDS_FILE,
                {
                    "session_id": credentials.session_id,
                    "created_at": credentials.created_at,
                },
            )
            for name, value in credentials.keys.items():
                self._write_secure(self._key_path(name), value)

            for path in self.directory.glob("key-*.json"):
                if path.stem[len("key-"):] not in credentials.keys:
                    path.unlink()
        except OSError as e:
            raise StoreUnavailableError(f"Failed to save credentials: {e}") from e

    def erase(self) -> None:
        """Remove the credentials directory.

        Safe to call when nothing is stored.

        Raises:
            StoreUnavailableError: If the directory cannot be removed.
        """
        try:
            shutil.rmtree(self.directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreUnavailableError(f"Failed to erase credentials: {e}") from e
