"""
Key providers for the secure store.

The backend is chosen once at configuration time (see create_key_provider);
there is no runtime probing between the OS secret store and the key file.
"""
import base64
import binascii
import logging
import os
from pathlib import Path
from typing import Optional, Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from copilot.crypto import KEY_SIZE
from copilot.errors import KeyStoreError

logger = logging.getLogger(__name__)


def _decode_key(encoded: str) -> bytes:
    try:
        key = base64.b64decode(encoded.strip().encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise KeyStoreError("Stored encryption key is not valid base64") from e
    if len(key) != KEY_SIZE:
        raise KeyStoreError(f"Stored encryption key has {len(key)} bytes, expected {KEY_SIZE}")
    return key


def _encode_key(key: bytes) -> str:
    return base64.b64encode(key).decode("ascii")


class KeyProvider(Protocol):
    """Capability interface for persisting the store's symmetric key."""

    name: str

    def load(self) -> Optional[bytes]:
        """Return the stored key, or None if no key exists."""
        ...

    def save(self, key: bytes) -> None:
        """Persist the key, replacing any existing one."""
        ...

    def destroy(self) -> None:
        """Remove the key so it can no longer be retrieved."""
        ...


class KeyringKeyProvider:
    """Key stored in the OS secret store (Keychain, Secret Service, Credential Locker)."""

    name = "keyring"

    def __init__(self, service_name: str = "echo-copilot", account_name: str = "encryption-key"):
        self.service_name = service_name
        self.account_name = account_name

    def load(self) -> Optional[bytes]:
        try:
            encoded = keyring.get_password(self.service_name, self.account_name)
        except KeyringError as e:
            raise KeyStoreError(f"Keyring read failed: {e}") from e
        if not encoded:
            return None
        return _decode_key(encoded)

    def save(self, key: bytes) -> None:
        try:
            keyring.set_password(self.service_name, self.account_name, _encode_key(key))
        except KeyringError as e:
            raise KeyStoreError(f"Keyring write failed: {e}") from e

    def destroy(self) -> None:
        try:
            keyring.delete_password(self.service_name, self.account_name)
        except PasswordDeleteError:
            # Nothing stored
            return
        except KeyringError as e:
            raise KeyStoreError(f"Keyring delete failed: {e}") from e


class FileKeyProvider:
    """Key stored base64-encoded in a file readable only by the owner (0600)."""

    name = "file"

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[bytes]:
        if not self.path.exists():
            return None
        try:
            return _decode_key(self.path.read_text(encoding="ascii"))
        except OSError as e:
            raise KeyStoreError(f"Key file read failed: {e}") from e

    def save(self, key: bytes) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="ascii") as f:
                f.write(_encode_key(key))
            os.chmod(self.path, 0o600)
        except OSError as e:
            raise KeyStoreError(f"Key file write failed: {e}") from e

    def destroy(self) -> None:
        if not self.path.exists():
            return
        try:
            # Overwrite before unlinking so the old key is not left in the file's blocks
            size = self.path.stat().st_size
            with open(self.path, "r+b") as f:
                f.write(b"\0" * size)
                f.flush()
                os.fsync(f.fileno())
            self.path.unlink()
        except OSError as e:
            raise KeyStoreError(f"Key file delete failed: {e}") from e


def create_key_provider(backend: str, *, key_file: Path, service_name: str, account_name: str) -> KeyProvider:
    """
    Build the configured key provider.

    Args:
        backend: "keyring" or "file"
    """
    if backend == "keyring":
        return KeyringKeyProvider(service_name=service_name, account_name=account_name)
    if backend == "file":
        logger.warning(f"Using file-based key storage at {key_file}; OS secret store is not used")
        return FileKeyProvider(key_file)
    raise ValueError(f"Unknown key backend: {backend}")
