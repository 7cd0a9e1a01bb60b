"""Secret stores that hold the vault master key.

The platform secret store is an external collaborator; the broker only needs
``get(name)`` and ``put(name, value)``. Two implementations are provided: an
in-memory store for tests and ephemeral processes, and a file store that keeps
one owner-only file per secret.
"""

import os
import re
import threading
from pathlib import Path
from typing import Optional, Protocol, Union

_SAFE_NAME = re.compile(r"^[A-Za-z0-9._-]+$")


class SecretStore(Protocol):
    """Opaque key-value store for named secrets."""

    def get(self, name: str) -> Optional[bytes]:
        """Return the secret stored under ``name``, or None if absent."""
        ...

    def put(self, name: str, value: bytes) -> None:
        """Store ``value`` under ``name``, replacing any previous value."""
        ...


class InMemorySecretStore:
    """Process-local secret store. Secrets vanish when the process exits."""

    def __init__(self, initial: Optional[dict[str, bytes]] = None) -> None:
        self._secrets: dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, name: str) -> Optional[bytes]:
        with self._lock:
            return self._secrets.get(name)

    def put(self, name: str, value: bytes) -> None:
        with self._lock:
            self._secrets[name] = bytes(value)


class FileSecretStore:
    """Secret store keeping each secret in its own ``0600`` file.

    Writes go to a temporary file that is renamed into place, so a reader
    never observes a partially written secret.

    Example:
        >>> store = FileSecretStore("~/.config/credbroker/secrets")
        >>> store.put("credbroker.master_key", key_bytes)
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self._directory = Path(directory).expanduser()

    def _path(self, name: str) -> Path:
        if not _SAFE_NAME.match(name):
            raise ValueError(f"Invalid secret name: {name!r}")
        return self._directory / name

    def get(self, name: str) -> Optional[bytes]:
        path = self._path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, name: str, value: bytes) -> None:
        path = self._path(name)
        self._directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp_path = path.with_name(f".{name}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(value)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
        os.replace(tmp_path, path)
