"""Persistence capability for session records.

A session is persisted as three independent records, each an opaque JSON
string stored under its own key:

* ``endpoint`` -- the :class:`~faktsflow.models.EndpointDescriptor`,
  written before the consent handshake and kept across disconnects.
* ``fakts`` -- the claimed :class:`~faktsflow.models.ActiveFakts`.
* ``token`` -- the :class:`~faktsflow.models.TokenResponse`.

Any object with async ``get``/``set``/``remove`` methods can serve as
storage. Two implementations ship with the package:

* :class:`MemoryStorage` keeps records in a dict (tests, short-lived tools).
* :class:`FileStorage` writes one file per key under
  ``~/.local/share/faktsflow/session/`` (XDG). Files are written atomically
  with ``0o600`` permissions so that secrets are never world-readable, even
  momentarily.

Records read back from storage are never trusted directly; the orchestrator
re-validates them against their schema.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional, Protocol

from faktsflow.config import atomic_write, get_session_dir
from faktsflow.exceptions import InvalidUsageError

logger = logging.getLogger(__name__)

ENDPOINT_KEY = "endpoint"
FAKTS_KEY = "fakts"
TOKEN_KEY = "token"

_KEY_PATTERN = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9_.-]*")


class StorageProvider(Protocol):
    """Async key-value store holding the persisted session records."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryStorage:
    """In-memory :class:`StorageProvider`.

    Example::

        storage = MemoryStorage({"endpoint": endpoint.model_dump_json()})
        assert await storage.get("endpoint") is not None
    """

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self.records: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.records.get(key)

    async def set(self, key: str, value: str) -> None:
        self.records[key] = value

    async def remove(self, key: str) -> None:
        self.records.pop(key, None)


class FileStorage:
    """File-backed :class:`StorageProvider`, one JSON file per key.

    Args:
        directory: Where record files are written. Defaults to
            :func:`~faktsflow.config.get_session_dir`.
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        if self._directory is None:
            self._directory = get_session_dir()
        return self._directory

    def path_for(self, key: str) -> Path:
        """Return the file that holds *key*.

        Raises:
            InvalidUsageError: If *key* is not a plain file-name-safe token.
        """
        if not _KEY_PATTERN.fullmatch(key):
            raise InvalidUsageError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    async def get(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        return await asyncio.to_thread(self._read, path)

    async def set(self, key: str, value: str) -> None:
        path = self.path_for(key)
        await asyncio.to_thread(atomic_write, path, value, 0o600)
        logger.debug("Stored session record '%s'", key)

    async def remove(self, key: str) -> None:
        path = self.path_for(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.debug("Removed session record '%s'", key)

    @staticmethod
    def _read(path: Path) -> Optional[str]:
        if not path.is_file():
            return None
        # Undecodable bytes survive as U+FFFD and then fail schema validation.
        return path.read_text(encoding="utf-8", errors="replace")
