"""Key/value persistence for the session record."""

import hashlib
import os
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from posterminal.errors import StorageError

logger = structlog.get_logger(__name__)

FILE_EXTENSION = ".dat"
BACKUP_SUFFIX = ".bak"
TEMP_SUFFIX = ".tmp"
CHECKSUM_PREFIX = b"sha256:"


class SessionStore(ABC):
    """Byte-level storage contract required by the session manager.

    A failed write must never leave a half-written value readable as valid,
    and `retrieve` returns None rather than raising on missing or corrupt data.
    """

    @abstractmethod
    def store(self, key: str, data: bytes) -> None:
        """Persist data under key, raising StorageError on failure."""

    @abstractmethod
    def retrieve(self, key: str) -> bytes | None:
        """Return the stored bytes, or None if absent or unreadable."""

    @abstractmethod
    def clear(self, key: str) -> None:
        """Remove key. Clearing a missing key is not an error."""

    @abstractmethod
    def has_key(self, key: str) -> bool: ...

    @abstractmethod
    def keys(self) -> list[str]: ...


class MemorySessionStore(SessionStore):
    """Process-local store, for tests and terminals without persistent storage."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def store(self, key: str, data: bytes) -> None:
        self._data[sanitize_key(key)] = bytes(data)

    def retrieve(self, key: str) -> bytes | None:
        return self._data.get(sanitize_key(key))

    def clear(self, key: str) -> None:
        self._data.pop(sanitize_key(key), None)

    def has_key(self, key: str) -> bool:
        return sanitize_key(key) in self._data

    def keys(self) -> list[str]:
        return sorted(self._data)


class FileSessionStore(SessionStore):
    """One checksummed file per key, written with write-verify-promote.

    Each write goes to a temporary file which is fsynced and read back before
    the current file is rotated to a single `.bak` backup and the new file is
    promoted with an atomic rename. Reads fall back to the backup when the
    primary file is missing or fails its checksum.
    """

    def __init__(self, storage_path: str | Path) -> None:
        self._root = Path(storage_path)

    @property
    def root(self) -> Path:
        return self._root

    def store(self, key: str, data: bytes) -> None:
        path = self._path_for_key(key)
        tmp_path = path.with_name(path.name + TEMP_SUFFIX)
        backup_path = path.with_name(path.name + BACKUP_SUFFIX)

        try:
            self._root.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("wb") as f:
                f.write(frame(data))
                f.flush()
                os.fsync(f.fileno())

            if unframe(tmp_path.read_bytes()) != data:
                tmp_path.unlink(missing_ok=True)
                raise StorageError(f"Verification failed while storing key '{key}'")

            if path.exists():
                os.replace(path, backup_path)
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to store key '{key}': {e}") from e

        logger.debug("session_store_write", key=key, size=len(data))

    def retrieve(self, key: str) -> bytes | None:
        path = self._path_for_key(key)
        backup_path = path.with_name(path.name + BACKUP_SUFFIX)

        for candidate in (path, backup_path):
            try:
                raw = candidate.read_bytes()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("session_store_read_failed", key=key, file=candidate.name, error=str(e))
                continue

            data = unframe(raw)
            if data is None:
                logger.warning("session_store_corrupt_entry", key=key, file=candidate.name)
                continue
            if candidate is backup_path:
                logger.warning("session_store_backup_used", key=key)
            return data

        return None

    def clear(self, key: str) -> None:
        path = self._path_for_key(key)
        try:
            for suffix in ("", BACKUP_SUFFIX, TEMP_SUFFIX):
                path.with_name(path.name + suffix).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to clear key '{key}': {e}") from e

    def has_key(self, key: str) -> bool:
        path = self._path_for_key(key)
        return path.exists() or path.with_name(path.name + BACKUP_SUFFIX).exists()

    def keys(self) -> list[str]:
        if not self._root.is_dir():
            return []
        return sorted(p.stem for p in self._root.glob(f"*{FILE_EXTENSION}"))

    def _path_for_key(self, key: str) -> Path:
        return self._root / f"{sanitize_key(key)}{FILE_EXTENSION}"


def sanitize_key(key: str) -> str:
    """Map a storage key to a safe file stem."""
    if not key:
        raise StorageError("Key cannot be empty")
    return key.replace("/", "_").replace("\\", "_").replace(":", "_")


def frame(data: bytes) -> bytes:
    """Prefix data with a SHA-256 checksum line."""
    return CHECKSUM_PREFIX + hashlib.sha256(data).hexdigest().encode("ascii") + b"\n" + data


def unframe(raw: bytes) -> bytes | None:
    """Return the payload of a framed value, or None if the checksum does not match."""
    header, sep, data = raw.partition(b"\n")
    if not sep or not header.startswith(CHECKSUM_PREFIX):
        return None
    if header[len(CHECKSUM_PREFIX) :].decode("ascii", errors="replace") != hashlib.sha256(data).hexdigest():
        return None
    return data
