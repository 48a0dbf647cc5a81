"""Local persistence for guest state."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol

from .errors import StorageError

logger = logging.getLogger(__name__)

GUEST_CART_KEY = "guest_cart_v1"
GUEST_WISHLIST_KEY = "guest_wishlist_v1"
GUEST_COUPON_KEY = "guest_coupon_v1"
SESSION_KEY = "session"


class LocalStorage(Protocol):
    """Synchronous keyed blob storage on the device."""

    def read(self, key: str) -> Optional[Any]: ...

    def write(self, key: str, blob: Any) -> None: ...

    def erase(self, key: str) -> None: ...


class JsonFileStorage:
    """Stores each key as a JSON file inside a directory."""

    def __init__(self, directory: Optional[str] = None) -> None:
        """
        Initialize the storage.

        Args:
            directory: Directory for blobs. Defaults to ~/.storefront_state
        """
        if directory is None:
            directory = str(Path.home() / ".storefront_state")
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or key.startswith("."):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    def read(self, key: str) -> Optional[Any]:
        """Read a blob, returning None when missing or corrupted."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (json.JSONDecodeError, ValueError) as e:
            # Corrupted blobs start fresh
            logger.warning(f"Discarding corrupted blob {path}: {e}")
            return None
        except OSError as e:
            raise StorageError(f"Could not read {path}: {e}") from e

    def write(self, key: str, blob: Any) -> None:
        """Write a blob atomically with owner-only permissions."""
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(blob, f, default=str)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Could not write {path}: {e}") from e

    def erase(self, key: str) -> None:
        """Delete a blob if present."""
        path = self._path(key)
        try:
            if path.exists():
                os.remove(path)
        except OSError as e:
            raise StorageError(f"Could not delete {path}: {e}") from e


class MemoryStorage:
    """In-process storage with an optional size quota."""

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self.blobs: dict[str, str] = {}
        self.quota_bytes = quota_bytes

    def read(self, key: str) -> Optional[Any]:
        raw = self.blobs.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def write(self, key: str, blob: Any) -> None:
        raw = json.dumps(blob, default=str)
        if self.quota_bytes is not None:
            used = sum(len(v) for k, v in self.blobs.items() if k != key)
            if used + len(raw) > self.quota_bytes:
                raise StorageError(f"Storage quota exceeded writing {key}")
        self.blobs[key] = raw

    def erase(self, key: str) -> None:
        self.blobs.pop(key, None)
