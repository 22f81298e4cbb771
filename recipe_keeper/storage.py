from __future__ import annotations

from typing import Dict, Optional, Protocol


class BlobStore(Protocol):
    """Durable string-keyed store used to persist recipes and settings."""

    def get(self, key: str) -> Optional[str]:
        """Return the stored string or ``None`` when the key is unset."""

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    def remove(self, key: str) -> None:
        """Remove ``key``. Removing a missing key is not an error."""


class ImageCache(Protocol):
    """Private directory holding images downloaded for recipes."""

    directory: str

    def exists(self, path: str) -> bool:
        """Return whether ``path`` exists."""

    def mkdir(self, path: str) -> None:
        """Create ``path`` (and parents) if missing."""

    def download_file(self, from_url: str, to_file: str) -> None:
        """Download ``from_url`` into ``to_file``; raise on any failure."""

    def unlink(self, path: str) -> None:
        """Delete the file at ``path``."""

    def contains(self, path: str) -> bool:
        """Return whether ``path`` points inside the cache directory."""

    def new_image_path(self, image_url: str) -> str:
        """Return a fresh path inside the cache for an image from ``image_url``."""


class InMemoryBlobStore:
    """Process-local blob store for tests and local development."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


__all__ = ["BlobStore", "ImageCache", "InMemoryBlobStore"]
