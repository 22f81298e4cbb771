from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests

from .storage import ImageCache

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}
DEFAULT_IMAGE_DIR = "recipe-images"
FILE_URI_PREFIX = "file://"


def _strip_file_uri(path: str) -> str:
    if path.startswith(FILE_URI_PREFIX):
        return path[len(FILE_URI_PREFIX):]
    return path


def image_extension(image_url: str) -> str:
    """Return the image extension of ``image_url`` or ``jpg`` when unknown."""

    suffix = Path(urlparse(image_url).path).suffix.lower().lstrip(".")
    return suffix if suffix in ALLOWED_IMAGE_EXTENSIONS else "jpg"


class LocalImageCache(ImageCache):
    """Image cache stored in a private directory on the local file system."""

    def __init__(
        self,
        directory: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.directory = os.path.abspath(directory)
        self._session = session or requests.Session()
        self._timeout = timeout

    @classmethod
    def from_env(cls, session: Optional[requests.Session] = None) -> "LocalImageCache":
        return cls(os.environ.get("RECIPE_IMAGE_DIR", DEFAULT_IMAGE_DIR), session=session)

    def exists(self, path: str) -> bool:
        return os.path.exists(_strip_file_uri(path))

    def mkdir(self, path: str) -> None:
        os.makedirs(_strip_file_uri(path), exist_ok=True)

    def download_file(self, from_url: str, to_file: str) -> None:
        target = _strip_file_uri(to_file)
        response = self._session.get(from_url, stream=True, timeout=self._timeout)
        try:
            response.raise_for_status()
            with open(target, "wb") as handle:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        handle.write(chunk)
        except (requests.RequestException, OSError):
            if os.path.exists(target):
                os.remove(target)
            raise
        finally:
            response.close()

    def unlink(self, path: str) -> None:
        os.remove(_strip_file_uri(path))

    def contains(self, path: str) -> bool:
        if not path:
            return False
        resolved = os.path.abspath(_strip_file_uri(path))
        return os.path.commonpath([resolved, self.directory]) == self.directory and resolved != self.directory

    def new_image_path(self, image_url: str) -> str:
        filename = f"{int(time.time() * 1000)}.{image_extension(image_url)}"
        return os.path.join(self.directory, filename)


__all__ = ["ALLOWED_IMAGE_EXTENSIONS", "LocalImageCache", "image_extension"]
