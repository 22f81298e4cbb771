from __future__ import annotations

import os
from typing import Optional

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore

from .storage import BlobStore


class FirestoreBlobStore(BlobStore):
    """Blob store keeping each key in its own Firestore document.

    The recipe collection is written as one JSON string under a single key,
    so every write replaces the whole document.
    """

    def __init__(
        self,
        *,
        project: Optional[str] = None,
        collection_name: str = "recipe_blobs",
        client: Optional[firestore.Client] = None,
    ) -> None:
        self._project = project
        self._collection_name = collection_name

        self._firestore_client = client or firestore.Client(project=project)
        self._collection = self._firestore_client.collection(collection_name)

    @classmethod
    def from_env(cls) -> "FirestoreBlobStore":
        """Build a blob store from environment variables."""

        project = os.environ.get("GCP_PROJECT")
        collection_name = os.environ.get("RECIPES_COLLECTION", "recipe_blobs")
        return cls(project=project, collection_name=collection_name)

    def get(self, key: str) -> Optional[str]:
        snapshot = self._collection.document(key).get()

        if not snapshot.exists:
            return None

        data = snapshot.to_dict() or {}
        value = data.get("value")
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        self._collection.document(key).set(
            {
                "value": value,
                "updated_at": firestore.SERVER_TIMESTAMP,
            }
        )

    def remove(self, key: str) -> None:
        try:
            self._collection.document(key).delete()
        except gcloud_exceptions.NotFound:
            # Already gone.
            pass


__all__ = ["FirestoreBlobStore"]
