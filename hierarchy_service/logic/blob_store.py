"""Attachment blob store collaborator.

``BlobStore`` is the contract the attachment worker depends on: a
server-side ``copy`` that never materialises the blob in the caller. The
in-memory implementation backs local development and tests.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def copy(self, source_location: str, dest_location: str) -> bool:
        ...


class InMemoryBlobStore:
    def __init__(self, blobs: Optional[Dict[str, bytes]] = None) -> None:
        self._blobs: Dict[str, bytes] = dict(blobs or {})
        self._lock = threading.Lock()

    def put(self, location: str, data: bytes) -> None:
        with self._lock:
            self._blobs[location] = bytes(data)

    def get(self, location: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(location)

    def exists(self, location: str) -> bool:
        with self._lock:
            return location in self._blobs

    def delete(self, location: str) -> None:
        with self._lock:
            self._blobs.pop(location, None)

    def copy(self, source_location: str, dest_location: str) -> bool:
        with self._lock:
            data = self._blobs.get(source_location)
            if data is None:
                logger.warning("blob_store.copy.source_missing source=%s dest=%s", source_location, dest_location)
                return False
            self._blobs[dest_location] = data
        return True


__all__ = ["BlobStore", "InMemoryBlobStore"]
