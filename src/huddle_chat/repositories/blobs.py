"""In-memory blob store."""

import asyncio
from typing import Dict, Tuple
from uuid import uuid4

import structlog

from ..domain.errors import NotFound
from .base import BlobStore

logger = structlog.get_logger()


class InMemoryBlobStore(BlobStore):
    """Keeps uploaded bytes in memory and hands out ``{base_url}/{key}`` URLs."""

    def __init__(self, base_url: str = "/media") -> None:
        self.base_url = base_url.rstrip("/")
        self._blobs: Dict[str, Tuple[bytes, str]] = {}
        self._lock = asyncio.Lock()

    async def put(self, data: bytes, content_type: str) -> str:
        key = uuid4().hex
        async with self._lock:
            self._blobs[key] = (data, content_type)
        logger.info("blob_stored", key=key, size=len(data), content_type=content_type)
        return f"{self.base_url}/{key}"

    async def get(self, key: str) -> Tuple[bytes, str]:
        async with self._lock:
            blob = self._blobs.get(key)
        if blob is None:
            raise NotFound(f"Blob {key} not found")
        return blob
