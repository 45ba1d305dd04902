"""
Content-addressed object store for raw PDFs.

Keys are deterministic: {source_id}/{YYYY}/{MM}/{sha256}.pdf
Writes never overwrite: a second put() of the same key is a no-op, so
concurrent duplicate uploads cannot corrupt an object.

Backed by a directory (DATA_ROOT/raw-pdfs by default) shared between the
ingestion and extraction services, the same way both services share /data.
"""

import logging
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger("storage")

# Guards against path traversal ("../../secrets.pdf") on keys coming from the wire
KEY_PATTERN = re.compile(r"^([a-zA-Z0-9_\-]+)/(\d{4})/(\d{2})/([a-f0-9]{64})\.pdf$")


class StorageError(Exception):
    """Raised when the object store cannot complete an operation."""


def storage_key(source_id: str, fingerprint: str, when: Optional[datetime] = None) -> str:
    """Build the deterministic object key for a document."""
    when = when or datetime.now(tz=timezone.utc)
    return f"{source_id}/{when.year:04d}/{when.month:02d}/{fingerprint}.pdf"


def is_valid_key(key: str) -> bool:
    return bool(KEY_PATTERN.match(key or ""))


class ObjectStore:
    def __init__(self, root: str):
        self.root = root

    def _path(self, key: str) -> str:
        if not is_valid_key(key):
            raise StorageError(f"Invalid storage key: {key!r}")
        return os.path.join(self.root, *key.split("/"))

    async def put(self, key: str, data: bytes) -> bool:
        """
        Store bytes under key without overwriting.
        Returns True if the object was created, False if it already existed.

        Bytes go to a temp file first and are then hard-linked into place;
        link() fails atomically if the target exists, so a crash mid-write never
        leaves a truncated object behind under the final key.
        """
        path = self._path(key)
        tmp = f"{path}.{uuid.uuid4().hex}.part"
        try:
            await aiofiles.os.makedirs(os.path.dirname(path), exist_ok=True)
            async with aiofiles.open(tmp, "wb") as f:
                await f.write(data)
            try:
                await aiofiles.os.link(tmp, path)
            except FileExistsError:
                logger.debug("Object already stored key=%s", key)
                return False
            return True
        except OSError as e:
            raise StorageError(f"upload failed for {key}: {e}") from e
        finally:
            try:
                await aiofiles.os.remove(tmp)
            except FileNotFoundError:
                pass

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except OSError as e:
            raise StorageError(f"download failed for {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.exists(self._path(key))

    async def delete(self, key: str) -> bool:
        """Remove an object. Returns False (and logs) instead of raising; callers treat cleanup as best effort."""
        try:
            await aiofiles.os.remove(self._path(key))
            return True
        except FileNotFoundError:
            return True
        except (OSError, StorageError) as e:
            logger.error("Failed to delete object key=%s: %s", key, e)
            return False
