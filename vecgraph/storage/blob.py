"""
Blob Store Backends: In-Memory and FileSystem.

Both implement BlobStoreProtocol:
- write(key, data): replace value atomically
- read(key): value or Err(NOT_FOUND)
- delete(key): True if the key existed
- keys(prefix): sorted key iteration
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import threading
from pathlib import Path
from typing import Iterator, Union

from vecgraph.core.errors import Err, Ok, Result, StoreError

logger = logging.getLogger(__name__)


class InMemoryBlobStore:
    """
    Process-local blob store.

    Thread Safety: dict operations guarded by a lock so keys() sees a
    consistent listing.
    """

    __slots__ = ("_blobs", "_lock")

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def write(self, key: str, data: bytes) -> Result[None, StoreError]:
        with self._lock:
            self._blobs[key] = bytes(data)
        return Ok(None)

    def read(self, key: str) -> Result[bytes, StoreError]:
        with self._lock:
            data = self._blobs.get(key)
        if data is None:
            return Err(StoreError.blob_not_found(key))
        return Ok(data)

    def delete(self, key: str) -> Result[bool, StoreError]:
        with self._lock:
            return Ok(self._blobs.pop(key, None) is not None)

    def keys(self, prefix: str = "") -> Iterator[str]:
        with self._lock:
            listing = sorted(k for k in self._blobs if k.startswith(prefix))
        return iter(listing)

    def __len__(self) -> int:
        return len(self._blobs)

    def __contains__(self, key: str) -> bool:
        return key in self._blobs


class FileSystemBlobStore:
    """
    Local filesystem blob store.

    Objects stored at: {data_dir}/{h[:2]}/{urlsafe_b64(key)}
    where h is the md5 of the key, spreading files across 256 directories.
    File names decode back to keys, so keys() needs no side index.
    Writes go to a temporary file first and are renamed into place.
    """

    __slots__ = ("_data_dir",)

    def __init__(self, data_dir: Union[str, Path]) -> None:
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @staticmethod
    def _encode_key(key: str) -> str:
        return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii").rstrip("=")

    @staticmethod
    def _decode_key(name: str) -> str:
        padded = name + "=" * (-len(name) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")

    def _key_to_path(self, key: str) -> Path:
        key_hash = hashlib.md5(key.encode("utf-8")).hexdigest()
        return self._data_dir / key_hash[:2] / self._encode_key(key)

    def write(self, key: str, data: bytes) -> Result[None, StoreError]:
        path = self._key_to_path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, path)
            return Ok(None)
        except OSError as e:
            logger.warning("Blob write failed for %s: %s", key, e)
            return Err(StoreError.io_error(key, str(e)))

    def read(self, key: str) -> Result[bytes, StoreError]:
        path = self._key_to_path(key)
        try:
            return Ok(path.read_bytes())
        except FileNotFoundError:
            return Err(StoreError.blob_not_found(key))
        except OSError as e:
            return Err(StoreError.io_error(key, str(e)))

    def delete(self, key: str) -> Result[bool, StoreError]:
        path = self._key_to_path(key)
        try:
            path.unlink()
            return Ok(True)
        except FileNotFoundError:
            return Ok(False)
        except OSError as e:
            return Err(StoreError.io_error(key, str(e)))

    def keys(self, prefix: str = "") -> Iterator[str]:
        found = []
        for path in self._data_dir.glob("*/*"):
            if path.name.endswith(".tmp") or not path.is_file():
                continue
            try:
                key = self._decode_key(path.name)
            except (ValueError, UnicodeDecodeError):
                logger.debug("Skipping foreign file %s", path)
                continue
            if key.startswith(prefix):
                found.append(key)
        return iter(sorted(found))
