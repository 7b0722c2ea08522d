"""
Protocol Definitions: Structural Subtyping for Pluggable Backends

Defines the interface to the durable blob store the vector store and the
index snapshot are persisted through. Its own durability and replication
are the backend's concern.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Iterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from vecgraph.core.errors import Result, StoreError


# =============================================================================
# BLOB STORE PROTOCOL
# =============================================================================
@runtime_checkable
class BlobStoreProtocol(Protocol):
    """
    Protocol for durable key -> bytes storage.

    Implementations:
        - InMemoryBlobStore: process-local dict (tests, ephemeral indexes)
        - FileSystemBlobStore: one file per key under a data directory

    Errors:
        read() of a missing key returns Err(NOT_FOUND).
        Transient failures return Err(STORAGE_IO) and may be retried.
    """

    @abstractmethod
    def write(self, key: str, data: bytes) -> "Result[None, StoreError]":
        """Store data under key, replacing any previous value."""
        ...

    @abstractmethod
    def read(self, key: str) -> "Result[bytes, StoreError]":
        """Load the value stored under key."""
        ...

    @abstractmethod
    def delete(self, key: str) -> "Result[bool, StoreError]":
        """Remove key. Returns True if it existed."""
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> Iterator[str]:
        """Iterate keys starting with prefix, in sorted order."""
        ...
