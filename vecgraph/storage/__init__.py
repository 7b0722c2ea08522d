"""
Storage module: blob backends, the vector store and the persisted layout.
"""

from vecgraph.storage.blob import FileSystemBlobStore, InMemoryBlobStore
from vecgraph.storage.vector_store import StoredVector, StoreGeneration, StoreScan, VectorStore

__all__ = [
    "FileSystemBlobStore",
    "InMemoryBlobStore",
    "StoredVector",
    "StoreGeneration",
    "StoreScan",
    "VectorStore",
]
