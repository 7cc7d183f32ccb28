"""Vector storage backends for code-context."""

from .base import HybridSearchRequest, StoreCapabilities, VectorStore, collection_lock
from .factory import collection_name_for, make_vector_store
from .memory import InMemoryVectorStore
from .qdrant import QdrantVectorStore

__all__ = [
    "HybridSearchRequest",
    "StoreCapabilities",
    "VectorStore",
    "collection_lock",
    "collection_name_for",
    "make_vector_store",
    "InMemoryVectorStore",
    "QdrantVectorStore",
]
