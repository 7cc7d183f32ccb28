"""code-context: incremental semantic indexing and search for codebases."""

from .config import load_config
from .core import CodeChunk, SearchResult, SyncResult, SyntaxAwareChunker, FallbackChunker, EmbeddingCoordinator
from .errors import (
    CodeContextError,
    CorruptManifest,
    DeadlineExceeded,
    IndexNotFoundError,
    ProviderError,
    ProviderRateLimited,
    ProviderUnavailable,
    UnsupportedLanguage,
    VectorStoreUnavailable,
)
from .indexing import IndexSynchronizer, ManifestStore, build_index, make_synchronizer
from .search import SemanticSearchService, make_search_service
from .storage import VectorStore, make_vector_store
from .utils import Deadline

__version__ = "0.1.0"

__all__ = [
    "load_config",
    "CodeChunk",
    "SearchResult",
    "SyncResult",
    "SyntaxAwareChunker",
    "FallbackChunker",
    "EmbeddingCoordinator",
    "CodeContextError",
    "CorruptManifest",
    "DeadlineExceeded",
    "IndexNotFoundError",
    "ProviderError",
    "ProviderRateLimited",
    "ProviderUnavailable",
    "UnsupportedLanguage",
    "VectorStoreUnavailable",
    "IndexSynchronizer",
    "ManifestStore",
    "build_index",
    "make_synchronizer",
    "SemanticSearchService",
    "make_search_service",
    "VectorStore",
    "make_vector_store",
    "Deadline",
]
