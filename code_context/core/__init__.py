"""Core functionality for code-context."""

from .models import ChunkRecord, CodeChunk, FileFingerprint, SearchQuery, SearchResult, SourceFile, SyncResult
from .chunking import (
    Chunker,
    FallbackChunker,
    SyntaxAwareChunker,
    chunk_text,
    get_language_for_file,
    make_chunker,
    split_text,
)
from .embeddings import Embedder, HttpEmbedder, SentenceTransformersEmbedder, make_embedder
from .coordinator import EmbeddingCoordinator, EmbeddingOutcome, count_tokens, make_coordinator

__all__ = [
    "ChunkRecord",
    "CodeChunk",
    "FileFingerprint",
    "SearchQuery",
    "SearchResult",
    "SourceFile",
    "SyncResult",
    "Chunker",
    "FallbackChunker",
    "SyntaxAwareChunker",
    "chunk_text",
    "get_language_for_file",
    "make_chunker",
    "split_text",
    "Embedder",
    "HttpEmbedder",
    "SentenceTransformersEmbedder",
    "make_embedder",
    "EmbeddingCoordinator",
    "EmbeddingOutcome",
    "count_tokens",
    "make_coordinator",
]
