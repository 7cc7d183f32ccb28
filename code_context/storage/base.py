"""Abstract vector storage interface."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..core.models import ChunkRecord

logger = logging.getLogger(__name__)

Hit = Tuple[float, ChunkRecord]


@dataclass
class StoreCapabilities:
    """What a backend can do for one collection, negotiated once and cached."""

    native_fusion: bool = False
    native_filtered_delete: bool = False
    # set when a hybrid search had to be answered by dense search alone
    hybrid_fallback_used: bool = False


@dataclass
class HybridSearchRequest:
    """One leg of a hybrid search: a dense vector or a text query."""

    vector: Optional[List[float]] = None
    text: Optional[str] = None
    limit: int = 10


def cosine_similarity_to_score(similarity: float) -> float:
    return min(1.0, max(0.0, (similarity + 1.0) / 2.0))


def cosine_distance_to_score(distance: float) -> float:
    return min(1.0, max(0.0, 1.0 - distance / 2.0))


def rrf_to_score(hits: List[Hit], legs: int, k: float) -> List[Hit]:
    """Map reciprocal rank fusion scores onto [0, 1].

    A hit ranked first by every one of ``legs`` searches scores ``legs / k``,
    the largest fused score possible, and maps to 1.0. A hit found by a
    single leg scores at most ``1 / legs``.
    """
    best = max(legs, 1) / k
    return [(min(1.0, max(0.0, score / best)), record) for score, record in hits]


_LOCKS: Dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


def collection_lock(name: str) -> threading.Lock:
    """In-process write lock for one collection."""
    with _LOCKS_GUARD:
        lock = _LOCKS.get(name)
        if lock is None:
            lock = _LOCKS[name] = threading.Lock()
        return lock


class VectorStore(ABC):
    """Abstract base class for vector storage backends.

    All scores returned by ``search`` and ``hybrid_search`` are in [0, 1],
    higher meaning more relevant, sorted descending.
    """

    backend: str = "abstract"

    def __init__(self) -> None:
        self._capabilities: Dict[str, StoreCapabilities] = {}

    # -- collection lifecycle --------------------------------------------------

    @abstractmethod
    def create_collection(self, name: str, dimension: int) -> None:
        pass

    def create_hybrid_collection(self, name: str, dimension: int) -> None:
        """Create a collection and try to provision a lexical index.

        Backends without lexical indexing create a dense collection; hybrid
        searches against it fall back to dense search.
        """
        self.create_collection(name, dimension)
        self._capabilities[name] = self._detect_capabilities(name)

    @abstractmethod
    def drop_collection(self, name: str) -> None:
        pass

    @abstractmethod
    def has_collection(self, name: str) -> bool:
        pass

    @abstractmethod
    def list_collections(self) -> List[str]:
        pass

    # -- capabilities ----------------------------------------------------------

    @abstractmethod
    def _detect_capabilities(self, name: str) -> StoreCapabilities:
        """Inspect the backend once for ``name``."""

    def capabilities(self, name: str) -> StoreCapabilities:
        caps = self._capabilities.get(name)
        if caps is None:
            caps = self._capabilities[name] = self._detect_capabilities(name)
            logger.debug(f"Capabilities for {self.backend} collection '{name}': {caps}")
        return caps

    def _forget(self, name: str) -> None:
        self._capabilities.pop(name, None)

    # -- writes ----------------------------------------------------------------

    @abstractmethod
    def insert(self, name: str, records: Sequence[ChunkRecord]) -> None:
        pass

    def delete(self, name: str, ids: Sequence[str]) -> None:
        """Delete chunks by id."""
        if not ids:
            return
        if self.capabilities(name).native_filtered_delete:
            self._delete_ids(name, ids)
        else:
            self._rewrite_without(name, set(ids))

    def delete_by_path(self, name: str, path: str) -> int:
        """Delete every chunk of one file; returns the number of chunks removed."""
        rows = self.query(name, {"path": path}, ["chunk_id"])
        ids = [row["chunk_id"] for row in rows]
        self.delete(name, ids)
        return len(ids)

    def _delete_ids(self, name: str, ids: Sequence[str]) -> None:
        raise NotImplementedError(f"{self.backend} has no native filtered delete")

    def _rewrite_without(self, name: str, ids: set) -> None:
        """Scan the whole collection and rewrite it without ``ids``.

        Cost is O(collection size) per call.
        """
        records = self.scan(name)
        remaining = [r for r in records if r.id not in ids]
        dimension = len(records[0].emb) if records else self._dimension(name)
        caps = self.capabilities(name)
        self.drop_collection(name)
        if caps.native_fusion:
            self.create_hybrid_collection(name, dimension)
        else:
            self.create_collection(name, dimension)
        # same collection, so the negotiated capabilities still hold
        self._capabilities[name] = caps
        if remaining:
            self.insert(name, remaining)
        logger.debug(f"Rewrote collection '{name}' without {len(records) - len(remaining)} chunks")

    def _dimension(self, name: str) -> int:
        raise NotImplementedError

    def flush(self, name: str) -> None:
        """Bring secondary indexes up to date after a batch of writes."""

    # -- reads -----------------------------------------------------------------

    @abstractmethod
    def search(self, name: str, vector: List[float], top_k: int) -> List[Hit]:
        pass

    def hybrid_search(self, name: str, requests: Sequence[HybridSearchRequest], top_k: int) -> List[Hit]:
        """Dense + lexical search with native fusion, or dense search alone.

        Whether fusion is native is decided by the cached capabilities; the
        fallback is visible through ``capabilities(name).hybrid_fallback_used``.
        """
        vector = next((r.vector for r in requests if r.vector is not None), None)
        text = next((r.text for r in requests if r.text), None)
        if vector is None:
            raise ValueError("hybrid_search needs a dense vector request")

        caps = self.capabilities(name)
        if caps.native_fusion and text:
            hits = self._native_hybrid_search(name, vector, text, requests, top_k)
        else:
            if not caps.hybrid_fallback_used:
                logger.info(f"{self.backend} collection '{name}' has no native fusion; using dense search")
            caps.hybrid_fallback_used = True
            hits = self.search(name, vector, top_k)
        hits.sort(key=lambda hit: hit[0], reverse=True)
        return hits[:top_k]

    def _native_hybrid_search(
        self, name: str, vector: List[float], text: str, requests: Sequence[HybridSearchRequest], top_k: int
    ) -> List[Hit]:
        raise NotImplementedError

    @abstractmethod
    def query(
        self, name: str, filter: Optional[Dict[str, Any]], fields: Sequence[str], limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Return ``fields`` of records whose payload equals ``filter``."""

    @abstractmethod
    def scan(self, name: str) -> List[ChunkRecord]:
        """Return every record of a collection, vectors included."""

    def count(self, name: str, filter: Optional[Dict[str, Any]] = None) -> int:
        """Count records in the collection (default implementation)."""
        return len(self.query(name, filter, ["chunk_id"]))

    def close(self) -> None:
        pass
