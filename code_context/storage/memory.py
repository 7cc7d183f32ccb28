"""In-process vector store without secondary indexes."""

from __future__ import annotations

import copy
import logging
import math
import threading
from typing import Any, Dict, List, Optional, Sequence

from ..core.models import ChunkRecord
from .base import Hit, StoreCapabilities, VectorStore, cosine_similarity_to_score

logger = logging.getLogger(__name__)


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


class InMemoryVectorStore(VectorStore):
    """Dense-only store kept in a dict; deletes go through scan-and-rewrite.

    Useful for tests and throwaway indexes. Nothing survives the process.
    """

    backend = "memory"

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, ChunkRecord]] = {}
        self._dimensions: Dict[str, int] = {}

    def create_collection(self, name: str, dimension: int) -> None:
        with self._lock:
            if name in self._collections:
                return
            self._collections[name] = {}
            self._dimensions[name] = dimension
        logger.info(f"Created memory collection '{name}' (dim={dimension})")

    def drop_collection(self, name: str) -> None:
        with self._lock:
            self._collections.pop(name, None)
            self._dimensions.pop(name, None)
        self._forget(name)

    def has_collection(self, name: str) -> bool:
        return name in self._collections

    def list_collections(self) -> List[str]:
        return sorted(self._collections)

    def _detect_capabilities(self, name: str) -> StoreCapabilities:
        return StoreCapabilities(native_fusion=False, native_filtered_delete=False)

    def _dimension(self, name: str) -> int:
        return self._dimensions[name]

    def _table(self, name: str) -> Dict[str, ChunkRecord]:
        try:
            return self._collections[name]
        except KeyError:
            raise KeyError(f"Collection '{name}' does not exist") from None

    def insert(self, name: str, records: Sequence[ChunkRecord]) -> None:
        if not records:
            return
        with self._lock:
            table = self._table(name)
            dim = self._dimensions[name]
            for record in records:
                if len(record.emb) != dim:
                    raise ValueError(
                        f"Record {record.path}:{record.start_line} has dimension {len(record.emb)}, "
                        f"collection '{name}' expects {dim}"
                    )
                table[record.id] = copy.deepcopy(record)

    def search(self, name: str, vector: List[float], top_k: int) -> List[Hit]:
        with self._lock:
            records = list(self._table(name).values())
        scored = [(cosine_similarity_to_score(_cosine(vector, r.emb)), r) for r in records]
        scored.sort(key=lambda hit: (-hit[0], hit[1].path, hit[1].start_line))
        return [(score, self._without_vector(r)) for score, r in scored[:top_k]]

    def query(
        self, name: str, filter: Optional[Dict[str, Any]], fields: Sequence[str], limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            records = list(self._table(name).values())
        rows: List[Dict[str, Any]] = []
        for record in records:
            payload = record.payload()
            if filter and any(payload.get(k) != v for k, v in filter.items()):
                continue
            rows.append({f: payload.get(f) for f in fields})
            if limit is not None and len(rows) >= limit:
                break
        return rows

    def scan(self, name: str) -> List[ChunkRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._table(name).values()]

    @staticmethod
    def _without_vector(record: ChunkRecord) -> ChunkRecord:
        out = copy.copy(record)
        out.emb = []
        return out
