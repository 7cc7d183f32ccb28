"""Embedded LanceDB backend."""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import lancedb
import pyarrow as pa
from lancedb.rerankers import RRFReranker

from ..core.models import ChunkRecord
from ..errors import VectorStoreUnavailable
from ..utils.file_utils import ensure_dir
from .base import (
    Hit,
    HybridSearchRequest,
    StoreCapabilities,
    VectorStore,
    cosine_distance_to_score,
    rrf_to_score,
)

logger = logging.getLogger(__name__)

TEXT_FIELD = "content"
RRF_K = 60

# payload field name -> table column
_COLUMNS = {
    "chunk_id": "id",
    "path": "path",
    "start_line": "start_line",
    "end_line": "end_line",
    "language": "language",
    "file_hash": "file_hash",
    "chunk_hash": "chunk_hash",
    "text": TEXT_FIELD,
    "metadata": "metadata",
}


def _schema(dimension: int) -> pa.Schema:
    return pa.schema(
        [
            pa.field("id", pa.string()),
            pa.field("vector", pa.list_(pa.float32(), dimension)),
            pa.field(TEXT_FIELD, pa.string()),
            pa.field("path", pa.string()),
            pa.field("start_line", pa.int64()),
            pa.field("end_line", pa.int64()),
            pa.field("language", pa.string()),
            pa.field("file_hash", pa.string()),
            pa.field("chunk_hash", pa.string()),
            pa.field("metadata", pa.string()),
        ]
    )


def _quote(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def _where(conditions: Optional[Dict[str, Any]]) -> Optional[str]:
    if not conditions:
        return None
    return " AND ".join(f"{_COLUMNS.get(k, k)} = {_quote(v)}" for k, v in conditions.items())


def _row(record: ChunkRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "vector": [float(x) for x in record.emb],
        TEXT_FIELD: record.text,
        "path": record.path,
        "start_line": record.start_line,
        "end_line": record.end_line,
        "language": record.language or "",
        "file_hash": record.file_hash,
        "chunk_hash": record.chunk_hash,
        "metadata": json.dumps(record.metadata, sort_keys=True),
    }


def _payload(row: Dict[str, Any]) -> Dict[str, Any]:
    payload = {field: row.get(column) for field, column in _COLUMNS.items()}
    metadata = payload.get("metadata")
    payload["metadata"] = json.loads(metadata) if metadata else {}
    return payload


def _record(row: Dict[str, Any], with_vector: bool = False) -> ChunkRecord:
    emb = list(row.get("vector") or []) if with_vector else None
    return ChunkRecord.from_payload(_payload(row), emb=emb)


class LanceVectorStore(VectorStore):
    """LanceDB tables on local disk.

    Hybrid collections get a full-text index on the chunk text. Creating that
    index can fail (older releases, empty tables); the collection then stays
    dense-only and hybrid searches fall back to dense search.
    """

    backend = "lancedb"

    def __init__(self, path: str):
        super().__init__()
        self.path = str(ensure_dir(path))
        self._lock = threading.RLock()
        self._hybrid_requested: set = set()
        # hybrid tables written to since their full-text index was built
        self._stale_text_index: set = set()
        try:
            self.db = lancedb.connect(self.path)
        except OSError as e:
            raise VectorStoreUnavailable(f"Cannot open LanceDB at {self.path}: {e}") from e

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except OSError as e:
            raise VectorStoreUnavailable(f"LanceDB unavailable while trying to {action}: {e}") from e

    def _table(self, name: str):
        try:
            return self.db.open_table(name)
        except (FileNotFoundError, ValueError) as e:
            raise KeyError(f"Collection '{name}' does not exist") from e
        except OSError as e:
            raise VectorStoreUnavailable(f"Cannot open LanceDB table '{name}': {e}") from e

    # -- collection lifecycle --------------------------------------------------

    def create_collection(self, name: str, dimension: int) -> None:
        with self._lock:
            if self.has_collection(name):
                return
            self.db.create_table(name, schema=_schema(dimension), exist_ok=True)
        logger.info(f"Created LanceDB table '{name}' (dim={dimension})")

    def create_hybrid_collection(self, name: str, dimension: int) -> None:
        self.create_collection(name, dimension)
        self._hybrid_requested.add(name)
        self._ensure_text_index(name)
        self._capabilities[name] = self._detect_capabilities(name)

    def _ensure_text_index(self, name: str) -> bool:
        table = self._table(name)
        try:
            table.create_fts_index(TEXT_FIELD, replace=True, use_tantivy=False)
        except Exception as e:  # lancedb raises backend-specific errors here
            logger.warning(f"Full-text index unavailable for '{name}': {e}")
            return False
        return True

    def drop_collection(self, name: str) -> None:
        with self._lock:
            if self.has_collection(name):
                self.db.drop_table(name)
            self._stale_text_index.discard(name)
            self._hybrid_requested.discard(name)
        self._forget(name)

    def has_collection(self, name: str) -> bool:
        return name in self.list_collections()

    def list_collections(self) -> List[str]:
        try:
            return sorted(self.db.table_names())
        except OSError as e:
            raise VectorStoreUnavailable(f"Cannot list LanceDB tables: {e}") from e

    def _detect_capabilities(self, name: str) -> StoreCapabilities:
        has_fts = False
        for index in self._table(name).list_indices():
            kind = str(getattr(index, "index_type", "")).upper()
            columns = list(getattr(index, "columns", []) or [])
            if ("FTS" in kind or "INVERTED" in kind) and TEXT_FIELD in columns:
                has_fts = True
        return StoreCapabilities(native_fusion=has_fts, native_filtered_delete=True)

    def _dimension(self, name: str) -> int:
        return self._table(name).schema.field("vector").type.list_size

    # -- writes ----------------------------------------------------------------

    def insert(self, name: str, records: Sequence[ChunkRecord]) -> None:
        if not records:
            return
        with self._lock:
            table = self._table(name)
            try:
                table.add([_row(r) for r in records])
            except OSError as e:
                raise VectorStoreUnavailable(f"Cannot write to LanceDB table '{name}': {e}") from e
            if name in self._hybrid_requested:
                self._stale_text_index.add(name)
        logger.debug(f"Added {len(records)} rows to '{name}'")

    def flush(self, name: str) -> None:
        """Rebuild the full-text index once after a batch of inserts.

        New rows are matched lexically only after a rebuild. The first
        successful build on a table that had none turns on native fusion.
        """
        with self._lock:
            if name not in self._stale_text_index:
                return
            self._stale_text_index.discard(name)
            if self._ensure_text_index(name):
                self.capabilities(name).native_fusion = True

    def _delete_ids(self, name: str, ids: Sequence[str]) -> None:
        clause = "id IN (" + ", ".join(_quote(i) for i in ids) + ")"
        with self._lock:
            self._table(name).delete(clause)

    def delete_by_path(self, name: str, path: str) -> int:
        where = _where({"path": path})
        with self._lock:
            table = self._table(name)
            removed = table.count_rows(where)
            if removed:
                table.delete(where)
        return removed

    # -- reads -----------------------------------------------------------------

    def search(self, name: str, vector: List[float], top_k: int) -> List[Hit]:
        with self._guard(f"search '{name}'"):
            rows = self._table(name).search(vector).distance_type("cosine").limit(top_k).to_list()
        return [(cosine_distance_to_score(float(row["_distance"])), _record(row)) for row in rows]

    def hybrid_search(self, name: str, requests: Sequence[HybridSearchRequest], top_k: int) -> List[Hit]:
        self.flush(name)
        return super().hybrid_search(name, requests, top_k)

    def _native_hybrid_search(
        self, name: str, vector: List[float], text: str, requests: Sequence[HybridSearchRequest], top_k: int
    ) -> List[Hit]:
        with self._guard(f"hybrid search '{name}'"):
            rows = (
                self._table(name)
                .search(query_type="hybrid")
                .vector(vector)
                .text(text)
                .rerank(reranker=RRFReranker(K=RRF_K))
                .limit(top_k)
                .to_list()
            )
        return rrf_to_score(
            [(float(row["_relevance_score"]), _record(row)) for row in rows], legs=2, k=RRF_K
        )

    def query(
        self, name: str, filter: Optional[Dict[str, Any]], fields: Sequence[str], limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        table = self._table(name)
        where = _where(filter)
        with self._guard(f"query '{name}'"):
            total = table.count_rows(where)
            if limit is not None:
                total = min(total, limit)
            if total == 0:
                return []
            builder = table.search()
            if where:
                builder = builder.where(where)
            rows = builder.limit(total).to_list()
        return [{f: _payload(row).get(f) for f in fields} for row in rows]

    def scan(self, name: str) -> List[ChunkRecord]:
        with self._guard(f"scan '{name}'"):
            rows = self._table(name).to_arrow().to_pylist()
        return [_record(row, with_vector=True) for row in rows]

    def count(self, name: str, filter: Optional[Dict[str, Any]] = None) -> int:
        with self._guard(f"count '{name}'"):
            return self._table(name).count_rows(_where(filter))
