"""Qdrant vector database backend."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    Fusion,
    FusionQuery,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    Prefetch,
    SparseVector,
    SparseVectorParams,
    VectorParams,
)

from ..core.models import ChunkRecord
from ..errors import VectorStoreUnavailable
from .base import (
    Hit,
    HybridSearchRequest,
    StoreCapabilities,
    VectorStore,
    cosine_similarity_to_score,
    rrf_to_score,
)
from .sparse import encode_sparse

logger = logging.getLogger(__name__)

DENSE_VECTOR = "dense"
SPARSE_VECTOR = "text"
# ranking constant of Qdrant's RRF: a leg's first hit contributes 1 / RRF_K
RRF_K = 2


def point_id(chunk_id: str) -> str:
    """Qdrant point ids must be UUIDs; derive one from the chunk id."""
    return str(uuid.UUID(hex=chunk_id[:32]))


def _filter(conditions: Optional[Dict[str, Any]]) -> Optional[Filter]:
    if not conditions:
        return None
    return Filter(
        must=[FieldCondition(key=k, match=MatchValue(value=v)) for k, v in conditions.items()]
    )


class QdrantVectorStore(VectorStore):
    """Qdrant backend, networked (url/host+port) or embedded (path/``:memory:``).

    Hybrid collections carry a sparse ``text`` vector next to the dense one and
    are searched with reciprocal rank fusion.
    """

    backend = "qdrant"

    def __init__(
        self,
        url: Optional[str] = None,
        host: str = "localhost",
        port: int = 6333,
        path: Optional[str] = None,
        location: Optional[str] = None,
        client: Optional[QdrantClient] = None,
        upsert_batch_size: int = 128,
    ):
        super().__init__()
        self.embedded = bool(path or location)
        self.upsert_batch_size = upsert_batch_size
        if client is not None:
            self.client = client
        elif location:
            self.client = QdrantClient(location=location)
        elif path:
            self.client = QdrantClient(path=path)
        elif url:
            self.client = QdrantClient(url=url)
        else:
            self.client = QdrantClient(host=host, port=port)

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except (ResponseHandlingException, ConnectionError) as e:
            raise VectorStoreUnavailable(f"Qdrant unavailable while trying to {action}: {e}") from e
        except UnexpectedResponse as e:
            if e.status_code is None or e.status_code < 500:
                raise
            raise VectorStoreUnavailable(f"Qdrant failed with {e.status_code} while trying to {action}: {e}") from e

    # -- collection lifecycle --------------------------------------------------

    def create_collection(self, name: str, dimension: int) -> None:
        with self._guard(f"create collection '{name}'"):
            if self.client.collection_exists(name):
                return
            self.client.create_collection(
                collection_name=name,
                vectors_config={DENSE_VECTOR: VectorParams(size=dimension, distance=Distance.COSINE)},
            )
            self._index_path_field(name)
        logger.info(f"Created Qdrant collection '{name}' (dim={dimension})")

    def create_hybrid_collection(self, name: str, dimension: int) -> None:
        with self._guard(f"create collection '{name}'"):
            if not self.client.collection_exists(name):
                try:
                    self.client.create_collection(
                        collection_name=name,
                        vectors_config={DENSE_VECTOR: VectorParams(size=dimension, distance=Distance.COSINE)},
                        sparse_vectors_config={SPARSE_VECTOR: SparseVectorParams()},
                    )
                    self._index_path_field(name)
                    logger.info(f"Created hybrid Qdrant collection '{name}' (dim={dimension})")
                except (UnexpectedResponse, ValueError) as e:
                    logger.warning(f"Sparse vectors unavailable for '{name}', creating dense collection: {e}")
                    self.create_collection(name, dimension)
            self._capabilities[name] = self._detect_capabilities(name)

    def _index_path_field(self, name: str) -> None:
        # payload indexes are a no-op in embedded mode
        if self.embedded:
            return
        self.client.create_payload_index(
            collection_name=name,
            field_name="path",
            field_schema=PayloadSchemaType.KEYWORD,
        )

    def drop_collection(self, name: str) -> None:
        with self._guard(f"drop collection '{name}'"):
            if self.client.collection_exists(name):
                self.client.delete_collection(collection_name=name)
        self._forget(name)

    def has_collection(self, name: str) -> bool:
        with self._guard(f"check collection '{name}'"):
            return self.client.collection_exists(name)

    def list_collections(self) -> List[str]:
        with self._guard("list collections"):
            return sorted(c.name for c in self.client.get_collections().collections)

    def _detect_capabilities(self, name: str) -> StoreCapabilities:
        with self._guard(f"inspect collection '{name}'"):
            info = self.client.get_collection(collection_name=name)
        sparse = info.config.params.sparse_vectors or {}
        return StoreCapabilities(native_fusion=SPARSE_VECTOR in sparse, native_filtered_delete=True)

    def _dimension(self, name: str) -> int:
        with self._guard(f"inspect collection '{name}'"):
            info = self.client.get_collection(collection_name=name)
        return info.config.params.vectors[DENSE_VECTOR].size

    # -- writes ----------------------------------------------------------------

    def _point(self, record: ChunkRecord, hybrid: bool) -> PointStruct:
        vectors: Dict[str, Any] = {DENSE_VECTOR: record.emb}
        if hybrid:
            indices, values = encode_sparse(record.text)
            if indices:
                vectors[SPARSE_VECTOR] = SparseVector(indices=indices, values=values)
        return PointStruct(id=point_id(record.id), vector=vectors, payload=record.payload())

    def insert(self, name: str, records: Sequence[ChunkRecord]) -> None:
        if not records:
            return
        hybrid = self.capabilities(name).native_fusion
        points = [self._point(r, hybrid) for r in records]

        total_batches = (len(points) + self.upsert_batch_size - 1) // self.upsert_batch_size
        for i in range(0, len(points), self.upsert_batch_size):
            batch_num = i // self.upsert_batch_size + 1
            with self._guard(f"upsert batch {batch_num}/{total_batches} into '{name}'"):
                self.client.upsert(
                    collection_name=name,
                    points=points[i : i + self.upsert_batch_size],
                    wait=True,
                )
        logger.debug(f"Upserted {len(points)} points into '{name}'")

    def _delete_ids(self, name: str, ids: Sequence[str]) -> None:
        with self._guard(f"delete points from '{name}'"):
            self.client.delete(
                collection_name=name,
                points_selector=PointIdsList(points=[point_id(i) for i in ids]),
                wait=True,
            )

    def delete_by_path(self, name: str, path: str) -> int:
        removed = self.count(name, {"path": path})
        if removed:
            with self._guard(f"delete chunks of {path} from '{name}'"):
                self.client.delete(
                    collection_name=name,
                    points_selector=FilterSelector(filter=_filter({"path": path})),
                    wait=True,
                )
        return removed

    # -- reads -----------------------------------------------------------------

    def search(self, name: str, vector: List[float], top_k: int) -> List[Hit]:
        with self._guard(f"search '{name}'"):
            results = self.client.query_points(
                collection_name=name,
                query=vector,
                using=DENSE_VECTOR,
                limit=top_k,
                with_payload=True,
                with_vectors=False,
            )
        return [
            (cosine_similarity_to_score(p.score), ChunkRecord.from_payload(p.payload or {}))
            for p in results.points
        ]

    def _native_hybrid_search(
        self, name: str, vector: List[float], text: str, requests: Sequence[HybridSearchRequest], top_k: int
    ) -> List[Hit]:
        leg_limit = max([top_k] + [r.limit for r in requests])
        prefetch = [Prefetch(query=vector, using=DENSE_VECTOR, limit=leg_limit)]
        indices, values = encode_sparse(text)
        if indices:
            prefetch.append(
                Prefetch(query=SparseVector(indices=indices, values=values), using=SPARSE_VECTOR, limit=leg_limit)
            )
        with self._guard(f"hybrid search '{name}'"):
            results = self.client.query_points(
                collection_name=name,
                prefetch=prefetch,
                query=FusionQuery(fusion=Fusion.RRF),
                limit=top_k,
                with_payload=True,
                with_vectors=False,
            )
        return rrf_to_score(
            [(p.score, ChunkRecord.from_payload(p.payload or {})) for p in results.points],
            legs=len(prefetch),
            k=RRF_K,
        )

    def _scroll(self, name: str, conditions, with_payload, with_vectors: bool, limit: Optional[int]):
        offset = None
        fetched = 0
        while True:
            page = 256 if limit is None else min(256, limit - fetched)
            with self._guard(f"scroll '{name}'"):
                points, next_offset = self.client.scroll(
                    collection_name=name,
                    scroll_filter=_filter(conditions),
                    limit=page,
                    offset=offset,
                    with_payload=with_payload,
                    with_vectors=with_vectors,
                )
            for point in points:
                yield point
            fetched += len(points)
            if next_offset is None or not points or (limit is not None and fetched >= limit):
                break
            offset = next_offset

    def query(
        self, name: str, filter: Optional[Dict[str, Any]], fields: Sequence[str], limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for point in self._scroll(name, filter, list(fields), False, limit):
            payload = point.payload or {}
            rows.append({f: payload.get(f) for f in fields})
        return rows

    def scan(self, name: str) -> List[ChunkRecord]:
        records: List[ChunkRecord] = []
        for point in self._scroll(name, None, True, True, None):
            vector = point.vector
            if isinstance(vector, dict):
                vector = vector.get(DENSE_VECTOR)
            records.append(ChunkRecord.from_payload(point.payload or {}, emb=list(vector or [])))
        return records

    def count(self, name: str, filter: Optional[Dict[str, Any]] = None) -> int:
        with self._guard(f"count '{name}'"):
            return self.client.count(collection_name=name, count_filter=_filter(filter), exact=True).count

    def close(self) -> None:
        self.client.close()


def make_qdrant_store(qdrant_cfg: Dict) -> QdrantVectorStore:
    return QdrantVectorStore(
        url=qdrant_cfg.get("url"),
        host=qdrant_cfg.get("host", "localhost"),
        port=int(qdrant_cfg.get("port", 6333)),
        path=qdrant_cfg.get("path"),
        location=qdrant_cfg.get("location"),
    )
