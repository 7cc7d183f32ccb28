from __future__ import annotations

from typing import List

import pytest
from conftest import FakeEmbedder
from qdrant_client.http.exceptions import UnexpectedResponse

from code_context.core import ChunkRecord, CodeChunk
from code_context.errors import VectorStoreUnavailable
from code_context.storage import HybridSearchRequest, InMemoryVectorStore, QdrantVectorStore, VectorStore
from code_context.storage.base import cosine_distance_to_score, cosine_similarity_to_score, rrf_to_score

DOCS = {
    "config.py": "def parse_json_config(path):\n    return json.load(open(path))\n",
    "render.py": "def render_html_page(title):\n    return template.render(title=title)\n",
    "db.py": "def open_database_connection(url):\n    return engine.connect(url)\n",
    "cache.py": "def evict_cache_entries(cache):\n    cache.clear()\n",
}


def _records(embedder: FakeEmbedder) -> List[ChunkRecord]:
    out = []
    for path, text in DOCS.items():
        chunk = CodeChunk.create(path=path, start_line=1, end_line=2, text=text, language="python")
        out.append(ChunkRecord.from_chunk(chunk, embedder.vector(text), file_hash="h-" + path))
    return out


@pytest.fixture(params=["memory", "qdrant"])
def store(request: pytest.FixtureRequest):
    backend: VectorStore
    if request.param == "memory":
        backend = InMemoryVectorStore()
    else:
        backend = QdrantVectorStore(location=":memory:")
    yield backend
    backend.close()


def test_score_normalization_helpers() -> None:
    assert cosine_similarity_to_score(1.0) == 1.0
    assert cosine_similarity_to_score(-1.0) == 0.0
    assert cosine_distance_to_score(0.0) == 1.0
    assert cosine_distance_to_score(2.0) == 0.0
    # two legs, k=2: first in both legs is 1/2 + 1/2
    assert [s for s, _ in rrf_to_score([(1.0, None), (0.5, None), (1 / 3, None)], legs=2, k=2)] == pytest.approx(
        [1.0, 0.5, 1 / 3]
    )


def test_collection_lifecycle(store: VectorStore) -> None:
    assert not store.has_collection("c1")
    store.create_collection("c1", 32)
    store.create_collection("c1", 32)

    assert store.has_collection("c1")
    assert "c1" in store.list_collections()

    store.drop_collection("c1")
    assert not store.has_collection("c1")


def test_search_scores_are_normalized_and_sorted(store: VectorStore) -> None:
    embedder = FakeEmbedder()
    store.create_collection("c", embedder.dimension)
    store.insert("c", _records(embedder))

    hits = store.search("c", embedder.vector(DOCS["db.py"]), top_k=3)

    assert len(hits) == 3
    assert hits[0][1].path == "db.py"
    assert hits[0][0] == pytest.approx(1.0, abs=1e-4)
    scores = [score for score, _ in hits]
    assert scores == sorted(scores, reverse=True)
    assert all(0.0 <= s <= 1.0 for s in scores)


def test_insert_is_idempotent_for_same_ids(store: VectorStore) -> None:
    embedder = FakeEmbedder()
    store.create_collection("c", embedder.dimension)
    store.insert("c", _records(embedder))
    store.insert("c", _records(embedder))

    assert store.count("c") == len(DOCS)


def test_delete_by_id_and_by_path(store: VectorStore) -> None:
    embedder = FakeEmbedder()
    records = _records(embedder)
    store.create_collection("c", embedder.dimension)
    store.insert("c", records)

    store.delete("c", [records[0].id])
    assert store.count("c") == len(DOCS) - 1
    assert store.query("c", {"path": records[0].path}, ["chunk_id"]) == []

    assert store.delete_by_path("c", "render.py") == 1
    assert store.delete_by_path("c", "render.py") == 0
    assert store.count("c") == len(DOCS) - 2
    assert sorted(r.path for r in store.scan("c")) == ["cache.py", "db.py"]


def test_query_returns_requested_fields(store: VectorStore) -> None:
    embedder = FakeEmbedder()
    store.create_collection("c", embedder.dimension)
    store.insert("c", _records(embedder))

    rows = store.query("c", {"path": "cache.py"}, ["path", "start_line", "file_hash"])

    assert rows == [{"path": "cache.py", "start_line": 1, "file_hash": "h-cache.py"}]
    assert len(store.query("c", None, ["chunk_id"], limit=2)) == 2


def test_scan_keeps_vectors_and_metadata(store: VectorStore) -> None:
    embedder = FakeEmbedder()
    store.create_collection("c", embedder.dimension)
    store.insert("c", _records(embedder))

    by_path = {r.path: r for r in store.scan("c")}

    assert by_path["db.py"].emb == pytest.approx(embedder.vector(DOCS["db.py"]), abs=1e-5)
    assert by_path["db.py"].text == DOCS["db.py"]


def test_memory_store_rewrites_on_delete(memory_store: InMemoryVectorStore) -> None:
    embedder = FakeEmbedder()
    memory_store.create_collection("c", embedder.dimension)
    memory_store.insert("c", _records(embedder))

    caps = memory_store.capabilities("c")
    assert not caps.native_filtered_delete
    assert not caps.native_fusion

    memory_store.delete_by_path("c", "db.py")
    assert memory_store.count("c") == len(DOCS) - 1
    assert memory_store.has_collection("c")


def test_hybrid_search_falls_back_to_dense(memory_store: InMemoryVectorStore) -> None:
    embedder = FakeEmbedder()
    memory_store.create_hybrid_collection("c", embedder.dimension)
    memory_store.insert("c", _records(embedder))
    vector = embedder.vector("open database connection")

    dense = memory_store.search("c", vector, 3)
    hybrid = memory_store.hybrid_search(
        "c", [HybridSearchRequest(vector=vector, limit=3), HybridSearchRequest(text="open database", limit=3)], 3
    )

    assert [(s, r.id) for s, r in hybrid] == [(s, r.id) for s, r in dense]
    assert memory_store.capabilities("c").hybrid_fallback_used


def test_qdrant_hybrid_collection_uses_native_fusion(qdrant_store: QdrantVectorStore) -> None:
    embedder = FakeEmbedder()
    qdrant_store.create_hybrid_collection("c", embedder.dimension)
    qdrant_store.insert("c", _records(embedder))

    caps = qdrant_store.capabilities("c")
    assert caps.native_fusion
    assert caps.native_filtered_delete

    hits = qdrant_store.hybrid_search(
        "c",
        [
            HybridSearchRequest(vector=embedder.vector("evict cache entries"), limit=4),
            HybridSearchRequest(text="evict cache entries", limit=4),
        ],
        top_k=4,
    )

    assert hits[0][1].path == "cache.py"
    assert hits[0][0] > 0.7
    assert all(0.0 <= s <= 1.0 for s, _ in hits)
    assert not caps.hybrid_fallback_used


def test_qdrant_dense_collection_falls_back(qdrant_store: QdrantVectorStore) -> None:
    embedder = FakeEmbedder()
    qdrant_store.create_collection("c", embedder.dimension)
    qdrant_store.insert("c", _records(embedder))

    hits = qdrant_store.hybrid_search(
        "c", [HybridSearchRequest(vector=embedder.vector("render html page"), limit=2),
              HybridSearchRequest(text="render html page", limit=2)], top_k=2
    )

    assert hits[0][1].path == "render.py"
    assert qdrant_store.capabilities("c").hybrid_fallback_used


def test_hybrid_search_requires_a_vector(memory_store: InMemoryVectorStore) -> None:
    memory_store.create_collection("c", 32)
    with pytest.raises(ValueError):
        memory_store.hybrid_search("c", [HybridSearchRequest(text="only text")], 3)


def test_fused_scores_of_unrelated_query_stay_low(qdrant_store: QdrantVectorStore) -> None:
    embedder = FakeEmbedder()
    qdrant_store.create_hybrid_collection("c", embedder.dimension)
    qdrant_store.insert("c", _records(embedder))

    def fused(text: str) -> List[float]:
        hits = qdrant_store.hybrid_search(
            "c", [HybridSearchRequest(vector=embedder.vector(text), limit=4), HybridSearchRequest(text=text, limit=4)], 4
        )
        return [s for s, _ in hits]

    related = fused("evict cache entries")
    unrelated = fused("zzz unrelated quux")

    assert related[0] > 0.7
    # no lexical match, so only the dense leg contributes
    assert unrelated
    assert max(unrelated) <= 0.5 + 1e-6


def test_rewrite_keeps_negotiated_capabilities(memory_store: InMemoryVectorStore) -> None:
    embedder = FakeEmbedder()
    memory_store.create_hybrid_collection("c", embedder.dimension)
    memory_store.insert("c", _records(embedder))
    memory_store.hybrid_search(
        "c", [HybridSearchRequest(vector=embedder.vector("cache"), limit=2), HybridSearchRequest(text="cache")], 2
    )
    assert memory_store.capabilities("c").hybrid_fallback_used

    memory_store.delete_by_path("c", "cache.py")

    caps = memory_store.capabilities("c")
    assert caps.hybrid_fallback_used
    assert not caps.native_fusion
    assert memory_store.count("c") == len(DOCS) - 1


def test_qdrant_server_errors_become_unavailable() -> None:
    class FailingClient:
        def collection_exists(self, name: str) -> bool:
            raise UnexpectedResponse(503, "Service Unavailable", b"overloaded", {})

        def get_collection(self, collection_name: str):
            raise UnexpectedResponse(404, "Not Found", b"", {})

    store = QdrantVectorStore(client=FailingClient())

    with pytest.raises(VectorStoreUnavailable):
        store.has_collection("c")
    with pytest.raises(UnexpectedResponse):
        store.capabilities("c")
