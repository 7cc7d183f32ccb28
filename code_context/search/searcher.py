"""Semantic search functionality."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from ..core import Embedder, SearchQuery, SearchResult, make_embedder
from ..errors import DeadlineExceeded, IndexNotFoundError
from ..storage import HybridSearchRequest, VectorStore, collection_name_for, make_vector_store
from ..storage.base import Hit
from ..utils import Deadline

logger = logging.getLogger(__name__)


class SemanticSearchService:
    """Answers natural-language queries against an indexed codebase root."""

    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        default_top_k: int = 8,
        default_score_threshold: float = 0.0,
    ):
        self.store = store
        self.embedder = embedder
        self.default_top_k = default_top_k
        self.default_score_threshold = default_score_threshold

    def search(
        self,
        root: Path | str,
        query: str,
        top_k: Optional[int] = None,
        score_threshold: Optional[float] = None,
        deadline: Deadline | float | None = None,
    ) -> List[SearchResult]:
        """Dense similarity search.

        Raises:
            IndexNotFoundError: If ``root`` has never been indexed
            DeadlineExceeded: If the deadline expires before results are ready
        """
        return self.run(self._query(query, top_k, score_threshold, hybrid=False), root, deadline)

    def hybrid_search(
        self,
        root: Path | str,
        query: str,
        top_k: Optional[int] = None,
        score_threshold: Optional[float] = None,
        deadline: Deadline | float | None = None,
    ) -> List[SearchResult]:
        """Dense + lexical search; answered by dense search where the backend has no fusion."""
        return self.run(self._query(query, top_k, score_threshold, hybrid=True), root, deadline)

    def _query(self, text: str, top_k: Optional[int], score_threshold: Optional[float], hybrid: bool) -> SearchQuery:
        return SearchQuery(
            text=text,
            top_k=self.default_top_k if top_k is None else top_k,
            score_threshold=self.default_score_threshold if score_threshold is None else score_threshold,
            hybrid=hybrid,
        )

    def run(self, query: SearchQuery, root: Path | str, deadline: Deadline | float | None = None) -> List[SearchResult]:
        deadline = Deadline.coerce(deadline)
        if query.top_k <= 0 or not query.text.strip():
            return []

        name = collection_name_for(root)
        if not self.store.has_collection(name):
            raise IndexNotFoundError(f"No index for {root} (collection '{name}'). Please run indexing first.")

        vector = query.vector if query.vector is not None else self.embedder.embed_one(query.text)
        self._check(deadline, "embedding the query")

        hits: List[Hit]
        if query.hybrid:
            requests = [
                HybridSearchRequest(vector=vector, limit=query.top_k),
                HybridSearchRequest(text=query.text, limit=query.top_k),
            ]
            hits = self.store.hybrid_search(name, requests, query.top_k)
        else:
            hits = self.store.search(name, vector, query.top_k)
        self._check(deadline, "searching")

        results = [SearchResult.from_record(score, record) for score, record in hits if score >= query.score_threshold]
        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug(f"Query {query.text!r} on '{name}': {len(results)} of {len(hits)} hits above threshold")
        return results[: query.top_k]

    @staticmethod
    def _check(deadline: Deadline, stage: str) -> None:
        if deadline.expired():
            raise DeadlineExceeded(f"Search deadline expired while {stage}")


def make_search_service(
    cfg: Dict,
    store: Optional[VectorStore] = None,
    embedder: Optional[Embedder] = None,
) -> SemanticSearchService:
    search_cfg = cfg.get("search", {})
    return SemanticSearchService(
        store=store or make_vector_store(cfg),
        embedder=embedder or make_embedder(cfg),
        default_top_k=int(search_cfg.get("top_k", 8)),
        default_score_threshold=float(search_cfg.get("score_threshold", 0.0)),
    )


def search(repo: Path, cfg: Dict, query: str, top_k: int | None = None, hybrid: bool = False) -> List[SearchResult]:
    service = make_search_service(cfg)
    try:
        if hybrid:
            return service.hybrid_search(repo, query, top_k)
        return service.search(repo, query, top_k)
    finally:
        service.store.close()


def format_hit(result: SearchResult, max_chars: int = 1200) -> str:
    snippet = result.text
    if len(snippet) > max_chars:
        snippet = snippet[:max_chars] + "\n…(truncated)…\n"
    header = f"{result.score:0.4f}  {result.path}:{result.start_line}-{result.end_line}"
    return header + "\n" + snippet.rstrip() + "\n"
