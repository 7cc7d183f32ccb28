from __future__ import annotations

import hashlib
import math
import re
import threading
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from code_context.core import EmbeddingCoordinator, Embedder
from code_context.errors import ProviderUnavailable
from code_context.indexing import IndexSynchronizer, ManifestStore
from code_context.search import SemanticSearchService
from code_context.storage import InMemoryVectorStore, QdrantVectorStore


class FakeEmbedder(Embedder):
    """Deterministic hashed bag-of-words vectors."""

    name = "fake"

    def __init__(self, dim: int = 32) -> None:
        self._dim = dim
        self._lock = threading.Lock()
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dim

    def vector(self, text: str) -> List[float]:
        v = [0.01] * self._dim
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            v[int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self._dim] += 1.0
        norm = math.sqrt(sum(x * x for x in v))
        return [x / norm for x in v]

    def embed(self, texts: List[str]) -> List[List[float]]:
        with self._lock:
            self.calls += 1
        return [self.vector(t) for t in texts]


class FlakyEmbedder(FakeEmbedder):
    """Fails with ProviderUnavailable while ``should_fail(texts)`` is true."""

    def __init__(self, should_fail: Callable[[List[str]], bool], dim: int = 32) -> None:
        super().__init__(dim)
        self.should_fail = should_fail

    def embed(self, texts: List[str]) -> List[List[float]]:
        with self._lock:
            self.calls += 1
        if self.should_fail(texts):
            raise ProviderUnavailable("embedding service down")
        return [self.vector(t) for t in texts]


def write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def make_coordinator(embedder: Embedder, **kwargs) -> EmbeddingCoordinator:
    kwargs.setdefault("batch_size", 8)
    kwargs.setdefault("max_batch_tokens", None)
    kwargs.setdefault("max_attempts", 2)
    kwargs.setdefault("backoff_base", 0)
    kwargs.setdefault("backoff_max", 0)
    return EmbeddingCoordinator(embedder, **kwargs)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def memory_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def qdrant_store():
    store = QdrantVectorStore(location=":memory:")
    yield store
    store.close()


@pytest.fixture
def manifest(tmp_path: Path):
    store = ManifestStore(f"sqlite:///{(tmp_path / 'state' / 'manifest.db').as_posix()}")
    yield store
    store.close()


@pytest.fixture
def synchronizer_factory(manifest: ManifestStore):
    def build(
        store,
        embedder: Embedder,
        files_per_commit: int = 4,
        hybrid: bool = True,
        cfg_fingerprint: str = "test",
        coordinator: Optional[EmbeddingCoordinator] = None,
    ) -> IndexSynchronizer:
        return IndexSynchronizer(
            store=store,
            coordinator=coordinator or make_coordinator(embedder),
            manifest=manifest,
            include_globs=["*.py", "**/*.py", "*.md", "**/*.md", "*.txt", "**/*.txt"],
            exclude_globs=[".git/**", "**/.git/**"],
            file_workers=2,
            hybrid=hybrid,
            files_per_commit=files_per_commit,
            cfg_fingerprint=cfg_fingerprint,
        )

    return build


@pytest.fixture
def search_factory():
    def build(store, embedder: Embedder) -> SemanticSearchService:
        return SemanticSearchService(store=store, embedder=embedder, default_top_k=5)

    return build
