"""Embedding models for semantic search."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests
from pydantic import BaseModel

from ..errors import ProviderRateLimited, ProviderUnavailable

logger = logging.getLogger(__name__)


class Embedder:
    """Abstract base class for embedding models."""

    name: str = "embedder"

    @property
    def dimension(self) -> int:
        """Output vector dimension, fixed per model."""
        raise NotImplementedError

    def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed multiple texts into vectors."""
        raise NotImplementedError

    def embed_one(self, text: str) -> List[float]:
        """Embed a single text into a vector."""
        return self.embed([text])[0]


class SentenceTransformersEmbedder(Embedder):
    """Embedder using SentenceTransformers library."""

    def __init__(self, model_name: str) -> None:
        from sentence_transformers import SentenceTransformer  # type: ignore
        self.name = model_name
        self.model = SentenceTransformer(model_name)

    @property
    def dimension(self) -> int:
        return int(self.model.get_sentence_embedding_dimension())

    def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed texts using SentenceTransformers model."""
        arr = self.model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        return [row.tolist() for row in arr]


class EmbeddingItem(BaseModel):
    index: int
    embedding: List[float]


class EmbeddingAPIResponse(BaseModel):
    data: List[EmbeddingItem]
    model: Optional[str] = None
    usage: Optional[Dict[str, int]] = None


@dataclass
class EmbeddingAPIConfig:
    api_base: str = "https://api.openai.com/v1"
    model: str = "text-embedding-3-small"
    api_key: Optional[str] = None
    dimension: Optional[int] = None
    timeout: int = 30


class HttpEmbedder(Embedder):
    """Embedder for OpenAI-compatible ``/embeddings`` endpoints."""

    def __init__(self, config: EmbeddingAPIConfig | None = None, session: Optional[requests.Session] = None):
        self.config = config or EmbeddingAPIConfig()
        self.name = self.config.model
        self.session = session or requests.Session()
        self.headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            self.headers["Authorization"] = f"Bearer {self.config.api_key}"
        self._dimension = self.config.dimension

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed_one("dimension probe"))
        return self._dimension

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        url = f"{self.config.api_base.rstrip('/')}/embeddings"
        payload = {"model": self.config.model, "input": list(texts)}
        try:
            response = self.session.post(url, headers=self.headers, json=payload, timeout=self.config.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ProviderUnavailable(f"Embedding endpoint {url} unreachable: {e}") from e

        if response.status_code == 429:
            raise ProviderRateLimited(f"Embedding endpoint {url} rate limited the request")
        if response.status_code >= 500:
            raise ProviderUnavailable(f"Embedding endpoint {url} returned HTTP {response.status_code}")
        response.raise_for_status()

        parsed = EmbeddingAPIResponse.model_validate(response.json())
        items = sorted(parsed.data, key=lambda item: item.index)
        if len(items) != len(texts):
            raise RuntimeError(f"Expected {len(texts)} embeddings from {url}, got {len(items)}")
        return [item.embedding for item in items]


def make_embedder(cfg: Dict) -> Embedder:
    """Create embedder from config.

    Args:
        cfg: Configuration dictionary

    Returns:
        Embedder instance

    Raises:
        ValueError: If backend is invalid
    """
    emb_cfg = cfg.get("embedding", {})
    backend = str(emb_cfg.get("backend", "sentence_transformers")).strip().lower()

    if backend == "sentence_transformers":
        model_name = emb_cfg.get("sentence_transformers_model", "all-MiniLM-L6-v2")
        logger.info(f"Loading sentence-transformers model {model_name}")
        return SentenceTransformersEmbedder(model_name)

    if backend == "http":
        http_cfg = emb_cfg.get("http", {})
        config = EmbeddingAPIConfig(
            api_base=http_cfg.get("api_base", EmbeddingAPIConfig.api_base),
            model=http_cfg.get("model", EmbeddingAPIConfig.model),
            api_key=http_cfg.get("api_key"),
            dimension=http_cfg.get("dimension"),
            timeout=int(http_cfg.get("timeout", 30)),
        )
        return HttpEmbedder(config)

    raise ValueError(f"Invalid embedding.backend: {backend!r}")
