"""Factory for creating vector store instances."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Dict

from .base import VectorStore
from .memory import InMemoryVectorStore
from .qdrant import make_qdrant_store

COLLECTION_PREFIX = "code_chunks"


def collection_name_for(root: Path | str) -> str:
    """Stable collection name for a codebase root.

    The readable part comes from the directory name; the hash suffix keeps
    two roots with the same name apart.
    """
    resolved = Path(root).expanduser().resolve()
    readable = re.sub(r"[^a-zA-Z0-9_-]", "_", resolved.name)[:40] or "root"
    digest = hashlib.md5(resolved.as_posix().encode("utf-8")).hexdigest()[:8]
    return f"{COLLECTION_PREFIX}_{readable}_{digest}"


def make_vector_store(cfg: Dict) -> VectorStore:
    vector_store_cfg = cfg.get("vector_store", {})
    backend = (vector_store_cfg.get("backend") or "qdrant").lower()

    if backend == "qdrant":
        return make_qdrant_store(vector_store_cfg.get("qdrant", {}))
    if backend == "lancedb":
        from .lance import LanceVectorStore

        return LanceVectorStore(path=vector_store_cfg.get("lancedb", {}).get("path"))
    if backend == "memory":
        return InMemoryVectorStore()
    raise ValueError(f"Unknown vector store backend: {backend}")
