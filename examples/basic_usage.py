"""Index a codebase and run a few searches against it.

Usage:
    python examples/basic_usage.py /path/to/repo "query text"

The vector store and embedding backend come from the usual configuration
(``VECTOR_STORE_BACKEND``, ``QDRANT_URL``, ``EMBEDDING_BACKEND`` ...).
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from code_context import load_config, make_search_service, make_synchronizer
from code_context.core import make_coordinator, make_embedder
from code_context.search import format_hit
from code_context.storage import make_vector_store


def main(argv: list[str]) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    repo = Path(argv[1] if len(argv) > 1 else ".").resolve()
    query = argv[2] if len(argv) > 2 else "vector database operations"

    cfg = load_config(repo)
    store = make_vector_store(cfg)
    embedder = make_embedder(cfg)
    synchronizer = make_synchronizer(cfg, store=store, coordinator=make_coordinator(cfg, embedder))
    service = make_search_service(cfg, store=store, embedder=embedder)

    try:
        if synchronizer.has_index(repo):
            print(f"Existing index found for {repo}, syncing changes")
        result = synchronizer.sync(repo)
        print(
            f"added={result.added} modified={result.modified} deleted={result.deleted} "
            f"unchanged={result.unchanged} chunks={result.chunks_produced}"
        )

        for hit in service.search(repo, query, top_k=3, score_threshold=0.3):
            print(format_hit(hit))
    finally:
        store.close()
        synchronizer.manifest.close()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
