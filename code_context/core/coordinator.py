"""Batched, concurrent embedding of code chunks."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import tiktoken
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ProviderError
from ..utils.deadline import Deadline
from .embeddings import Embedder
from .models import CodeChunk

logger = logging.getLogger(__name__)

_token_counter: Optional[Callable[[str], int]] = None


def _get_token_counter() -> Callable[[str], int]:
    """Return a token counting function.

    - Use the tiktoken cl100k_base encoding when it can be loaded.
    - Fallback to a conservative heuristic otherwise (the encoding file is
      fetched on first use and may be unavailable offline).
    """
    try:
        encoding = tiktoken.get_encoding("cl100k_base")
    except Exception as e:
        logger.warning(f"tiktoken encoding unavailable, estimating tokens from length: {e}")

        def estimate(text: str) -> int:
            return max(1, int(len(text) / 3.5))

        return estimate

    def count(text: str) -> int:
        return len(encoding.encode(text, disallowed_special=()))

    return count


def count_tokens(text: str) -> int:
    global _token_counter
    if _token_counter is None:
        _token_counter = _get_token_counter()
    return _token_counter(text)


@dataclass
class EmbeddingOutcome:
    """Vectors aligned 1:1 with the input chunks; ``None`` where embedding failed."""

    vectors: List[Optional[List[float]]]
    failed_ids: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed_ids


class EmbeddingCoordinator:
    """Embeds chunks in bounded batches on a small worker pool.

    A batch that keeps failing is reported through ``failed_ids``; it never
    aborts the other batches.
    """

    def __init__(
        self,
        embedder: Embedder,
        batch_size: int = 32,
        max_batch_tokens: Optional[int] = 8000,
        max_workers: int = 2,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        token_counter: Optional[Callable[[str], int]] = None,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.embedder = embedder
        self.batch_size = batch_size
        self.max_batch_tokens = max_batch_tokens
        self.max_workers = max(1, max_workers)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._count = token_counter or count_tokens

    def plan_batches(self, texts: Sequence[str]) -> List[List[int]]:
        """Group text indexes into batches under the size and token budgets."""
        batches: List[List[int]] = []
        cur: List[int] = []
        cur_tokens = 0
        for i, text in enumerate(texts):
            tokens = self._count(text) if self.max_batch_tokens else 0
            over_budget = bool(self.max_batch_tokens) and cur_tokens + tokens > self.max_batch_tokens
            if cur and (len(cur) >= self.batch_size or over_budget):
                batches.append(cur)
                cur, cur_tokens = [], 0
            cur.append(i)
            cur_tokens += tokens
        if cur:
            batches.append(cur)
        return batches

    def embed(self, chunks: Sequence[CodeChunk], deadline: Deadline | float | None = None) -> EmbeddingOutcome:
        deadline = Deadline.coerce(deadline)
        vectors: List[Optional[List[float]]] = [None] * len(chunks)
        if not chunks:
            return EmbeddingOutcome(vectors=vectors)

        batches = self.plan_batches([c.text for c in chunks])
        logger.debug(f"Embedding {len(chunks)} chunks in {len(batches)} batches")

        failed: List[str] = []
        cancelled = False
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="embed")
        try:
            futures = {
                executor.submit(self._run_batch, [chunks[i].text for i in batch], deadline): batch
                for batch in batches
            }
            _, pending = wait(futures, timeout=deadline.remaining())
            if pending:
                cancelled = True
                for fut in pending:
                    fut.cancel()
                logger.warning(f"Deadline expired with {len(pending)} embedding batches outstanding")

            for n, (fut, batch) in enumerate(futures.items(), start=1):
                ids = [chunks[i].id for i in batch]
                if fut in pending:
                    failed.extend(ids)
                    continue
                try:
                    result = fut.result()
                except ProviderError as e:
                    logger.warning(f"Embedding batch {n}/{len(batches)} failed after retries: {e}")
                    failed.extend(ids)
                    continue
                except Exception:
                    logger.exception(f"Embedding batch {n}/{len(batches)} failed")
                    failed.extend(ids)
                    continue
                if len(result) != len(batch):
                    logger.warning(
                        f"Embedding batch {n}/{len(batches)} returned {len(result)} vectors for {len(batch)} chunks"
                    )
                    failed.extend(ids)
                    continue
                for i, vec in zip(batch, result):
                    vectors[i] = list(vec)
        finally:
            executor.shutdown(wait=not cancelled, cancel_futures=True)

        return EmbeddingOutcome(vectors=vectors, failed_ids=failed, cancelled=cancelled)

    def _run_batch(self, texts: List[str], deadline: Deadline) -> List[List[float]]:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts) | (lambda _state: deadline.expired()),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(ProviderError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(self.embedder.embed, texts)

    @staticmethod
    def _log_retry(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.debug(f"Retrying embedding batch (attempt {retry_state.attempt_number}): {exc}")


def make_coordinator(cfg: Dict, embedder: Embedder) -> EmbeddingCoordinator:
    emb_cfg = cfg.get("embedding", {})
    return EmbeddingCoordinator(
        embedder,
        batch_size=int(emb_cfg.get("batch_size", 32)),
        max_batch_tokens=emb_cfg.get("max_batch_tokens", 8000),
        max_workers=int(cfg.get("workers", {}).get("embedding", 2)),
        max_attempts=int(emb_cfg.get("max_attempts", 3)),
        backoff_base=float(emb_cfg.get("backoff_base", 1.0)),
        backoff_max=float(emb_cfg.get("backoff_max", 30.0)),
    )
