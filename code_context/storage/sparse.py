"""Hashed term-frequency sparse vectors for lexical matching."""

from __future__ import annotations

import hashlib
import math
import re
from collections import Counter
from typing import List, Tuple

SPARSE_DIM = 1 << 20

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")


def tokenize(text: str) -> List[str]:
    """Split identifiers into lowercase terms.

    ``parseHTTPResponse`` yields ``parsehttpresponse``, ``parse``, ``http`` and
    ``response`` so that both the whole identifier and its parts match.
    """
    tokens: List[str] = []
    for word in _WORD_RE.findall(text):
        tokens.append(word.lower())
        parts = [p.lower() for piece in word.split("_") for p in _CAMEL_RE.findall(piece)]
        if len(parts) > 1:
            tokens.extend(parts)
    return [t for t in tokens if len(t) > 1]


def _term_index(term: str) -> int:
    digest = hashlib.blake2b(term.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") % SPARSE_DIM


def encode_sparse(text: str) -> Tuple[List[int], List[float]]:
    """Return sorted ``(indices, values)`` with log-scaled term frequencies."""
    counts = Counter(_term_index(t) for t in tokenize(text))
    indices = sorted(counts)
    values = [1.0 + math.log(counts[i]) for i in indices]
    return indices, values
