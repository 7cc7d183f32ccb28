"""File utility functions."""

from __future__ import annotations

import hashlib
from pathlib import Path


def ensure_dir(p: Path | str) -> Path:
    """Create directory if it doesn't exist."""
    p = Path(p).expanduser()
    p.mkdir(parents=True, exist_ok=True)
    return p


def is_binary_file(path: Path) -> bool:
    """Check if file is binary by looking for null bytes."""
    try:
        with path.open("rb") as f:
            sample = f.read(2048)
        return b"\x00" in sample
    except OSError:
        return True


def text_sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
