"""Utility functions for code-context."""

from .deadline import Deadline
from .file_utils import (
    ensure_dir,
    is_binary_file,
    text_sha256,
)

__all__ = [
    "Deadline",
    "ensure_dir",
    "is_binary_file",
    "text_sha256",
]
