"""Indexing functionality for code-context."""

from .indexer import IndexSynchronizer, build_index, iter_files, make_synchronizer
from .manifest import ManifestStore

__all__ = ["IndexSynchronizer", "ManifestStore", "build_index", "iter_files", "make_synchronizer"]
