"""Incremental synchronization of a codebase with its vector index."""

from __future__ import annotations

import fnmatch
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import DEFAULT_EXCLUDE_PATTERNS, DEFAULT_INCLUDE_PATTERNS, cfg_fingerprint
from ..config.manager import _expand_patterns
from ..core import (
    Chunker,
    ChunkRecord,
    CodeChunk,
    EmbeddingCoordinator,
    FileFingerprint,
    SourceFile,
    SyncResult,
    get_language_for_file,
    make_chunker,
    make_coordinator,
    make_embedder,
)
from ..errors import CorruptManifest, VectorStoreUnavailable
from ..storage import VectorStore, collection_lock, collection_name_for, make_vector_store
from ..utils import Deadline, is_binary_file, text_sha256
from .manifest import ManifestStore

logger = logging.getLogger(__name__)


def _match_any(path: str, globs: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(path, g) for g in globs)


def iter_files(
    repo: Path,
    include_globs: Sequence[str],
    exclude_globs: Sequence[str],
    max_file_size_kb: float = 512,
) -> Iterable[Path]:
    for p in sorted(repo.rglob("*")):
        if not p.is_file():
            continue
        rel = p.relative_to(repo).as_posix()
        if _match_any(rel, exclude_globs):
            continue
        if not _match_any(rel, include_globs):
            continue
        try:
            if (p.stat().st_size / 1024.0) > max_file_size_kb:
                continue
        except OSError:
            continue
        if is_binary_file(p):
            continue
        yield p


def read_source(repo: Path, p: Path) -> SourceFile:
    content = p.read_bytes()
    rel = p.relative_to(repo).as_posix()
    try:
        mtime = p.stat().st_mtime
    except OSError:
        mtime = 0.0
    source = SourceFile(
        path=rel,
        language=get_language_for_file(rel),
        content=content,
        size=len(content),
        content_hash="",
        mtime=mtime,
    )
    # hash the decoded text so the fingerprint matches what gets chunked
    source.content_hash = text_sha256(source.text())
    return source


class IndexSynchronizer:
    """Keeps one collection per codebase root in step with the working tree.

    Each run diffs the files on disk against the manifest, removes chunks of
    deleted files, and re-chunks, re-embeds and replaces the chunks of added
    and modified files. A file's fingerprint is written only after its new
    chunk set is in the store, so an interrupted run is finished by the next.
    """

    def __init__(
        self,
        store: VectorStore,
        coordinator: EmbeddingCoordinator,
        manifest: ManifestStore,
        chunker: Optional[Chunker] = None,
        include_globs: Optional[Sequence[str]] = None,
        exclude_globs: Optional[Sequence[str]] = None,
        max_file_size_kb: float = 512,
        file_workers: int = 4,
        hybrid: bool = True,
        files_per_commit: int = 16,
        cfg_fingerprint: str = "",
    ):
        self.store = store
        self.coordinator = coordinator
        self.manifest = manifest
        self.chunker = chunker or make_chunker({})
        self.include_globs = list(include_globs or _expand_patterns(DEFAULT_INCLUDE_PATTERNS))
        self.exclude_globs = list(exclude_globs or _expand_patterns(DEFAULT_EXCLUDE_PATTERNS))
        self.max_file_size_kb = max_file_size_kb
        self.file_workers = max(1, file_workers)
        self.hybrid = hybrid
        self.files_per_commit = max(1, files_per_commit)
        self.cfg_fingerprint = cfg_fingerprint

    # -- public API ------------------------------------------------------------

    def collection_name(self, root: Path | str) -> str:
        return collection_name_for(root)

    def has_index(self, root: Path | str) -> bool:
        name = self.collection_name(root)
        try:
            return self.manifest.has_index(root) and self.store.has_collection(name)
        except CorruptManifest as e:
            logger.warning(f"{e}")
            return False

    def clear_index(self, root: Path | str) -> None:
        name = self.collection_name(root)
        with collection_lock(name):
            self.store.drop_collection(name)
        try:
            self.manifest.drop(root)
        except CorruptManifest as e:
            logger.warning(f"{e}; resetting manifest")
            self.manifest.reset()
        logger.info(f"Cleared index for {root} (collection '{name}')")

    def sync(self, root: Path | str, deadline: Deadline | float | None = None) -> SyncResult:
        """Bring the index of ``root`` up to date with the files on disk.

        Args:
            root: Codebase root directory
            deadline: ``Deadline`` or seconds; files not reached in time are
                reported in ``files_skipped``

        Returns:
            SyncResult with per-class file counts

        Raises:
            VectorStoreUnavailable: If the vector store cannot be reached
        """
        started = time.monotonic()
        root = Path(root).expanduser().resolve()
        if not root.is_dir():
            raise NotADirectoryError(f"Not a directory: {root}")
        deadline = Deadline.coerce(deadline)
        name = self.collection_name(root)
        result = SyncResult(collection_name=name)

        previous = self._load_manifest(root, name)
        with collection_lock(name):
            previous = self._ensure_collection(root, name, previous)
            self.manifest.begin_run(root, name, self.cfg_fingerprint)

        try:
            self._run(root, name, previous, deadline, result)
        except VectorStoreUnavailable as e:
            logger.error(f"Vector store unavailable while indexing {root}: {e}")
            with collection_lock(name):
                self.manifest.finish_run(root, "error", result.total_files, result.chunks_produced, str(e))
            raise

        result.elapsed = time.monotonic() - started
        status = "partial" if (result.partial or result.files_failed) else "indexed"
        with collection_lock(name):
            self.store.flush(name)
            self.manifest.finish_run(root, status, result.total_files, self.store.count(name))
        logger.info(
            f"Synced {root} in {result.elapsed:.2f}s: {result.added} added, {result.modified} modified, "
            f"{result.deleted} deleted, {result.unchanged} unchanged, {result.chunks_produced} chunks"
            + (f", {result.files_failed} files failed" if result.files_failed else "")
            + (f", {result.files_skipped} files skipped" if result.files_skipped else "")
        )
        return result

    # -- run steps -------------------------------------------------------------

    def _load_manifest(self, root: Path, name: str) -> Dict[str, FileFingerprint]:
        try:
            previous, stored_fp = self.manifest.load(root)
        except CorruptManifest as e:
            logger.warning(f"{e}; rebuilding index for {root}")
            self.manifest.reset()
            with collection_lock(name):
                self.store.drop_collection(name)
            return {}

        if stored_fp is not None and stored_fp != self.cfg_fingerprint:
            logger.info(f"Index settings changed for {root}; rebuilding collection '{name}'")
            self.manifest.clear_files(root)
            with collection_lock(name):
                self.store.drop_collection(name)
            return {}
        return previous

    def _ensure_collection(
        self, root: Path, name: str, previous: Dict[str, FileFingerprint]
    ) -> Dict[str, FileFingerprint]:
        # caller holds the collection lock
        if self.store.has_collection(name):
            return previous
        if previous:
            logger.warning(f"Collection '{name}' is missing; reindexing all {len(previous)} files of {root}")
            self.manifest.clear_files(root)
            previous = {}
        dimension = self.coordinator.embedder.dimension
        if self.hybrid:
            self.store.create_hybrid_collection(name, dimension)
        else:
            self.store.create_collection(name, dimension)
        return previous

    def _read(self, root: Path, p: Path) -> Tuple[str, Optional[SourceFile]]:
        rel = p.relative_to(root).as_posix()
        try:
            return rel, read_source(root, p)
        except OSError as e:
            logger.warning(f"Cannot read {rel}: {e}")
            return rel, None

    def _split(self, source: SourceFile) -> Optional[List[CodeChunk]]:
        try:
            return self.chunker.chunk(source.text(), path=source.path, language=source.language)
        except Exception:
            logger.exception(f"Failed to split {source.path}")
            return None

    def _run(
        self,
        root: Path,
        name: str,
        previous: Dict[str, FileFingerprint],
        deadline: Deadline,
        result: SyncResult,
    ) -> None:
        paths = list(iter_files(root, self.include_globs, self.exclude_globs, self.max_file_size_kb))

        with ThreadPoolExecutor(max_workers=self.file_workers, thread_name_prefix="files") as pool:
            current: Dict[str, SourceFile] = {}
            unreadable: List[str] = []
            for rel, source in pool.map(lambda p: self._read(root, p), paths):
                if source is None:
                    unreadable.append(rel)
                else:
                    current[rel] = source
            result.files_failed += len(unreadable)

            pending: List[Tuple[SourceFile, str]] = []
            for rel in sorted(current):
                source = current[rel]
                old = previous.get(rel)
                if old is None:
                    pending.append((source, "added"))
                elif old.content_hash != source.content_hash:
                    pending.append((source, "modified"))
                else:
                    result.unchanged += 1
            deleted = sorted(set(previous) - set(current) - set(unreadable))
            logger.debug(
                f"{root}: {len(pending)} files to index, {len(deleted)} deleted, {result.unchanged} unchanged"
            )

            for rel in deleted:
                with collection_lock(name):
                    removed = self.store.delete_by_path(name, rel)
                    self.manifest.remove(root, rel)
                result.deleted += 1
                logger.debug(f"Removed {removed} chunks of deleted file {rel}")

            for i in range(0, len(pending), self.files_per_commit):
                if deadline.expired():
                    result.files_skipped += len(pending) - i
                    result.partial = True
                    logger.warning(f"Deadline expired; {len(pending) - i} files left for the next run")
                    break
                self._commit_group(root, name, pending[i : i + self.files_per_commit], pool, deadline, result)

    def _commit_group(
        self,
        root: Path,
        name: str,
        group: List[Tuple[SourceFile, str]],
        pool: ThreadPoolExecutor,
        deadline: Deadline,
        result: SyncResult,
    ) -> None:
        chunk_lists = list(pool.map(self._split, [source for source, _ in group]))
        all_chunks = [c for chunks in chunk_lists if chunks for c in chunks]
        outcome = self.coordinator.embed(all_chunks, deadline)

        offset = 0
        for (source, kind), chunks in zip(group, chunk_lists):
            if chunks is None:
                result.files_failed += 1
                continue
            vectors = outcome.vectors[offset : offset + len(chunks)]
            offset += len(chunks)

            missing = sum(1 for v in vectors if v is None)
            if missing:
                if outcome.cancelled:
                    result.files_skipped += 1
                    result.partial = True
                else:
                    result.files_failed += 1
                    result.chunks_failed += missing
                    logger.warning(f"{missing}/{len(chunks)} chunks of {source.path} failed to embed; not committed")
                continue

            records = [ChunkRecord.from_chunk(c, v, source.content_hash) for c, v in zip(chunks, vectors)]
            with collection_lock(name):
                self.store.delete_by_path(name, source.path)
                self.store.insert(name, records)
                self.manifest.record(
                    root,
                    FileFingerprint(path=source.path, content_hash=source.content_hash, size=source.size),
                    len(records),
                )
            result.chunks_produced += len(records)
            if kind == "added":
                result.added += 1
            else:
                result.modified += 1
            logger.debug(f"Indexed {source.path} ({kind}, {len(records)} chunks)")


def make_synchronizer(
    cfg: Dict,
    store: Optional[VectorStore] = None,
    coordinator: Optional[EmbeddingCoordinator] = None,
    manifest: Optional[ManifestStore] = None,
) -> IndexSynchronizer:
    """Build a synchronizer from config; explicit components take precedence."""
    if coordinator is None:
        coordinator = make_coordinator(cfg, make_embedder(cfg))
    return IndexSynchronizer(
        store=store or make_vector_store(cfg),
        coordinator=coordinator,
        manifest=manifest or ManifestStore(cfg.get("manifest", {}).get("url", "sqlite:///:memory:")),
        chunker=make_chunker(cfg),
        include_globs=cfg.get("include_globs"),
        exclude_globs=cfg.get("exclude_globs"),
        max_file_size_kb=float(cfg.get("max_file_size_kb", 512)),
        file_workers=int(cfg.get("workers", {}).get("files", 4)),
        hybrid=bool(cfg.get("vector_store", {}).get("hybrid", True)),
        files_per_commit=int(cfg.get("files_per_commit", 16)),
        cfg_fingerprint=cfg_fingerprint(cfg),
    )


def build_index(repo: Path, cfg: Dict, deadline: Deadline | float | None = None) -> SyncResult:
    """Synchronize ``repo`` using components built from ``cfg`` (Functional Wrapper)."""
    synchronizer = make_synchronizer(cfg)
    try:
        return synchronizer.sync(repo, deadline)
    finally:
        synchronizer.store.close()
        synchronizer.manifest.close()
