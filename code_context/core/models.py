"""Data models for code-context."""

from __future__ import annotations

import dataclasses
import hashlib
from typing import Any, Dict, List, Optional


def make_chunk_id(path: str, start_line: int, end_line: int, content_hash: str) -> str:
    return hashlib.sha256(
        (path + ":" + str(start_line) + ":" + str(end_line) + ":" + content_hash).encode("utf-8")
    ).hexdigest()


@dataclasses.dataclass
class SourceFile:
    """A file read from the working tree during one sync run."""

    path: str
    language: Optional[str]
    content: bytes
    size: int
    content_hash: str
    mtime: float = 0.0

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


@dataclasses.dataclass(frozen=True)
class FileFingerprint:
    path: str
    content_hash: str
    size: int


@dataclasses.dataclass(frozen=True)
class CodeChunk:
    """A bounded, line-addressable span of one file."""

    id: str
    path: str
    start_line: int
    end_line: int
    language: Optional[str]
    text: str
    content_hash: str
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict, compare=False)

    @classmethod
    def create(
        cls,
        path: str,
        start_line: int,
        end_line: int,
        text: str,
        language: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "CodeChunk":
        content_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return cls(
            id=make_chunk_id(path, start_line, end_line, content_hash),
            path=path,
            start_line=start_line,
            end_line=end_line,
            language=language,
            text=text,
            content_hash=content_hash,
            metadata=dict(metadata or {}),
        )


@dataclasses.dataclass
class ChunkRecord:
    """Represents a stored code chunk with metadata and embedding."""

    id: str
    path: str
    start_line: int
    end_line: int
    language: Optional[str]
    file_hash: str
    chunk_hash: str
    text: str
    emb: List[float]
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: CodeChunk, emb: List[float], file_hash: str) -> "ChunkRecord":
        return cls(
            id=chunk.id,
            path=chunk.path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            language=chunk.language,
            file_hash=file_hash,
            chunk_hash=chunk.content_hash,
            text=chunk.text,
            emb=list(emb),
            metadata=dict(chunk.metadata),
        )

    def payload(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.id,
            "path": self.path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "language": self.language or "",
            "file_hash": self.file_hash,
            "chunk_hash": self.chunk_hash,
            "text": self.text,
            "metadata": self.metadata,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], emb: Optional[List[float]] = None) -> "ChunkRecord":
        return cls(
            id=payload.get("chunk_id", ""),
            path=payload.get("path", ""),
            start_line=int(payload.get("start_line", 0)),
            end_line=int(payload.get("end_line", 0)),
            language=payload.get("language") or None,
            file_hash=payload.get("file_hash", ""),
            chunk_hash=payload.get("chunk_hash", ""),
            text=payload.get("text", ""),
            emb=list(emb or []),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclasses.dataclass
class SearchQuery:
    text: str
    top_k: int = 10
    score_threshold: float = 0.0
    vector: Optional[List[float]] = None
    hybrid: bool = False


@dataclasses.dataclass
class SearchResult:
    chunk_id: str
    path: str
    start_line: int
    end_line: int
    language: Optional[str]
    text: str
    score: float

    @classmethod
    def from_record(cls, score: float, record: ChunkRecord) -> "SearchResult":
        return cls(
            chunk_id=record.id,
            path=record.path,
            start_line=record.start_line,
            end_line=record.end_line,
            language=record.language,
            text=record.text,
            score=score,
        )


@dataclasses.dataclass
class SyncResult:
    """Outcome of one synchronization pass.

    Partial failure is reported here rather than raised: ``files_failed`` and
    ``chunks_failed`` count work that must be retried, ``files_skipped`` counts
    files left untouched because the deadline expired.
    """

    collection_name: str
    added: int = 0
    modified: int = 0
    deleted: int = 0
    unchanged: int = 0
    chunks_produced: int = 0
    chunks_failed: int = 0
    files_failed: int = 0
    files_skipped: int = 0
    partial: bool = False
    elapsed: float = 0.0

    @property
    def total_files(self) -> int:
        return self.added + self.modified + self.unchanged

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)
