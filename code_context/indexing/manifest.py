"""Persistent per-root manifest of indexed file fingerprints."""

from __future__ import annotations

import datetime as _dt
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DatabaseError, OperationalError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.models import FileFingerprint
from ..errors import CorruptManifest
from ..utils.file_utils import ensure_dir

logger = logging.getLogger(__name__)

Base = declarative_base()


def _now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class IndexedRoot(Base):
    """A codebase root and the collection that holds its chunks."""

    __tablename__ = "indexed_roots"

    id = Column(Integer, primary_key=True, index=True)
    path = Column(String(1024), unique=True, nullable=False, index=True)
    collection_name = Column(String(255), nullable=False)
    cfg_fingerprint = Column(String(64))
    status = Column(String(50), nullable=False, default="pending")  # pending, indexing, indexed, partial, error
    total_files = Column(Integer, default=0)
    total_chunks = Column(Integer, default=0)
    last_indexed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)
    error_message = Column(Text)

    files = relationship("FileFingerprintRow", back_populates="root", cascade="all, delete-orphan")


class FileFingerprintRow(Base):
    """Fingerprint of one committed file."""

    __tablename__ = "file_fingerprints"
    __table_args__ = (UniqueConstraint("root_id", "file_path", name="uq_root_file"),)

    id = Column(Integer, primary_key=True, index=True)
    root_id = Column(Integer, ForeignKey("indexed_roots.id", ondelete="CASCADE"), nullable=False, index=True)
    file_path = Column(String(1024), nullable=False)
    file_hash = Column(String(64), nullable=False, index=True)
    size = Column(Integer, nullable=False, default=0)
    chunks_count = Column(Integer, nullable=False, default=0)
    indexed_at = Column(DateTime(timezone=True), default=_now)

    root = relationship("IndexedRoot", back_populates="files")


def _root_key(root: Path | str) -> str:
    return Path(root).expanduser().resolve().as_posix()


class ManifestStore:
    """SQLAlchemy-backed manifest.

    One ``indexed_roots`` row per codebase root, one ``file_fingerprints`` row
    per committed file. A fingerprint is written only after its file's chunks
    are in the vector store.
    """

    def __init__(self, url: str):
        self.url = url
        self._sqlite_file = self._sqlite_path(url)
        self._lock = threading.Lock()
        self._schema_ready = False
        self._connect()

    @staticmethod
    def _sqlite_path(url: str) -> Optional[Path]:
        parsed = make_url(url)
        if parsed.get_backend_name() != "sqlite" or parsed.database in (None, "", ":memory:"):
            return None
        return Path(parsed.database).expanduser()

    def _connect(self) -> None:
        if self._sqlite_file is not None:
            ensure_dir(self._sqlite_file.parent)
            self.engine = create_engine(
                f"sqlite:///{self._sqlite_file.as_posix()}",
                connect_args={"check_same_thread": False},
            )
        elif make_url(self.url).get_backend_name() == "sqlite":
            self.engine = create_engine(
                self.url, connect_args={"check_same_thread": False}, poolclass=StaticPool
            )
        else:
            self.engine = create_engine(self.url, pool_pre_ping=True)
        self._Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._schema_ready = False

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._lock:
            if self._schema_ready:
                return
            try:
                Base.metadata.create_all(self.engine)
            except DatabaseError as e:
                raise CorruptManifest(f"Manifest at {self.url} is unreadable: {e}") from e
            self._schema_ready = True

    @contextmanager
    def _session(self) -> Iterator[Session]:
        self._ensure_schema()
        session = self._Session()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            if "locked" in str(e).lower():
                raise
            raise CorruptManifest(f"Manifest at {self.url} is unreadable: {e}") from e
        except DatabaseError as e:
            session.rollback()
            raise CorruptManifest(f"Manifest at {self.url} is unreadable: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _get_root(session: Session, root: Path | str) -> Optional[IndexedRoot]:
        return session.query(IndexedRoot).filter(IndexedRoot.path == _root_key(root)).one_or_none()

    # -- reads -----------------------------------------------------------------

    def load(self, root: Path | str) -> Tuple[Dict[str, FileFingerprint], Optional[str]]:
        """Return ``({path: fingerprint}, cfg_fingerprint)`` for ``root``."""
        with self._session() as session:
            row = self._get_root(session, root)
            if row is None:
                return {}, None
            fingerprints = {
                f.file_path: FileFingerprint(path=f.file_path, content_hash=f.file_hash, size=f.size)
                for f in row.files
            }
            return fingerprints, row.cfg_fingerprint

    def has_index(self, root: Path | str) -> bool:
        """True when at least one file of ``root`` is committed."""
        with self._session() as session:
            row = self._get_root(session, root)
            if row is None:
                return False
            return session.query(FileFingerprintRow.id).filter(FileFingerprintRow.root_id == row.id).first() is not None

    def status(self, root: Path | str) -> Optional[Dict]:
        with self._session() as session:
            row = self._get_root(session, root)
            if row is None:
                return None
            return {
                "path": row.path,
                "collection_name": row.collection_name,
                "status": row.status,
                "total_files": row.total_files,
                "total_chunks": row.total_chunks,
                "last_indexed_at": row.last_indexed_at,
                "error_message": row.error_message,
            }

    # -- writes ----------------------------------------------------------------

    def begin_run(self, root: Path | str, collection_name: str, cfg_fp: str) -> None:
        with self._session() as session:
            row = self._get_root(session, root)
            if row is None:
                row = IndexedRoot(path=_root_key(root), collection_name=collection_name)
                session.add(row)
            row.collection_name = collection_name
            row.cfg_fingerprint = cfg_fp
            row.status = "indexing"
            row.error_message = None

    def record(self, root: Path | str, fingerprint: FileFingerprint, chunks_count: int) -> None:
        with self._session() as session:
            row = self._get_root(session, root)
            if row is None:
                raise KeyError(f"No manifest entry for root {root}")
            entry = (
                session.query(FileFingerprintRow)
                .filter(FileFingerprintRow.root_id == row.id, FileFingerprintRow.file_path == fingerprint.path)
                .one_or_none()
            )
            if entry is None:
                entry = FileFingerprintRow(root_id=row.id, file_path=fingerprint.path)
                session.add(entry)
            entry.file_hash = fingerprint.content_hash
            entry.size = fingerprint.size
            entry.chunks_count = chunks_count
            entry.indexed_at = _now()

    def remove(self, root: Path | str, path: str) -> None:
        with self._session() as session:
            row = self._get_root(session, root)
            if row is None:
                return
            session.query(FileFingerprintRow).filter(
                FileFingerprintRow.root_id == row.id, FileFingerprintRow.file_path == path
            ).delete(synchronize_session=False)

    def clear_files(self, root: Path | str) -> None:
        with self._session() as session:
            row = self._get_root(session, root)
            if row is not None:
                session.query(FileFingerprintRow).filter(FileFingerprintRow.root_id == row.id).delete(
                    synchronize_session=False
                )

    def finish_run(
        self,
        root: Path | str,
        status: str,
        total_files: int,
        total_chunks: int,
        error_message: Optional[str] = None,
    ) -> None:
        with self._session() as session:
            row = self._get_root(session, root)
            if row is None:
                return
            row.status = status
            row.total_files = total_files
            row.total_chunks = total_chunks
            row.error_message = error_message
            if status != "error":
                row.last_indexed_at = _now()

    def drop(self, root: Path | str) -> None:
        with self._session() as session:
            row = self._get_root(session, root)
            if row is not None:
                session.delete(row)

    def reset(self) -> None:
        """Discard an unreadable manifest and start over with an empty one."""
        self.engine.dispose()
        if self._sqlite_file is not None and self._sqlite_file.exists():
            moved = self._sqlite_file.with_name(self._sqlite_file.name + ".corrupt")
            self._sqlite_file.replace(moved)
            logger.warning(f"Moved unreadable manifest to {moved}")
            self._connect()
            return
        self._connect()
        with self._lock:
            Base.metadata.drop_all(self.engine)
            Base.metadata.create_all(self.engine)
            self._schema_ready = True

    def close(self) -> None:
        self.engine.dispose()
