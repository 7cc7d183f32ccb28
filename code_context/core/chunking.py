"""Chunking of code files: syntax-aware splitting with a sliding-window fallback."""

from __future__ import annotations

import bisect
import dataclasses
import itertools
import logging
import os
from typing import Dict, Iterator, List, Optional, Tuple

import tree_sitter_language_pack

from ..errors import UnsupportedLanguage
from .models import CodeChunk

logger = logging.getLogger(__name__)

# 1.x releases raise their own error hierarchy when a grammar is missing or
# cannot be downloaded; 0.x releases raise LookupError
PARSER_ERRORS = tuple(
    e
    for e in (LookupError, ValueError, getattr(tree_sitter_language_pack, "Error", None))
    if isinstance(e, type) and issubclass(e, Exception)
)

# (start, end) character offsets, end exclusive
Span = Tuple[int, int]

# Supported languages for AST-based chunking
EXT_TO_LANG = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".php": "php",
    ".rb": "ruby",
    ".cs": "csharp",
    ".swift": "swift",
    ".scala": "scala",
    ".lua": "lua",
}

_MAX_DEPTH = 64


def get_language_for_file(filename: Optional[str]) -> Optional[str]:
    """Get language name from file extension."""
    if not filename:
        return None
    _, ext = os.path.splitext(filename)
    return EXT_TO_LANG.get(ext.lower())


def _check_sizes(max_chars: int, overlap_chars: int) -> None:
    if max_chars <= 0:
        raise ValueError(f"max_chars must be positive, got {max_chars}")
    if overlap_chars < 0 or overlap_chars >= max_chars:
        raise ValueError(
            f"overlap_chars must be in [0, max_chars), got {overlap_chars} (max_chars={max_chars})"
        )


def split_text(
    text: str,
    max_chars: int,
    overlap_chars: int,
    preserve_lines: bool = True,
    start: int = 0,
    end: Optional[int] = None,
) -> List[Span]:
    """Sliding-window split of ``text[start:end]``.

    Windows are ``[pos, pos + max_chars)``; the next window starts
    ``overlap_chars`` before the previous one ended. With ``preserve_lines``
    a window ends after the last newline it contains and the next one starts
    on a line boundary; a single line longer than ``max_chars`` is hard-cut.
    """
    _check_sizes(max_chars, overlap_chars)
    end = len(text) if end is None else end
    spans: List[Span] = []
    pos = start
    while pos < end:
        stop = min(pos + max_chars, end)
        if preserve_lines and stop < end:
            nl = text.rfind("\n", pos, stop)
            if nl != -1:
                stop = nl + 1
        spans.append((pos, stop))
        if stop >= end:
            break

        nxt = stop - overlap_chars
        if preserve_lines and nxt > pos and text[nxt - 1] != "\n":
            nl = text.find("\n", nxt, stop)
            nxt = nl + 1 if nl != -1 else stop
        if nxt <= pos:
            nxt = stop
        pos = nxt
    return spans


class _LineLayout:
    """Line start offsets of a text, for row <-> offset conversion."""

    def __init__(self, text: str):
        self.text = text
        self.starts = [0]
        i = text.find("\n")
        while i != -1 and i + 1 < len(text):
            self.starts.append(i + 1)
            i = text.find("\n", i + 1)

    @property
    def line_count(self) -> int:
        return len(self.starts)

    def clamp(self, row: int) -> int:
        return max(0, min(row, self.line_count - 1))

    def span(self, first_row: int, last_row: int) -> Span:
        end = self.starts[last_row + 1] if last_row + 1 < self.line_count else len(self.text)
        return self.starts[first_row], end

    def line_of(self, offset: int) -> int:
        return bisect.bisect_right(self.starts, offset) - 1

    def first_line_start_at_or_after(self, offset: int) -> Optional[int]:
        i = bisect.bisect_left(self.starts, offset)
        return self.starts[i] if i < self.line_count else None


@dataclasses.dataclass
class _Piece:
    start: int
    end: int
    # pieces cut by the fallback splitter from one oversized unit share a group
    group: Optional[int] = None


def _make_chunks(
    text: str,
    spans: List[Span],
    path: str,
    language: Optional[str],
    splitter: str,
    min_chunk_chars: int,
    layout: Optional[_LineLayout] = None,
) -> List[CodeChunk]:
    layout = layout or _LineLayout(text)
    chunks: List[CodeChunk] = []
    for start, end in spans:
        body = text[start:end]
        if len(body.strip()) < min_chunk_chars:
            continue
        chunks.append(
            CodeChunk.create(
                path=path,
                start_line=layout.line_of(start) + 1,
                end_line=layout.line_of(end - 1) + 1,
                text=body,
                language=language,
                metadata={"splitter": splitter},
            )
        )
    return chunks


# -----------------------------------------------------------------------------
# Interfaces
# -----------------------------------------------------------------------------

class Chunker:
    """Abstract base class for text chunking."""

    def chunk(self, text: str, path: str = "", language: Optional[str] = None) -> List[CodeChunk]:
        """Chunk text into ordered, bounded code chunks.

        Args:
            text: File content
            path: Relative path of the file (used for ids and language detection)
            language: Language name; detected from ``path`` when omitted

        Returns:
            List of CodeChunk, ordered by start line
        """
        raise NotImplementedError


class FallbackChunker(Chunker):
    """Sliding-window chunker for text without grammar support."""

    def __init__(
        self,
        max_chars: int = 2500,
        overlap_chars: int = 300,
        min_chunk_chars: int = 8,
        preserve_lines: bool = True,
    ):
        _check_sizes(max_chars, overlap_chars)
        self.max_chars = max_chars
        self.overlap_chars = overlap_chars
        self.min_chunk_chars = min_chunk_chars
        self.preserve_lines = preserve_lines

    def chunk(self, text: str, path: str = "", language: Optional[str] = None) -> List[CodeChunk]:
        if not text:
            return []
        spans = split_text(text, self.max_chars, self.overlap_chars, self.preserve_lines)
        return _make_chunks(text, spans, path, language, "fallback", self.min_chunk_chars)


class SyntaxAwareChunker(Chunker):
    """Groups grammar nodes into chunks of at most ``max_chars`` characters.

    Top-level nodes are accumulated in document order. A node too large for a
    chunk is decomposed into its children; a span with no usable children is
    handed to the fallback splitter. Each new chunk starts with up to
    ``overlap_chars`` of trailing whole lines from the previous chunk.
    """

    def __init__(
        self,
        max_chars: int = 2500,
        overlap_chars: int = 300,
        min_chunk_chars: int = 8,
        fallback: Optional[FallbackChunker] = None,
    ):
        _check_sizes(max_chars, overlap_chars)
        self.max_chars = max_chars
        self.overlap_chars = overlap_chars
        self.min_chunk_chars = min_chunk_chars
        self.fallback = fallback or FallbackChunker(max_chars, overlap_chars, min_chunk_chars)

    def chunk(self, text: str, path: str = "", language: Optional[str] = None) -> List[CodeChunk]:
        if not text:
            return []

        language = language or get_language_for_file(path)

        # Adaptive strategy: small files kept as single chunk
        if len(text) <= self.max_chars:
            splitter = "syntax" if language else "fallback"
            return _make_chunks(text, [(0, len(text))], path, language, splitter, self.min_chunk_chars)

        if language is None:
            logger.debug(f"No grammar for {path or 'unknown file'}, using fallback splitter")
            return self.fallback.chunk(text, path, language=None)

        try:
            tree = self._parse(text, language)
        except UnsupportedLanguage as e:
            logger.debug(f"{e}; using fallback splitter for {path or 'unknown file'}")
            return self.fallback.chunk(text, path, language=language)

        layout = _LineLayout(text)
        groups = itertools.count(1)
        pieces = self._cover(tree.root_node, 0, layout.line_count - 1, layout, 0, groups)
        spans = self._accumulate(pieces, layout)
        chunks = _make_chunks(text, spans, path, language, "syntax", self.min_chunk_chars, layout)
        logger.debug(f"Created {len(chunks)} syntax chunks for {path or 'unknown file'} ({language})")
        return chunks

    def _parse(self, text: str, language: str):
        try:
            parser = tree_sitter_language_pack.get_parser(language)
        except PARSER_ERRORS as e:
            raise UnsupportedLanguage(language) from e
        return parser.parse(text.encode("utf-8"))

    @staticmethod
    def _last_row(node, layout: _LineLayout) -> int:
        row, col = node.end_point[0], node.end_point[1]
        # a node ending at column 0 stops before that line
        if col == 0 and row > node.start_point[0]:
            row -= 1
        return layout.clamp(row)

    def _line_units(self, node, first_row: int, last_row: int, layout: _LineLayout) -> List[list]:
        """Partition rows first_row..last_row at the last row of each child.

        Leading gap lines (comments, blank lines) belong to the following
        child, trailing lines to the last one.
        """
        units: List[list] = []
        cur = first_row
        for child in node.children:
            if child.end_point[0] < first_row or child.start_point[0] > last_row:
                continue
            end_row = min(self._last_row(child, layout), last_row)
            if end_row < cur:
                continue
            units.append([cur, end_row, child])
            cur = end_row + 1
        if cur <= last_row:
            if units:
                units[-1][1] = last_row
            else:
                units.append([cur, last_row, None])
        return units

    def _cover(
        self, node, first_row: int, last_row: int, layout: _LineLayout, depth: int, groups: Iterator[int]
    ) -> List[_Piece]:
        start, end = layout.span(first_row, last_row)
        if end - start <= self.max_chars:
            return [_Piece(start, end)]

        units = self._line_units(node, first_row, last_row, layout)
        if len(units) <= 1 or depth >= _MAX_DEPTH:
            child = units[0][2] if units else None
            if child is not None and depth < _MAX_DEPTH:
                return self._cover(child, first_row, last_row, layout, depth + 1, groups)
            return self._fallback_pieces(start, end, layout, next(groups))

        pieces: List[_Piece] = []
        for unit_first, unit_last, child in units:
            pieces.extend(self._cover(child, unit_first, unit_last, layout, depth + 1, groups))
        return pieces

    def _fallback_pieces(self, start: int, end: int, layout: _LineLayout, group: int) -> List[_Piece]:
        spans = split_text(layout.text, self.max_chars, self.overlap_chars, True, start, end)
        return [_Piece(s, e, group=group) for s, e in spans]

    def _seed_start(self, prev_start: int, prev_end: int, piece_end: int, layout: _LineLayout) -> int:
        """Start offset for a chunk that continues after ``prev_end``.

        Picks the earliest line start inside the previous chunk such that the
        seeded overlap stays within ``overlap_chars`` and the new chunk within
        ``max_chars``.
        """
        lower = max(prev_end - self.overlap_chars, piece_end - self.max_chars, prev_start + 1)
        seed = layout.first_line_start_at_or_after(lower)
        if seed is None or seed > prev_end:
            return prev_end
        return seed

    def _accumulate(self, pieces: List[_Piece], layout: _LineLayout) -> List[Span]:
        spans: List[Span] = []
        cur: Optional[List[int]] = None
        i = 0
        while i < len(pieces):
            piece = pieces[i]
            if piece.group is not None:
                run = [piece]
                while i + len(run) < len(pieces) and pieces[i + len(run)].group == piece.group:
                    run.append(pieces[i + len(run)])
                # fallback pieces carry their own overlap; all but the last stand alone
                if cur is not None:
                    spans.append((cur[0], cur[1]))
                spans.extend((p.start, p.end) for p in run[:-1])
                cur = [run[-1].start, run[-1].end]
                i += len(run)
                continue

            if cur is None:
                cur = [piece.start, piece.end]
            elif piece.end - cur[0] <= self.max_chars:
                cur[1] = piece.end
            else:
                spans.append((cur[0], cur[1]))
                cur = [self._seed_start(cur[0], cur[1], piece.end, layout), piece.end]
            i += 1

        if cur is not None:
            spans.append((cur[0], cur[1]))
        return spans


def make_chunker(cfg: Dict) -> Chunker:
    """Create the syntax-aware chunker from config."""
    return SyntaxAwareChunker(
        max_chars=int(cfg.get("chunk_max_chars", 2500)),
        overlap_chars=int(cfg.get("chunk_overlap_chars", 300)),
        min_chunk_chars=int(cfg.get("min_chunk_chars", 8)),
    )


def chunk_text(
    text: str,
    max_chars: int,
    overlap_chars: int,
    min_chunk_chars: int = 8,
    path: str = "",
    language: Optional[str] = None,
) -> List[CodeChunk]:
    """Chunk text with the syntax-aware chunker (Functional Wrapper)."""
    chunker = SyntaxAwareChunker(max_chars=max_chars, overlap_chars=overlap_chars, min_chunk_chars=min_chunk_chars)
    return chunker.chunk(text, path=path, language=language)
