from __future__ import annotations

from typing import List

import pytest

from code_context.core import CodeChunk, SyntaxAwareChunker, chunk_text, get_language_for_file
from code_context.core import chunking


def _oversized_function() -> str:
    body = "".join(f'    value_{i:04d} = "{"a" * 30}"\n' for i in range(92))
    return "def big_function():\n" + body


def _module(n_functions: int) -> str:
    parts = []
    for i in range(n_functions):
        parts.append(
            f"# helper number {i}\n"
            f"def helper_{i}(value):\n"
            f"    total = value + {i}\n"
            f"    if total > 10:\n"
            f"        return total * 2\n"
            f"    return total\n"
            "\n"
        )
    parts.append("class Registry:\n    def get(self, key):\n        return key\n")
    return "".join(parts)


def _covered_lines(chunks: List[CodeChunk]) -> set:
    covered = set()
    for chunk in chunks:
        covered.update(range(chunk.start_line, chunk.end_line + 1))
    return covered


def test_language_detection_by_extension() -> None:
    assert get_language_for_file("src/app.py") == "python"
    assert get_language_for_file("web/App.TSX") == "tsx"
    assert get_language_for_file("README") is None


def test_small_file_is_a_single_chunk() -> None:
    text = "def add(a, b):\n    return a + b\n"
    chunks = SyntaxAwareChunker(max_chars=2500, overlap_chars=300).chunk(text, path="math.py")

    assert len(chunks) == 1
    assert chunks[0].start_line == 1
    assert chunks[0].end_line == 2
    assert chunks[0].text == text
    assert chunks[0].language == "python"


def test_oversized_function_yields_two_overlapping_chunks() -> None:
    text = _oversized_function()
    chunks = chunk_text(text, max_chars=2500, overlap_chars=300, path="big.py")

    assert len(chunks) == 2
    first, second = chunks
    assert first.start_line == 1
    assert "def big_function" in first.text
    assert second.end_line == text.count("\n")
    assert second.start_line <= first.end_line
    assert all(len(c.text) <= 2500 for c in chunks)

    overlap_lines = first.end_line - second.start_line + 1
    overlap_text = "".join(text.splitlines(keepends=True)[second.start_line - 1 : first.end_line])
    assert overlap_lines > 0
    assert len(overlap_text) <= 300


def test_chunks_respect_size_bound_and_cover_every_line() -> None:
    text = _module(30)
    chunks = SyntaxAwareChunker(max_chars=400, overlap_chars=60).chunk(text, path="helpers.py")

    assert len(chunks) > 1
    assert all(len(c.text) <= 400 for c in chunks)
    starts = [c.start_line for c in chunks]
    assert starts == sorted(starts)

    non_blank = {i for i, line in enumerate(text.splitlines(), start=1) if line.strip()}
    assert non_blank <= _covered_lines(chunks)


def test_chunk_text_matches_line_numbers() -> None:
    text = _module(12)
    lines = text.splitlines(keepends=True)
    for chunk in SyntaxAwareChunker(max_chars=300, overlap_chars=40).chunk(text, path="helpers.py"):
        assert chunk.text == "".join(lines[chunk.start_line - 1 : chunk.end_line])


def test_chunking_is_deterministic() -> None:
    text = _module(20)
    chunker = SyntaxAwareChunker(max_chars=350, overlap_chars=50)

    first = chunker.chunk(text, path="helpers.py")
    second = chunker.chunk(text, path="helpers.py")

    assert [c.id for c in first] == [c.id for c in second]
    assert [(c.start_line, c.end_line) for c in first] == [(c.start_line, c.end_line) for c in second]


def test_unknown_extension_uses_fallback_splitter() -> None:
    text = "".join(f"entry {i}: some free text\n" for i in range(200))
    chunks = SyntaxAwareChunker(max_chars=500, overlap_chars=50).chunk(text, path="data.unknown")

    assert len(chunks) > 1
    assert all(c.metadata["splitter"] == "fallback" for c in chunks)
    assert all(len(c.text) <= 500 for c in chunks)


def test_missing_grammar_falls_back(monkeypatch: pytest.MonkeyPatch) -> None:
    def no_parser(language: str):
        raise LookupError(f"Language not found: {language}")

    monkeypatch.setattr(chunking.tree_sitter_language_pack, "get_parser", no_parser)
    text = _module(30)
    chunks = SyntaxAwareChunker(max_chars=400, overlap_chars=60).chunk(text, path="helpers.py")

    assert chunks
    assert all(c.metadata["splitter"] == "fallback" for c in chunks)
    assert all(c.language == "python" for c in chunks)
    assert all(len(c.text) <= 400 for c in chunks)


def test_chunk_ids_are_content_addressed() -> None:
    a = CodeChunk.create(path="a.py", start_line=1, end_line=2, text="x = 1\ny = 2\n")
    b = CodeChunk.create(path="a.py", start_line=1, end_line=2, text="x = 1\ny = 2\n")
    c = CodeChunk.create(path="b.py", start_line=1, end_line=2, text="x = 1\ny = 2\n")

    assert a.id == b.id
    assert a.id != c.id
