from __future__ import annotations

import pytest

from code_context.core import FallbackChunker, split_text


def _lines(n: int) -> str:
    return "".join(f"line {i:03d}\n" for i in range(n))


def test_empty_text_has_no_windows() -> None:
    assert split_text("", 100, 10) == []


def test_windows_cover_text_on_line_boundaries() -> None:
    text = _lines(100)
    spans = split_text(text, 100, 20)

    assert spans[0][0] == 0
    assert spans[-1][1] == len(text)
    for start, end in spans:
        assert end - start <= 100
        assert start == 0 or text[start - 1] == "\n"
        assert end == len(text) or text[end - 1] == "\n"
    for (_, prev_end), (start, _) in zip(spans, spans[1:]):
        assert start <= prev_end
        assert prev_end - start <= 20


def test_full_window_advances_by_max_minus_overlap() -> None:
    text = "x" * 1000
    spans = split_text(text, 100, 30, preserve_lines=False)

    assert spans[0] == (0, 100)
    assert spans[1] == (70, 170)
    assert spans[-1][1] == 1000


def test_long_single_line_is_hard_cut() -> None:
    text = "y" * 250
    assert split_text(text, 100, 0) == [(0, 100), (100, 200), (200, 250)]


def test_split_is_deterministic() -> None:
    text = _lines(57)
    assert split_text(text, 64, 16) == split_text(text, 64, 16)


@pytest.mark.parametrize("max_chars,overlap", [(0, 0), (10, 10), (10, -1)])
def test_invalid_sizes_are_rejected(max_chars: int, overlap: int) -> None:
    with pytest.raises(ValueError):
        split_text("abc", max_chars, overlap)


def test_fallback_chunker_reports_line_numbers() -> None:
    text = _lines(40)
    chunks = FallbackChunker(max_chars=90, overlap_chars=18).chunk(text, path="notes.txt")

    assert chunks[0].start_line == 1
    assert chunks[-1].end_line == 40
    for chunk in chunks:
        assert len(chunk.text) <= 90
        assert chunk.metadata["splitter"] == "fallback"
        assert chunk.text.startswith(f"line {chunk.start_line - 1:03d}")


def test_fallback_chunker_drops_whitespace_only_chunks() -> None:
    assert FallbackChunker(max_chars=50, overlap_chars=0).chunk("\n\n   \n", path="blank.txt") == []
