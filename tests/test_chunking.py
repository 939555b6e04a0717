from __future__ import annotations

import pytest

from site_knowledge_pipeline.chunking import chunk_content, estimate_tokens, strip_overlap


def _lines(n: int, width: int = 20) -> str:
    return "\n".join(f"{i:0{width}d}" for i in range(n))


def test_chunk_content_empty() -> None:
    assert chunk_content("") == []
    assert chunk_content("   \n\n  \t") == []


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_small_document_is_one_chunk() -> None:
    chunks = chunk_content("# Title\n\nShort body.")
    assert len(chunks) == 1
    assert chunks[0].index == 0
    assert chunks[0].text == "# Title\n\nShort body."
    assert chunks[0].metadata["overlap_chars"] == 0
    assert chunks[0].metadata["start_line"] == 0
    assert chunks[0].metadata["end_line"] == 2


def test_two_thousand_lines_make_thirteen_chunks_with_overlap() -> None:
    content = _lines(2000)
    chunks = chunk_content(content, max_tokens=800, overlap_chars=100)

    assert len(chunks) == 13
    assert chunks[0].metadata["overlap_chars"] == 0
    for prev, cur in zip(chunks, chunks[1:], strict=False):
        assert cur.metadata["overlap_chars"] == 100
        assert cur.text.startswith(prev.text[-100:] + "\n")


def test_indices_are_contiguous_and_output_deterministic() -> None:
    content = _lines(700, width=37)
    a = chunk_content(content, max_tokens=300, overlap_chars=40)
    b = chunk_content(content, max_tokens=300, overlap_chars=40)

    assert [c.index for c in a] == list(range(len(a)))
    assert a == b


@pytest.mark.parametrize("overlap", [0, 1, 25, 100, 5000])
def test_stripping_overlap_reconstructs_input(overlap: int) -> None:
    content = "# Intro\n\n" + _lines(400, width=13) + "\n\n```\ncode\n```\n- item\ntrailing line\n"
    chunks = chunk_content(content, max_tokens=120, overlap_chars=overlap)

    assert len(chunks) > 1
    assert "\n".join(strip_overlap(c) for c in chunks) == content


def test_long_line_is_never_split() -> None:
    long_line = "x" * 5000
    chunks = chunk_content(f"before\n{long_line}\nafter", max_tokens=100, overlap_chars=10)

    assert any(long_line in c.text for c in chunks)
    oversized = [c for c in chunks if long_line in c.text]
    assert oversized[0].token_count > 100


def test_document_metadata_is_merged_into_every_chunk() -> None:
    content = "# Guide\n## Setup\n- install it\n```\npip install x\n```\n" + _lines(300)
    chunks = chunk_content(content, max_tokens=200, overlap_chars=20)

    assert len(chunks) > 1
    for c in chunks:
        assert c.metadata["headings"] == [{"level": 1, "text": "Guide"}, {"level": 2, "text": "Setup"}]
        assert c.metadata["has_code"] is True
        assert c.metadata["has_lists"] is True
        assert c.metadata["word_count"] == len(content.split())
        assert c.metadata["token_count"] == c.token_count


def test_line_ranges_cover_document() -> None:
    chunks = chunk_content(_lines(500), max_tokens=100, overlap_chars=0)

    assert chunks[0].metadata["start_line"] == 0
    assert chunks[-1].metadata["end_line"] == 499
    for prev, cur in zip(chunks, chunks[1:], strict=False):
        assert cur.metadata["start_line"] == prev.metadata["end_line"] + 1


@pytest.mark.parametrize(("max_tokens", "overlap"), [(0, 10), (-5, 10), (100, -1)])
def test_invalid_parameters_raise(max_tokens: int, overlap: int) -> None:
    with pytest.raises(ValueError):
        chunk_content("some text", max_tokens=max_tokens, overlap_chars=overlap)


def test_leading_blank_line_does_not_become_an_empty_chunk() -> None:
    content = "\n" + "x" * 4000
    chunks = chunk_content(content, max_tokens=800, overlap_chars=100)

    assert all(c.text.strip() for c in chunks)
    assert [c.index for c in chunks] == [0]
    assert chunks[0].text == content


def test_blank_lines_before_oversized_lines_stay_with_the_next_line() -> None:
    content = "\n  \n" + "a" * 4000 + "\n" + "b" * 4000
    chunks = chunk_content(content, max_tokens=800, overlap_chars=10)

    assert len(chunks) == 2
    assert all(c.text.strip() for c in chunks)
    assert chunks[0].text == "\n  \n" + "a" * 4000
    assert "\n".join(strip_overlap(c) for c in chunks) == content


def test_whitespace_only_tail_is_kept() -> None:
    content = "a" * 3000 + "\n" + " " * 200 + "\n" + " " * 3400
    chunks = chunk_content(content, max_tokens=800, overlap_chars=100)

    assert len(chunks) == 2
    assert strip_overlap(chunks[-1]) == " " * 3400
    assert "\n".join(strip_overlap(c) for c in chunks) == content
