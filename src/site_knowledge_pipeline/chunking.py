from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class TextChunk:
    text: str
    index: int
    token_count: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def overlap_chars(self) -> int:
        return int(self.metadata.get("overlap_chars", 0))


_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+)$", re.MULTILINE)
_LIST_ITEM_RE = re.compile(r"^[ \t]*[-*+][ \t]+", re.MULTILINE)


def estimate_tokens(text: str) -> int:
    """Roughly four characters per token. Not a model tokenizer."""
    return math.ceil(len(text) / 4)


def extract_document_metadata(content: str) -> dict[str, Any]:
    headings = [
        {"level": len(m.group(1)), "text": m.group(2).strip()}
        for m in _HEADING_RE.finditer(content)
    ]
    return {
        "headings": headings,
        "has_code": "```" in content,
        "has_lists": bool(_LIST_ITEM_RE.search(content)),
        "word_count": len(content.split()),
    }


def chunk_content(
    content: str,
    *,
    max_tokens: int = 800,
    overlap_chars: int = 100,
) -> list[TextChunk]:
    """
    Line-based chunking with a character overlap between neighbours.

    Lines accumulate until the next one would push the estimate past ``max_tokens``;
    the chunk is then closed and the next one starts with the last ``overlap_chars``
    characters of it. Lines are never split, so a very long line becomes its own
    oversized chunk. A chunk is only closed once it holds some non-blank text, so
    leading blank lines ride along with the next line instead of becoming an empty
    chunk. Chunk text is kept verbatim so ``strip_overlap`` of every chunk, joined
    with newlines, gives back ``content``.
    """
    if max_tokens <= 0:
        raise ValueError("max_tokens must be > 0")
    if overlap_chars < 0:
        raise ValueError("overlap_chars must be >= 0")
    if not content or not content.strip():
        return []

    document_metadata = extract_document_metadata(content)
    lines = content.split("\n")

    chunks: list[TextChunk] = []
    buffer: list[str] = []
    buffer_tokens = 0
    overlap = ""
    start_line = 0

    def close(end_line: int) -> str:
        text = "\n".join(buffer)
        token_count = estimate_tokens(text)
        chunks.append(
            TextChunk(
                text=text,
                index=len(chunks),
                token_count=token_count,
                metadata={
                    **document_metadata,
                    "start_line": start_line,
                    "end_line": end_line,
                    "token_count": token_count,
                    "overlap_chars": len(overlap),
                },
            )
        )
        return text

    for line_number, line in enumerate(lines):
        line_tokens = estimate_tokens(line)
        if "\n".join(buffer).strip() and buffer_tokens + line_tokens > max_tokens:
            closed = close(line_number - 1)
            overlap = closed[-overlap_chars:] if overlap_chars else ""
            buffer = [overlap, line] if overlap else [line]
            buffer_tokens = estimate_tokens("\n".join(buffer))
            start_line = line_number
        else:
            buffer.append(line)
            buffer_tokens += line_tokens

    # Every line lands in the buffer, so the tail always holds at least one line
    # past the overlap prefix.
    if buffer:
        close(len(lines) - 1)

    return chunks


def strip_overlap(chunk: TextChunk) -> str:
    """Chunk text without the prefix copied from the previous chunk."""
    n = chunk.overlap_chars
    return chunk.text[n + 1 :] if n else chunk.text
