"""
Summarization and chunking helpers applied to extracted document text.
"""
from __future__ import annotations

SUMMARY_MAX_LINES = 5
SUMMARY_MAX_CHARS = 200
ELLIPSIS = "..."
DEFAULT_CHUNK_SIZE = 1000


def summarize(text: str) -> str:
    """
    Joins the first five non-blank lines with single spaces and caps the result at
    200 characters, appending an ellipsis when truncated.
    """
    lines = [line for line in str(text or "").split("\n") if line.strip()]
    summary = " ".join(lines[:SUMMARY_MAX_LINES])
    if len(summary) > SUMMARY_MAX_CHARS:
        return summary[:SUMMARY_MAX_CHARS] + ELLIPSIS
    return summary


def chunk_text(text: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    """
    Greedy word packing. A chunk only exceeds `chunk_size` when it holds a single
    word that is longer than `chunk_size` on its own.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")

    chunks: list[str] = []
    current = ""
    for word in str(text or "").split():
        candidate = f"{current} {word}" if current else word
        if len(candidate) > chunk_size and current:
            chunks.append(current.strip())
            current = word
        else:
            current = candidate

    if current:
        chunks.append(current.strip())
    return chunks
