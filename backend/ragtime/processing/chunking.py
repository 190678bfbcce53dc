"""
Text Chunker  —  Boundary-Aware Fixed Windows
══════════════════════════════════════════════

Splits extracted text into overlapping windows of at most `chunk_size`
characters, preferring to end each window on a natural boundary:

    window  [start ──────────────────────────── start + chunk_size)
                              ▲ half-way
    cut at  last "." or "\\n\\n" past half-way      (sentence / paragraph)
    else    last " " past half-way                (word)
    else    raw window boundary                   (mid-word, rare)

The next window starts `overlap` characters before the previous cut, so a
sentence that straddles a boundary appears whole in at least one chunk.

Invariants:
  - indices are 0..N-1 with no gaps
  - the union of [start_char, end_char) covers every non-whitespace
    character of the input
  - whitespace-only input yields no chunks
  - the walk always terminates (start strictly increases)

Stall rule: a plain walk stops as soon as a trimmed cut would leave the next
start at or before the current one, dropping the rest of the text. This
chunker departs from that rule: it discards the trimmed cut, takes the raw
window instead and keeps walking, so the coverage invariant holds. The
start-must-increase guard still ends the walk.

Pure function with no I/O; safe to call from any coroutine.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_OVERLAP    = 200


@dataclass(frozen=True)
class TextChunk:
    index:      int   # 0-based, contiguous
    content:    str   # stripped window text
    start_char: int   # window start (inclusive) in the source text
    end_char:   int   # window end (exclusive)


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> list[TextChunk]:
    """
    Split `text` into overlapping, boundary-aware chunks.

    Raises ValueError when `chunk_size <= 0` or `overlap` is outside
    `[0, chunk_size)`.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError(
            f"overlap must be in [0, chunk_size), got overlap={overlap} chunk_size={chunk_size}"
        )

    chunks: list[TextChunk] = []
    length = len(text)
    start = 0

    while start < length:
        window_end = min(start + chunk_size, length)
        end = window_end

        if window_end < length:
            end = _boundary(text, start, window_end, chunk_size)
            # A cut this early would stall the walk; take the full window.
            if end - overlap <= start:
                end = window_end

        content = text[start:end].strip()
        if content:
            chunks.append(TextChunk(
                index=len(chunks),
                content=content,
                start_char=start,
                end_char=end,
            ))

        if end >= length:
            break

        next_start = end - overlap
        if next_start <= start:
            break
        start = next_start

    return chunks


def _boundary(text: str, start: int, window_end: int, chunk_size: int) -> int:
    """End offset for the window, trimmed back to a sentence or word break."""
    half_way = start + chunk_size / 2

    break_point = max(
        text.rfind(".", start, window_end),
        text.rfind("\n\n", start, window_end),
    )
    if break_point > half_way:
        return break_point + 1

    space = text.rfind(" ", start, window_end)
    if space > half_way:
        return space

    return window_end
