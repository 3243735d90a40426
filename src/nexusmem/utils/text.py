"""Text helpers including fixed-window chunking."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from nexusmem.models import TextChunk


def iter_windows(length: int, *, max_chars: int, overlap: int) -> Iterator[tuple[int, int]]:
    """Yield ``(start, end)`` windows covering ``range(length)``.

    Consecutive windows share exactly ``overlap`` characters and the last window
    ends at ``length``.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if overlap < 0 or overlap >= max_chars:
        raise ValueError("overlap must be in [0, max_chars)")

    if length <= max_chars:
        yield (0, length)
        return

    start = 0
    while True:
        end = min(start + max_chars, length)
        yield (start, end)
        if end >= length:
            break
        start = end - overlap


def chunk_text(
    text: str,
    *,
    max_chars: int = 1000,
    overlap: int = 100,
    source_path: Optional[Path] = None,
) -> List[TextChunk]:
    """Split text into overlapping character chunks.

    Text no longer than ``max_chars`` (including the empty string) becomes a
    single chunk.
    """
    return [
        TextChunk(
            source_path=source_path,
            index=idx,
            text=text[start:end],
            start=start,
            end=end,
        )
        for idx, (start, end) in enumerate(
            iter_windows(len(text), max_chars=max_chars, overlap=overlap)
        )
    ]


def extract_unchecked_items(lines: Iterable[str]) -> List[str]:
    """Return trimmed markdown checklist lines that are not yet ticked."""
    return [
        line.strip()
        for line in lines
        if "- [ ]" in line or "* [ ]" in line
    ]
