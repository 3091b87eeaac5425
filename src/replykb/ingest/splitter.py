"""Chunk splitter — boundary-aware windows with overlap and fixed-window fallback.

Chunks are exact substrings of the input. Consecutive chunks overlap by at
most ``overlap * chunk_size`` characters and never leave a gap, so the input
can be rebuilt from the spans.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# Break candidates, strongest first. Each match ends where a chunk may end.
_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"[.!?][\"')\]]*\s+|\n")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class TextSpan:
    """One chunk: ``text == source[start:end]``."""

    start: int
    end: int
    text: str


class ChunkSplitter:
    """Split text into overlapping windows, preferring natural boundaries.

    Strategy per window:
    - Look for the last paragraph break in the second half of the window.
    - Otherwise the last sentence end (or line break).
    - Otherwise the last whitespace run.
    - Otherwise cut at exactly ``chunk_size`` characters (dense transcripts).

    The next window starts ``overlap * chunk_size`` characters before the
    previous end, moved forward to the next word start when one exists
    inside the overlap region.

    Args:
        chunk_size: Window size in characters.
        overlap: Fraction of the window repeated in the following chunk.
    """

    def __init__(self, chunk_size: int = 1000, overlap: float = 0.15) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0.0 <= overlap < 0.5:
            raise ValueError("overlap must be in [0.0, 0.5)")
        self.chunk_size = chunk_size
        self.overlap = overlap

    @property
    def overlap_chars(self) -> int:
        return int(self.chunk_size * self.overlap)

    def split(self, text: str) -> list[str]:
        """Return the ordered chunk strings for *text* ([] for blank input)."""
        return [span.text for span in self.split_spans(text)]

    def split_spans(self, text: str) -> list[TextSpan]:
        """Return chunks with their character offsets into *text*."""
        if not text.strip():
            return []

        length = len(text)
        spans: list[TextSpan] = []
        pos = 0
        while pos < length:
            hard_end = min(pos + self.chunk_size, length)
            if hard_end == length:
                end = length
            else:
                end = self._find_break(text, pos, hard_end) or hard_end

            spans.append(TextSpan(pos, end, text[pos:end]))
            if end >= length:
                break
            pos = max(self._next_start(text, end), pos + 1)

        return spans

    # ------------------------------------------------------------------
    # Boundary search
    # ------------------------------------------------------------------

    def _find_break(self, text: str, start: int, hard_end: int) -> int | None:
        """Return the best break offset in ``text[start + size/2 : hard_end]``."""
        floor = start + max(1, self.chunk_size // 2)
        window = text[floor:hard_end]
        for pattern in (_PARAGRAPH_RE, _SENTENCE_RE, _WHITESPACE_RE):
            last = None
            for match in pattern.finditer(window):
                last = match
            if last is not None:
                return floor + last.end()
        return None

    def _next_start(self, text: str, end: int) -> int:
        """Start of the next chunk: back off by the overlap, then align to a word."""
        if self.overlap_chars == 0:
            return end
        start = end - self.overlap_chars
        ws = _WHITESPACE_RE.search(text, start, end)
        if ws is not None and ws.end() < end:
            return ws.end()
        return start
