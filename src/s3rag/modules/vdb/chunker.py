"""Recursive character splitter producing overlapping text chunks."""

from __future__ import annotations

import re
from collections import deque
from typing import Iterator, Sequence

__all__ = ["DEFAULT_SEPARATORS", "TextChunker"]

# Paragraph, line, sentence, word, character.
DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", " ", "")


def _split_keeping_separator(text: str, separator: str) -> list[str]:
    """Split ``text`` so each separator stays at the start of the next piece.

    Example:
        >>> _split_keeping_separator("a b c", " ")
        ['a', ' b', ' c']
        >>> _split_keeping_separator("abc", "")
        ['a', 'b', 'c']
    """

    if not separator:
        return list(text)
    parts = re.split(f"({re.escape(separator)})", text)
    pieces = [parts[0]]
    pieces.extend(
        parts[i] + parts[i + 1] for i in range(1, len(parts) - 1, 2)
    )
    return [piece for piece in pieces if piece]


class TextChunker:
    """Split text on the coarsest boundary available, then merge greedily.

    Pieces are merged up to ``chunk_size`` characters; the tail of each chunk
    (at most ``chunk_overlap`` characters worth of pieces) is carried into the
    next one. Pieces that are still too large are split again with the next
    separator in priority order, down to single characters.

    Example:
        >>> chunker = TextChunker(chunk_size=9, chunk_overlap=0)
        >>> list(chunker.split("AAAA BBBB CCCC"))
        ['AAAA BBBB', 'CCCC']
        >>> list(chunker.split("   "))
        []
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if chunk_overlap < 0:
            raise ValueError("chunk_overlap must be >= 0")
        if chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if not separators:
            raise ValueError("at least one separator is required")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = tuple(separators)

    def __repr__(self) -> str:
        return (
            f"TextChunker(chunk_size={self.chunk_size}, "
            f"chunk_overlap={self.chunk_overlap})"
        )

    def split(self, content: str) -> Iterator[str]:
        """Yield stripped, non-empty chunks of ``content`` in document order."""

        stripped = content.strip()
        if not stripped:
            return
        if len(stripped) <= self.chunk_size:
            yield stripped
            return
        yield from self._split(content, self.separators)

    def _split(self, text: str, separators: Sequence[str]) -> Iterator[str]:
        separator = separators[-1]
        remaining: Sequence[str] = ()
        for position, candidate in enumerate(separators):
            if candidate == "":
                separator = candidate
                break
            if candidate in text:
                separator = candidate
                remaining = separators[position + 1 :]
                break

        pending: list[str] = []
        for piece in _split_keeping_separator(text, separator):
            if len(piece) < self.chunk_size:
                pending.append(piece)
                continue
            if pending:
                yield from self._merge(pending)
                pending = []
            if remaining:
                yield from self._split(piece, remaining)
            else:
                cleaned = piece.strip()
                if cleaned:
                    yield cleaned

        if pending:
            yield from self._merge(pending)

    def _merge(self, pieces: Sequence[str]) -> Iterator[str]:
        window: deque[str] = deque()
        total = 0
        for piece in pieces:
            size = len(piece)
            if window and total + size > self.chunk_size:
                chunk = "".join(window).strip()
                if chunk:
                    yield chunk
                while window and (
                    total > self.chunk_overlap
                    or total + size > self.chunk_size
                ):
                    total -= len(window.popleft())
            window.append(piece)
            total += size

        chunk = "".join(window).strip()
        if chunk:
            yield chunk
