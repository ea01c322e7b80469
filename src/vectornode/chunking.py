from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import InvalidInputError
from .util_text import normalize_whitespace

logger = logging.getLogger(__name__)

_SENTENCE_ENDS = ".!?"
# a sentence break is only taken if it leaves at least this many chars in the chunk
_MIN_SENTENCE_OFFSET = 100


@dataclass(frozen=True)
class ChunkingConfig:
    chunk_size: int = 1000
    overlap: int = 200

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise InvalidInputError("chunk_size must be positive")
        if not 0 <= self.overlap < self.chunk_size:
            raise InvalidInputError("overlap must be >= 0 and < chunk_size")


def _sentence_boundary(text: str, start: int, end: int) -> int:
    best = max(text.rfind(ch, start, end) for ch in _SENTENCE_ENDS)
    if best > start + _MIN_SENTENCE_OFFSET:
        return best + 1
    return end


def chunk_text(text: str | None, cfg: ChunkingConfig | None = None) -> list[str]:
    """Split text into overlapping, sentence-aligned chunks.

    Whitespace is normalized first. Output is deterministic for a given
    (text, chunk_size, overlap).
    """
    cfg = cfg or ChunkingConfig()
    t = normalize_whitespace(text)
    if not t:
        return []

    n = len(t)
    chunks: list[str] = []
    start = 0
    while start < n:
        end = min(start + cfg.chunk_size, n)
        if end < n:
            end = _sentence_boundary(t, start, end)

        seg = t[start:end].strip()
        if seg:
            chunks.append(seg)

        if end >= n:
            break
        next_start = end - cfg.overlap
        if next_start <= start:
            # a short sentence-aligned chunk would otherwise rewind the window
            next_start = end
        start = next_start
        if start <= 0 or start >= n:
            break

    logger.debug("Chunked text of length %d into %d chunks", n, len(chunks))
    return chunks
