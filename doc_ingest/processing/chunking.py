"""
Text Chunker  —  Bounded, Overlapping Character Windows
═══════════════════════════════════════════════════════

Turns a document's extracted text into an ordered list of overlapping
chunks, the unit on which embeddings are computed.

Algorithm
─────────
  1. Defaults: chunk_size = 2000 chars, overlap = 300 chars,
     advance = chunk_size - overlap.
  2. If ceil(len(text) / advance) would exceed max_chunks (5000), auto-scale:
       target_advance = ceil(len(text) / max_chunks)
       overlap        = min(500, floor(target_advance * 0.15))
       chunk_size     = target_advance + overlap
     Window starts are multiples of advance, so the chunk count can never
     exceed ceil(len(text) / advance) <= max_chunks.
  3. Text no longer than chunk_size is a single chunk [0, len). Otherwise
     windows start at 0, advance, 2·advance, … while start < len(text).
     A window that does not reach the end of the text is snapped back to the
     last ". " or newline inside its final 30%, so chunks end on sentence
     boundaries where possible. A snap point before the next window's start
     is not used, so consecutive chunks never leave a gap.
  4. Chunk content is the window text stripped of surrounding whitespace;
     windows that strip to nothing are dropped and get no index.
  5. start_char / end_char are the raw window offsets, so
       content == text[start_char:end_char].strip()
     and the windows of consecutive chunks always touch or overlap.

The chunker is pure: no I/O, no randomness, no clock. Identical
(text, config) always produce identical output.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace

from doc_ingest.core.exceptions import ChunkingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE = 2000
DEFAULT_OVERLAP    = 300
MAX_CHUNKS         = 5000   # hard ceiling per document, enforced by auto-scaling

AUTOSCALE_OVERLAP_RATIO = 0.15
AUTOSCALE_OVERLAP_CAP   = 500

# Fraction of the window (from its start) before which no snap point is taken
SNAP_WINDOW_START = 0.7

_SENTENCE_END = ". "
_NEWLINE      = "\n"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkConfig:
    """Chunker parameters. Validated by `validate()` before every run."""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    overlap:    int = DEFAULT_OVERLAP
    max_chunks: int = MAX_CHUNKS

    @property
    def advance(self) -> int:
        return self.chunk_size - self.overlap

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise ChunkingError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.overlap < 0:
            raise ChunkingError(f"overlap must be >= 0, got {self.overlap}")
        if self.overlap >= self.chunk_size:
            raise ChunkingError(
                f"overlap ({self.overlap}) must be smaller than chunk_size ({self.chunk_size})"
            )
        if self.max_chunks <= 0:
            raise ChunkingError(f"max_chunks must be positive, got {self.max_chunks}")

    @classmethod
    def from_settings(cls) -> "ChunkConfig":
        from doc_ingest.core.config import settings
        return cls(
            chunk_size=settings.chunk_size,
            overlap=settings.chunk_overlap,
            max_chunks=settings.max_chunks,
        )


@dataclass(frozen=True)
class TextChunk:
    """
    One chunk of a document's extracted text.

    start_char / end_char are offsets into the extracted text; content is
    that slice with surrounding whitespace removed.
    """
    content:     str
    chunk_index: int
    start_char:  int
    end_char:    int


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

def resolve_config(text_length: int, config: ChunkConfig) -> ChunkConfig:
    """
    Return the effective config for a text of `text_length` characters,
    auto-scaling chunk size when the default would exceed max_chunks.
    """
    if text_length == 0:
        return config

    estimated = math.ceil(text_length / config.advance)
    if estimated <= config.max_chunks:
        return config

    target_advance = math.ceil(text_length / config.max_chunks)
    overlap = min(AUTOSCALE_OVERLAP_CAP, math.floor(target_advance * AUTOSCALE_OVERLAP_RATIO))
    scaled = replace(config, chunk_size=target_advance + overlap, overlap=overlap)

    logger.info(
        "Chunker auto-scale | chars=%d estimated=%d max=%d chunk_size=%d overlap=%d",
        text_length, estimated, config.max_chunks, scaled.chunk_size, scaled.overlap,
    )
    return scaled


def chunk_text(text: str, config: ChunkConfig | None = None) -> list[TextChunk]:
    """
    Split `text` into ordered, overlapping chunks.

    Args:
        text:   Full extracted document text.
        config: Chunk size / overlap / ceiling. Defaults to ChunkConfig().

    Returns:
        Chunks with chunk_index 0, 1, 2, … (empty list for blank input).

    Raises:
        ChunkingError: invalid configuration (e.g. overlap >= chunk_size).
    """
    config = config or ChunkConfig()
    config.validate()

    if not text.strip():
        return []

    text_length = len(text)
    effective = resolve_config(text_length, config)
    size    = effective.chunk_size
    advance = effective.advance

    if text_length <= size:
        return [TextChunk(content=text.strip(), chunk_index=0, start_char=0, end_char=text_length)]

    chunks: list[TextChunk] = []
    for start in range(0, text_length, advance):
        end = start + size
        if end >= text_length:
            end = text_length
        else:
            end = _snap_end(text, start, end, next_start=start + advance)

        content = text[start:end].strip()
        if not content:
            continue

        chunks.append(TextChunk(
            content=content,
            chunk_index=len(chunks),
            start_char=start,
            end_char=end,
        ))

    logger.debug(
        "Chunker | chars=%d chunks=%d chunk_size=%d overlap=%d",
        text_length, len(chunks), size, effective.overlap,
    )
    return chunks


def _snap_end(text: str, start: int, end: int, next_start: int) -> int:
    """
    Move `end` back to just after the last sentence terminator or newline in
    the tail of the window. Returns `end` unchanged if there is none.

    The search floor is the later of the 70% mark and next_start - 1, so the
    snapped end is never before the next window's start.
    """
    floor = max(start + int((end - start) * SNAP_WINDOW_START), next_start - 1)
    if floor >= end:
        return end

    period  = text.rfind(_SENTENCE_END, floor, end)
    newline = text.rfind(_NEWLINE, floor, end)
    boundary = max(period, newline)
    if boundary == -1:
        return end
    return boundary + 1
