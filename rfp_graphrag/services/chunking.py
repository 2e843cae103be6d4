"""
Document chunking.

This module provides text chunking functionality for splitting documents
into smaller segments suitable for embedding and LLM extraction while
maintaining character offset tracking.

Features:
- Configurable chunk size and overlap
- Sentence-aware splitting (avoids breaking mid-sentence)
- Hard splitting of sentences longer than a chunk
- Character offsets relative to the original text
- Deterministic chunk ids shared by the vector index and the graph store
"""

import re
import uuid
from collections.abc import Generator
from dataclasses import dataclass

from rfp_graphrag.core.config import settings

# =============================================================================
# Constants
# =============================================================================

# Approximate characters per token (for English text)
CHARS_PER_TOKEN = 4

# Sentence ending patterns
SENTENCE_ENDINGS = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9\"'(])")

CHUNK_NAMESPACE = uuid.UUID("b5e3c1d2-8a4f-5e6b-9c7d-1f2a3b4c5d6e")
WINDOW_NAMESPACE = uuid.UUID("6f1d2a9e-3c4b-5d7e-8a0f-9b2c1e4d3f5a")


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ChunkData:
    """
    Represents a text chunk with offset information.

    This is an intermediate representation before storage.
    """

    text: str
    chunk_index: int
    start_offset: int
    end_offset: int
    token_count: int = 0

    def __post_init__(self):
        """Calculate token count if not provided."""
        if self.token_count == 0:
            self.token_count = estimate_tokens(self.text)


# =============================================================================
# Utility Functions
# =============================================================================


def chunk_id_for(workflow_id: str, document_id: str, chunk_index: int) -> str:
    """Deterministic chunk id: uuid5 of "workflow_id/document_id:chunk_index".

    Workflow ids never contain "/", so equal document ids in different
    workflows always get different chunk ids.
    """
    return str(uuid.uuid5(CHUNK_NAMESPACE, f"{workflow_id}/{document_id}:{chunk_index}"))


def window_id_for(workflow_id: str, document_id: str, window_index: int) -> str:
    """Id of an extraction window stored as a chunk when no chunks were supplied.

    Drawn from its own namespace so it never equals a `chunk_id_for` id.
    """
    return str(uuid.uuid5(WINDOW_NAMESPACE, f"{workflow_id}/{document_id}:{window_index}"))


def estimate_tokens(text: str) -> int:
    """
    Estimate token count for text.

    Uses a simple heuristic of ~4 characters per token for English.

    Args:
        text: Input text

    Returns:
        Estimated token count
    """
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)


def split_into_sentences(text: str) -> list[str]:
    """
    Split text into sentences.

    Args:
        text: Input text

    Returns:
        List of sentences
    """
    if not text:
        return []

    sentences = SENTENCE_ENDINGS.split(text)
    return [s.strip() for s in sentences if s.strip()]


# =============================================================================
# Chunking Functions
# =============================================================================


def chunk_text(
    text: str,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
    respect_sentences: bool = True,
) -> Generator[ChunkData, None, None]:
    """
    Split text into overlapping chunks with offset tracking.

    Args:
        text: Input text to chunk
        chunk_size: Target chunk size in characters (default from settings)
        chunk_overlap: Overlap between chunks in characters (default from settings)
        respect_sentences: If True, avoid breaking mid-sentence

    Yields:
        ChunkData objects with text and offset information

    Example:
        for chunk in chunk_text("Long document text...", chunk_size=500):
            print(f"Chunk {chunk.chunk_index}: {chunk.text[:50]}...")
            print(f"  Offsets: {chunk.start_offset}-{chunk.end_offset}")
    """
    if not text or not text.strip():
        return

    chunk_size = chunk_size or settings.chunk_size
    chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap

    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ValueError(
            f"Chunk overlap ({chunk_overlap}) must be in [0, chunk size ({chunk_size}))"
        )

    lead = len(text) - len(text.lstrip())
    stripped = text.strip()

    if len(stripped) <= chunk_size:
        yield ChunkData(
            text=stripped,
            chunk_index=0,
            start_offset=lead,
            end_offset=lead + len(stripped),
        )
        return

    if respect_sentences:
        pieces = _chunk_by_sentences(stripped, chunk_size, chunk_overlap)
    else:
        pieces = _chunk_by_characters(stripped, chunk_size, chunk_overlap)

    for index, (start, end) in enumerate(pieces):
        yield ChunkData(
            text=stripped[start:end],
            chunk_index=index,
            start_offset=lead + start,
            end_offset=lead + end,
        )


def _chunk_by_characters(
    text: str,
    chunk_size: int,
    chunk_overlap: int,
    offset: int = 0,
) -> Generator[tuple[int, int], None, None]:
    """
    Simple character-based chunking with overlap.

    Yields:
        (start, end) spans relative to `text`, shifted by `offset`
    """
    text_length = len(text)
    start = 0

    while start < text_length:
        end = min(start + chunk_size, text_length)
        yield offset + start, offset + end
        if end >= text_length:
            break
        start = end - chunk_overlap


def _sentence_spans(text: str, chunk_size: int) -> list[tuple[int, int]]:
    """Locate sentences in `text`, hard-splitting any longer than a chunk."""
    spans: list[tuple[int, int]] = []
    pos = 0
    for sentence in split_into_sentences(text):
        start = text.find(sentence, pos)
        if start == -1:
            start = pos
        end = start + len(sentence)
        pos = end
        if end - start > chunk_size:
            spans.extend(_chunk_by_characters(text[start:end], chunk_size, 0, offset=start))
        else:
            spans.append((start, end))
    return spans


def _chunk_by_sentences(
    text: str,
    chunk_size: int,
    chunk_overlap: int,
) -> Generator[tuple[int, int], None, None]:
    """
    Sentence-aware chunking that avoids breaking mid-sentence.

    Overlap is carried as whole trailing sentences whose combined length
    stays within `chunk_overlap`.

    Yields:
        (start, end) spans relative to `text`
    """
    spans = _sentence_spans(text, chunk_size)
    if not spans:
        return

    current: list[tuple[int, int]] = []

    for span in spans:
        if current and span[1] - current[0][0] > chunk_size:
            yield current[0][0], current[-1][1]

            carried: list[tuple[int, int]] = []
            for prev in reversed(current):
                if current[-1][1] - prev[0] > chunk_overlap:
                    break
                carried.insert(0, prev)
            # Drop the carry if it would leave no room for the next sentence
            if carried and span[1] - carried[0][0] > chunk_size:
                carried = []
            current = carried

        current.append(span)

    if current:
        yield current[0][0], current[-1][1]
