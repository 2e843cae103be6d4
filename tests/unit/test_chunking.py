"""Unit tests for document chunking."""

import pytest

from rfp_graphrag.services.chunking import (
    chunk_id_for,
    chunk_text,
    estimate_tokens,
    split_into_sentences,
    window_id_for,
)


class TestHelpers:
    """Tests for chunking helpers."""

    def test_estimate_tokens(self) -> None:
        """Test the four-characters-per-token heuristic."""
        assert estimate_tokens("") == 0
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("a" * 400) == 100

    def test_split_into_sentences(self) -> None:
        """Test sentence splitting on terminal punctuation."""
        text = "Vendors must be certified. Proposals are due Friday! Questions? Email us."
        assert split_into_sentences(text) == [
            "Vendors must be certified.",
            "Proposals are due Friday!",
            "Questions?",
            "Email us.",
        ]

    def test_chunk_id_deterministic(self) -> None:
        """Test chunk ids depend only on workflow, document id and index."""
        assert chunk_id_for("wf-a", "doc-1", 0) == chunk_id_for("wf-a", "doc-1", 0)
        assert chunk_id_for("wf-a", "doc-1", 0) != chunk_id_for("wf-a", "doc-1", 1)
        assert chunk_id_for("wf-a", "doc-1", 0) != chunk_id_for("wf-a", "doc-2", 0)
        assert len(chunk_id_for("wf-a", "doc-1", 0)) == 36

    def test_chunk_id_per_workflow(self) -> None:
        """Test the same document id gets different chunk ids in different workflows."""
        assert chunk_id_for("wf-a", "rfp-001", 0) != chunk_id_for("wf-b", "rfp-001", 0)

    def test_window_id_never_equals_chunk_id(self) -> None:
        """Test extraction window ids live apart from chunk ids."""
        windows = {window_id_for("wf-a", "doc-1", i) for i in range(5)}
        chunks = {chunk_id_for("wf-a", "doc-1", i) for i in range(5)}
        assert len(windows) == 5
        assert windows.isdisjoint(chunks)


class TestChunkText:
    """Tests for chunk_text."""

    def test_empty_text(self) -> None:
        """Test empty or blank text yields no chunks."""
        assert list(chunk_text("", 100, 10)) == []
        assert list(chunk_text("   \n ", 100, 10)) == []

    def test_short_text_single_chunk(self) -> None:
        """Test text shorter than a chunk is one chunk with original offsets."""
        text = "  Short requirement.  "
        chunks = list(chunk_text(text, 100, 10))
        assert len(chunks) == 1
        assert chunks[0].text == "Short requirement."
        assert text[chunks[0].start_offset : chunks[0].end_offset] == "Short requirement."

    def test_offsets_match_source(self) -> None:
        """Test every chunk's offsets slice the original text."""
        text = " ".join(f"Requirement number {i} applies to every vendor." for i in range(40))
        chunks = list(chunk_text(text, 200, 50))
        assert len(chunks) > 1
        for index, chunk in enumerate(chunks):
            assert chunk.chunk_index == index
            assert text[chunk.start_offset : chunk.end_offset] == chunk.text
            assert len(chunk.text) <= 200

    def test_sentence_boundaries_respected(self) -> None:
        """Test chunks end on sentence boundaries when sentences fit."""
        text = " ".join(f"Sentence {i} is here." for i in range(60))
        for chunk in chunk_text(text, 120, 30):
            assert chunk.text.endswith(".")

    def test_overlap_carries_sentences(self) -> None:
        """Test consecutive chunks share trailing sentences."""
        text = " ".join(f"Item {i} ok." for i in range(50))
        chunks = list(chunk_text(text, 100, 30))
        assert len(chunks) > 1
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_offset < prev.end_offset

    def test_long_sentence_hard_split(self) -> None:
        """Test a sentence longer than a chunk is split by characters."""
        text = "x" * 500
        chunks = list(chunk_text(text, 200, 0))
        assert [len(c.text) for c in chunks] == [200, 200, 100]

    def test_character_mode(self) -> None:
        """Test character chunking with overlap."""
        text = "a" * 250
        chunks = list(chunk_text(text, 100, 20, respect_sentences=False))
        assert [(c.start_offset, c.end_offset) for c in chunks] == [(0, 100), (80, 180), (160, 250)]

    def test_invalid_overlap(self) -> None:
        """Test overlap must be smaller than the chunk size."""
        with pytest.raises(ValueError):
            list(chunk_text("a" * 300, 100, 100))
        with pytest.raises(ValueError):
            list(chunk_text("a" * 300, 100, -1))

    def test_deterministic(self) -> None:
        """Test the same input always chunks the same way."""
        text = " ".join(f"Clause {i} binds the contractor." for i in range(30))
        first = list(chunk_text(text, 150, 40))
        second = list(chunk_text(text, 150, 40))
        assert first == second
