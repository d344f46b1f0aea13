"""Tests for chunker."""

import pytest

from privacy_vault.ingest.chunker import chunk_text


def test_chunk_boundaries_basic() -> None:
    text = ("Title\n\nPara1.\n\nPara2 is longer..." * 5).strip()
    chunks = chunk_text(text, target_chars=50, max_chars=80, overlap_chars=10)
    assert chunks, "Should produce chunks"
    assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
    assert all(c.start_char < c.end_char for c in chunks)
    assert all(text[c.start_char : c.end_char] == c.text for c in chunks)


def test_chunks_never_exceed_max() -> None:
    text = " ".join(f"word{i}" for i in range(2000))
    chunks = chunk_text(text, target_chars=300, max_chars=400, overlap_chars=50)
    assert len(chunks) > 1
    assert all(len(chunk.text) <= 400 for chunk in chunks)


def test_chunks_overlap_previous_tail() -> None:
    sentences = " ".join(f"Sentence number {i} ends here." for i in range(60))
    chunks = chunk_text(sentences, target_chars=200, max_chars=300, overlap_chars=60)
    assert len(chunks) > 1
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_char < previous.end_char


def test_single_chunk_for_short_text(sample_text: str) -> None:
    chunks = chunk_text(sample_text)
    assert len(chunks) == 1
    assert chunks[0].text == sample_text


def test_blank_text_has_no_chunks() -> None:
    assert chunk_text("   \n\n  ") == []


def test_overlap_must_be_smaller_than_max() -> None:
    with pytest.raises(ValueError):
        chunk_text("some text", max_chars=10, overlap_chars=10)
