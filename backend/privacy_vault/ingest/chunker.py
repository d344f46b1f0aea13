"""Chunking utilities.

Text is split on paragraph boundaries first, then sentences, then whitespace,
and the pieces are packed into chunks of roughly ``target_chars``. Each chunk
after the first repeats up to ``overlap_chars`` of the previous chunk's tail so
a retrieval hit never loses the context that straddles a boundary.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, Sequence

from privacy_vault.ingest.types import ChunkPayload

_SEGMENT_RE = re.compile(r"\n\s*\n", re.MULTILINE)
_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?]?", re.MULTILINE)


@dataclass(slots=True)
class Segment:
    text: str
    start: int
    end: int


def chunk_text(
    text: str,
    target_chars: int = 800,
    max_chars: int = 1000,
    overlap_chars: int = 100,
) -> list[ChunkPayload]:
    """Split text into overlapping chunks that never exceed ``max_chars``."""
    if not text.strip():
        return []
    if overlap_chars >= max_chars:
        raise ValueError("overlap_chars must be smaller than max_chars")
    target_chars = min(target_chars, max_chars)
    piece_limit = max(1, max_chars - overlap_chars)

    pieces: list[Segment] = []
    for segment in _iter_segments(text):
        pieces.extend(_shrink_segment(text, segment, piece_limit))

    chunks: list[ChunkPayload] = []
    current: list[Segment] = []

    for piece in pieces:
        if not current:
            current.append(piece)
            continue

        span = piece.end - current[0].start
        current_span = current[-1].end - current[0].start
        if span <= max_chars and current_span < target_chars:
            current.append(piece)
            continue

        chunks.append(_finalize_chunk(text, current, len(chunks)))
        current = _apply_overlap(text, current, overlap_chars)
        if current and piece.end - current[0].start > max_chars:
            current = []
        current.append(piece)

    if current:
        chunks.append(_finalize_chunk(text, current, len(chunks)))

    return chunks


def _iter_segments(text: str) -> Iterator[Segment]:
    last_index = 0
    for match in _SEGMENT_RE.finditer(text):
        segment = _trim_segment(text, last_index, match.start())
        if segment:
            yield segment
        last_index = match.end()
    if last_index < len(text):
        segment = _trim_segment(text, last_index, len(text))
        if segment:
            yield segment


def _trim_segment(text: str, start: int, end: int) -> Segment | None:
    seg_start = start
    seg_end = end
    while seg_start < seg_end and text[seg_start].isspace():
        seg_start += 1
    while seg_end > seg_start and text[seg_end - 1].isspace():
        seg_end -= 1
    if seg_start >= seg_end:
        return None
    return Segment(text=text[seg_start:seg_end], start=seg_start, end=seg_end)


def _shrink_segment(text: str, segment: Segment, limit: int) -> list[Segment]:
    if len(segment.text) <= limit:
        return [segment]
    sentences = list(_sentence_segments(text, segment))
    if len(sentences) > 1:
        shrunk: list[Segment] = []
        for sentence in sentences:
            shrunk.extend(_shrink_segment(text, sentence, limit))
        return shrunk
    return _split_segment(text, segment, limit)


def _sentence_segments(text: str, segment: Segment) -> Iterator[Segment]:
    for match in _SENTENCE_RE.finditer(segment.text):
        trimmed = _trim_segment(text, segment.start + match.start(), segment.start + match.end())
        if trimmed:
            yield trimmed


def _split_segment(text: str, segment: Segment, limit: int) -> list[Segment]:
    """Hard split on the last whitespace before ``limit``; mid-word only if there is none."""
    pieces: list[Segment] = []
    cursor = segment.start
    while cursor < segment.end:
        stop = min(segment.end, cursor + limit)
        if stop < segment.end:
            space = text.rfind(" ", cursor + 1, stop)
            if space > cursor:
                stop = space
        piece = _trim_segment(text, cursor, stop)
        if piece:
            pieces.append(piece)
        cursor = stop
    return pieces


def _finalize_chunk(text: str, segments: Sequence[Segment], index: int) -> ChunkPayload:
    start = segments[0].start
    end = segments[-1].end
    return ChunkPayload(index=index, start_char=start, end_char=end, text=text[start:end])


def _apply_overlap(text: str, segments: Sequence[Segment], overlap_chars: int) -> list[Segment]:
    if not segments or overlap_chars <= 0:
        return []
    end = segments[-1].end
    retained: list[Segment] = []
    for segment in reversed(segments):
        if end - segment.start > overlap_chars:
            break
        retained.append(segment)
    if retained:
        return list(reversed(retained))
    # last piece alone is longer than the overlap: carry its tail from a word boundary
    start = end - overlap_chars
    space = text.find(" ", start, end)
    if space != -1:
        start = space
    tail = _trim_segment(text, start, end)
    return [tail] if tail else []


__all__ = ["chunk_text", "Segment"]
