"""Search helpers: similarity floor, per-document diversification and hydration."""

from __future__ import annotations

from typing import Iterable, Sequence

from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.ingest.types import ChunkRef, SearchHit
from privacy_vault.retrieval.vector_index import SearchResult
from privacy_vault.security.encryption import TextCipher


def diversify(
    results: Iterable[SearchResult],
    k: int,
    min_similarity: float,
    max_per_document: int,
) -> list[SearchResult]:
    """Keep the best results above the floor, at most ``max_per_document`` per document.

    ``results`` must already be ordered best first.
    """
    picked: list[SearchResult] = []
    per_document: dict[str, int] = {}
    for result in results:
        if len(picked) >= k:
            break
        if result.score < min_similarity:
            break
        seen = per_document.get(result.document_id, 0)
        if seen >= max_per_document:
            continue
        per_document[result.document_id] = seen + 1
        picked.append(result)
    return picked


def hydrate(db: SQLiteDatabase, results: Sequence[SearchResult], cipher: TextCipher) -> list[SearchHit]:
    """Attach decrypted chunk text and offsets; results whose chunk row is gone are dropped."""
    if not results:
        return []
    placeholders = ",".join("?" for _ in results)
    rows = db.query(
        "SELECT c.id, c.document_id, c.idx, c.start_char, c.end_char, c.ciphertext, d.subject_id "
        f"FROM document_chunks c JOIN documents d ON d.id = c.document_id WHERE c.id IN ({placeholders})",
        [result.chunk_id for result in results],
    )
    by_id = {row["id"]: row for row in rows}
    hits: list[SearchHit] = []
    for result in results:
        row = by_id.get(result.chunk_id)
        if row is None:
            continue
        hits.append(
            SearchHit(
                ref=ChunkRef(
                    document_id=row["document_id"],
                    chunk_id=row["id"],
                    index=int(row["idx"]),
                    start_char=int(row["start_char"]),
                    end_char=int(row["end_char"]),
                ),
                score=round(float(result.score), 6),
                text=cipher.decrypt(row["subject_id"], row["ciphertext"], row["id"]),
            )
        )
    return hits


__all__ = ["diversify", "hydrate"]
