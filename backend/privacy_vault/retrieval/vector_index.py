"""Vector index abstraction."""

from __future__ import annotations

import threading
from array import array
from dataclasses import dataclass
from typing import Sequence

from privacy_vault.db.sqlite import SQLiteDatabase


@dataclass(slots=True)
class IndexEntry:
    chunk_id: str
    document_id: str
    model: str
    vector: array


@dataclass(slots=True)
class SearchResult:
    chunk_id: str
    document_id: str
    score: float


class VectorIndex:
    """In-memory cosine index over chunk embeddings.

    The index is a derived cache of ``document_chunks``: the store commits
    first and only then touches the index, and ``rebuild`` restores it from
    the table after a restart or crash. Vectors are kept as float32 arrays.
    """

    def __init__(self, dim: int) -> None:
        self.dim = dim
        self._entries: dict[str, IndexEntry] = {}
        self._by_document: dict[str, set[str]] = {}
        self._lock = threading.RLock()

    @property
    def size(self) -> int:
        return len(self._entries)

    def upsert(
        self,
        document_id: str,
        chunk_ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        model: str,
    ) -> None:
        if len(chunk_ids) != len(vectors):
            raise ValueError("chunk_ids and vectors must align")
        for vector in vectors:
            if len(vector) != self.dim:
                raise ValueError("Vector dimension mismatch")
        with self._lock:
            members = self._by_document.setdefault(document_id, set())
            for chunk_id, vector in zip(chunk_ids, vectors):
                self._entries[chunk_id] = IndexEntry(
                    chunk_id=chunk_id, document_id=document_id, model=model, vector=array("f", vector)
                )
                members.add(chunk_id)

    def remove_document(self, document_id: str) -> int:
        with self._lock:
            chunk_ids = self._by_document.pop(document_id, set())
            for chunk_id in chunk_ids:
                self._entries.pop(chunk_id, None)
            return len(chunk_ids)

    def contains_document(self, document_id: str) -> bool:
        with self._lock:
            return document_id in self._by_document

    def search(self, vector: Sequence[float], top_k: int = 8, model: str | None = None) -> list[SearchResult]:
        """Rank entries by dot product; vectors from a different embedding model are never compared."""
        if len(vector) != self.dim:
            raise ValueError("Query vector dimension mismatch")
        with self._lock:
            entries = [entry for entry in self._entries.values() if model is None or entry.model == model]
        if not entries:
            return []
        scored = [
            SearchResult(chunk_id=entry.chunk_id, document_id=entry.document_id, score=_dot(entry.vector, vector))
            for entry in entries
        ]
        scored.sort(key=lambda item: (-item.score, item.chunk_id))
        return scored[: max(0, top_k)]

    def rebuild(self, db: SQLiteDatabase) -> None:
        rows = db.query("SELECT id, document_id, embedding, embedding_model, dim FROM document_chunks")
        entries: dict[str, IndexEntry] = {}
        by_document: dict[str, set[str]] = {}
        for row in rows:
            if row["dim"] != self.dim:
                continue
            floats = array("f")
            floats.frombytes(row["embedding"])
            entries[row["id"]] = IndexEntry(
                chunk_id=row["id"], document_id=row["document_id"], model=row["embedding_model"], vector=floats
            )
            by_document.setdefault(row["document_id"], set()).add(row["id"])
        with self._lock:
            self._entries = entries
            self._by_document = by_document


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


__all__ = ["VectorIndex", "SearchResult"]
