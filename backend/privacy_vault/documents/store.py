"""Document store: chunking, embeddings, capacity and cascading delete."""

from __future__ import annotations

import sqlite3
import threading
import zlib
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

import orjson

from privacy_vault.audit.log import AuditLog
from privacy_vault.core.config import Settings
from privacy_vault.core.errors import CapacityExceeded, NotFound
from privacy_vault.core.logging import get_logger
from privacy_vault.core.metrics import DOCUMENT_COUNT
from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.ingest.chunker import chunk_text
from privacy_vault.ingest.embeddings import EmbeddingModel, RemoteEmbeddingClient, embed_texts
from privacy_vault.ingest.types import ChunkPayload, SearchHit, SourceMetadata
from privacy_vault.models.entities import (
    AuditAction,
    AuditEntry,
    ChunkRecord,
    DocumentRecord,
    Outcome,
    PiiDetection,
    ResourceHint,
    ResourceKind,
)
from privacy_vault.pii.records import delete_detections, insert_detections
from privacy_vault.retrieval.search import diversify, hydrate
from privacy_vault.retrieval.vector_index import VectorIndex
from privacy_vault.security.encryption import TextCipher
from privacy_vault.utils.ids import CHUNK, DOCUMENT, new_id
from privacy_vault.utils.time import now_ms

logger = get_logger(__name__)

SOURCE_KIND = ResourceHint.DOCUMENT.value
_LOCK_STRIPES = 64

# called inside the write transaction before any row is inserted; raising aborts the write
CommitGuard = Callable[[sqlite3.Connection], None]
AuditFactory = Callable[[list[DocumentRecord]], Iterable[AuditEntry]]
# called inside the write transaction after the rows are inserted, with the new document id
WriteHook = Callable[[str], None]


class DocumentCounter:
    """Live document count plus in-flight reservations."""

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def reset(self, value: int) -> None:
        with self._lock:
            self._value = value

    def reserve(self, ceiling: int) -> bool:
        with self._lock:
            if self._value >= ceiling:
                return False
            self._value += 1
            return True

    def release(self, count: int = 1) -> None:
        with self._lock:
            self._value = max(0, self._value - count)


@dataclass(slots=True)
class PreparedDocument:
    chunks: list[ChunkPayload]
    vectors: list[list[float]]
    model: str
    dim: int


class DocumentStore:
    """Owns ``documents`` and ``document_chunks`` plus their detection rows.

    The durable tables are written first; the in-memory vector index is a
    derived cache updated after commit and rebuilt by ``rebuild_index``.
    Chunk text is stored sealed by ``TextCipher`` and opened on read.
    """

    def __init__(
        self,
        db: SQLiteDatabase,
        settings: Settings,
        audit: AuditLog,
        embedding_model: EmbeddingModel | None = None,
        vector_index: VectorIndex | None = None,
        remote: RemoteEmbeddingClient | None = None,
        cipher: TextCipher | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.audit = audit
        self.embedding_model = embedding_model or EmbeddingModel.get(
            settings.embedding_model, settings.embedding_dim, backend=settings.embedding_backend
        )
        self.cipher = cipher or TextCipher.from_key_file(settings.resolved_key_path())
        self.vector_index = vector_index or VectorIndex(self.embedding_model.dim)
        self.remote = remote
        self.capacity = settings.document_capacity
        self.counter = DocumentCounter()
        self._stripes = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    def load(self) -> None:
        """Seed the counter from the table and rebuild the index."""
        row = self.db.query_one("SELECT COUNT(*) AS n FROM documents")
        self.counter.reset(int(row["n"]) if row else 0)
        self.rebuild_index()
        DOCUMENT_COUNT.set(self.counter.value)

    def rebuild_index(self) -> None:
        self.vector_index.rebuild(self.db)
        logger.info("Vector index rebuilt", extra={"ctx_chunks": self.vector_index.size})

    # Writes -------------------------------------------------------------

    def prepare(self, text: str, allow_remote: bool = False) -> PreparedDocument:
        """Chunk and embed; runs outside every lock."""
        chunks = chunk_text(
            text,
            target_chars=self.settings.chunk_target_chars,
            max_chars=self.settings.chunk_max_chars,
            overlap_chars=self.settings.chunk_overlap_chars,
        )
        batch = embed_texts(
            self.embedding_model,
            [chunk.text for chunk in chunks],
            remote=self.remote,
            allow_remote=allow_remote,
        )
        return PreparedDocument(chunks=chunks, vectors=batch.vectors, model=batch.model, dim=batch.dim)

    def add_document(
        self,
        subject_id: str,
        text: str,
        metadata: SourceMetadata | None = None,
        detections: Sequence[PiiDetection] = (),
        expires_at: int | None = None,
        *,
        raw_byte_size: int | None = None,
        redacted: bool = False,
        allow_remote: bool = False,
        guard: CommitGuard | None = None,
        on_write: WriteHook | None = None,
        audit_detail: dict[str, Any] | None = None,
    ) -> DocumentRecord:
        """Persist a document, its chunks and detections in one transaction.

        Raises ``CapacityExceeded`` before any work when the ceiling is reached.
        """
        if not self.counter.reserve(self.capacity):
            logger.warning("Document capacity reached", extra={"ctx_ceiling": self.capacity})
            raise CapacityExceeded(self.capacity)
        metadata = metadata or SourceMetadata()
        committed = False
        try:
            prepared = self.prepare(text, allow_remote=allow_remote)
            now = now_ms()
            record = DocumentRecord(
                id=new_id(DOCUMENT),
                subject_id=subject_id,
                raw_byte_size=raw_byte_size if raw_byte_size is not None else len(text.encode("utf-8")),
                chunk_count=len(prepared.chunks),
                created_at=now,
                retention_expires_at=expires_at,
                filename=metadata.filename,
                mime=metadata.mime,
                uploaded_at=metadata.uploaded_at,
                redacted=redacted,
                meta=dict(metadata.extra),
            )
            chunk_ids = [new_id(CHUNK) for _ in prepared.chunks]
            with self._locked([record.id]):
                with self.db.transaction() as conn:
                    if guard is not None:
                        guard(conn)
                    self._insert_document(conn, record)
                    self._insert_chunks(conn, record, chunk_ids, prepared, now)
                    insert_detections(conn, detections, SOURCE_KIND, record.id, subject_id)
                    if on_write is not None:
                        on_write(record.id)
                    self.audit.record(
                        AuditEntry(
                            subject_id=subject_id,
                            action=AuditAction.DOCUMENT_ADDED,
                            resource_kind=ResourceKind.DOCUMENTS,
                            resource_id=record.id,
                            outcome=Outcome.SUCCESS,
                            detail={
                                "chunk_count": record.chunk_count,
                                "raw_byte_size": record.raw_byte_size,
                                "detections": len(detections),
                                "embedding_model": prepared.model,
                                "retention_expires_at": expires_at,
                                **(audit_detail or {}),
                            },
                            timestamp=now,
                        )
                    )
                committed = True
                # still under the stripe, so a concurrent purge of this id runs after the upsert
                if chunk_ids:
                    self.vector_index.upsert(record.id, chunk_ids, prepared.vectors, prepared.model)
        except BaseException:
            if not committed:
                self.counter.release()
            raise
        DOCUMENT_COUNT.set(self.counter.value)
        logger.info(
            "Document stored",
            extra={"ctx_document": record.id, "ctx_chunks": record.chunk_count, "ctx_detections": len(detections)},
        )
        return record

    def delete_document(self, document_id: str, *, reason: str = "user_request") -> DocumentRecord:
        """Remove a document with its chunks and detections as one unit."""
        removed = self.purge(
            [document_id],
            lambda records: [
                AuditEntry(
                    subject_id=record.subject_id,
                    action=AuditAction.DOCUMENT_DELETED,
                    resource_kind=ResourceKind.DOCUMENTS,
                    resource_id=record.id,
                    outcome=Outcome.SUCCESS,
                    detail={"reason": reason, "chunk_count": record.chunk_count},
                )
                for record in records
            ],
        )
        if not removed:
            raise NotFound(f"Document '{document_id}' does not exist")
        return removed[0]

    def purge(self, document_ids: Sequence[str], audit_entries: AuditFactory) -> list[DocumentRecord]:
        """Cascade-delete several documents in one transaction.

        ``audit_entries`` receives the records actually deleted and returns the
        entries written in the same transaction. Unknown ids are skipped.
        """
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return []
        with self._locked(ids), self.db.transaction() as conn:
            removed: list[DocumentRecord] = []
            for document_id in ids:
                row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
                if row is None:
                    continue
                delete_detections(conn, SOURCE_KIND, [document_id])
                conn.execute("DELETE FROM document_chunks WHERE document_id = ?", (document_id,))
                conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
                removed.append(_row_to_document(row))
            for entry in audit_entries(removed):
                self.audit.record(entry)
        for record in removed:
            self.vector_index.remove_document(record.id)
        if removed:
            self.counter.release(len(removed))
            DOCUMENT_COUNT.set(self.counter.value)
            logger.info("Documents deleted", extra={"ctx_count": len(removed)})
        return removed

    def restamp(self, conn: sqlite3.Connection, ttl_seconds: int) -> int:
        """Recompute every expiry stamp from ``created_at``; runs in the caller's transaction."""
        return conn.execute(
            "UPDATE documents SET retention_expires_at = created_at + ?",
            (ttl_seconds * 1000,),
        ).rowcount

    # Reads --------------------------------------------------------------

    def search(
        self,
        query_text: str,
        k: int = 5,
        min_similarity: float | None = None,
        allow_remote: bool = False,
    ) -> list[SearchHit]:
        if k <= 0 or not query_text.strip():
            return []
        batch = embed_texts(self.embedding_model, [query_text], remote=self.remote, allow_remote=allow_remote)
        floor = self.settings.min_similarity if min_similarity is None else min_similarity
        ranked = self.vector_index.search(batch.vectors[0], top_k=self.vector_index.size, model=batch.model)
        picked = diversify(ranked, k=k, min_similarity=floor, max_per_document=self.settings.max_chunks_per_document)
        return hydrate(self.db, picked, self.cipher)

    def get(self, document_id: str) -> DocumentRecord | None:
        row = self.db.query_one("SELECT * FROM documents WHERE id = ?", [document_id])
        return _row_to_document(row) if row else None

    def chunks(self, document_id: str) -> list[ChunkRecord]:
        rows = self.db.query(
            "SELECT c.*, d.subject_id FROM document_chunks c JOIN documents d ON d.id = c.document_id "
            "WHERE c.document_id = ? ORDER BY c.idx",
            [document_id],
        )
        return [
            ChunkRecord(
                id=row["id"],
                document_id=row["document_id"],
                index=int(row["idx"]),
                start_char=int(row["start_char"]),
                end_char=int(row["end_char"]),
                text=self.cipher.decrypt(row["subject_id"], row["ciphertext"], row["id"]),
                embedding=EmbeddingModel.from_bytes(row["embedding"]),
            )
            for row in rows
        ]

    def list_for_subject(self, subject_id: str) -> list[DocumentRecord]:
        rows = self.db.query(
            "SELECT * FROM documents WHERE subject_id = ? ORDER BY created_at, id",
            [subject_id],
        )
        return [_row_to_document(row) for row in rows]

    def expired(self, now: int | None = None) -> list[DocumentRecord]:
        current = now if now is not None else now_ms()
        rows = self.db.query(
            "SELECT * FROM documents WHERE retention_expires_at IS NOT NULL AND retention_expires_at <= ? "
            "ORDER BY retention_expires_at, id",
            [current],
        )
        return [_row_to_document(row) for row in rows]

    def count(self) -> int:
        return self.counter.value

    # Internal helpers -------------------------------------------------

    def _locked(self, document_ids: Sequence[str]) -> ExitStack:
        stack = ExitStack()
        stripes = sorted({zlib.crc32(doc_id.encode("utf-8")) % _LOCK_STRIPES for doc_id in document_ids})
        for stripe in stripes:
            stack.enter_context(self._stripes[stripe])
        return stack

    @staticmethod
    def _insert_document(conn: sqlite3.Connection, record: DocumentRecord) -> None:
        conn.execute(
            """
            INSERT INTO documents (
              id, subject_id, raw_byte_size, chunk_count, filename, mime, uploaded_at,
              redacted, meta_json, created_at, retention_expires_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.subject_id,
                record.raw_byte_size,
                record.chunk_count,
                record.filename,
                record.mime,
                record.uploaded_at,
                int(record.redacted),
                orjson.dumps(record.meta, default=str).decode("utf-8"),
                record.created_at,
                record.retention_expires_at,
            ),
        )

    def _insert_chunks(
        self,
        conn: sqlite3.Connection,
        record: DocumentRecord,
        chunk_ids: Sequence[str],
        prepared: PreparedDocument,
        now: int,
    ) -> None:
        conn.executemany(
            """
            INSERT INTO document_chunks (
              id, document_id, idx, start_char, end_char, ciphertext, embedding, embedding_model, dim, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    chunk_ids[position],
                    record.id,
                    chunk.index,
                    chunk.start_char,
                    chunk.end_char,
                    self.cipher.encrypt(record.subject_id, chunk.text, chunk_ids[position]),
                    EmbeddingModel.as_bytes(prepared.vectors[position]),
                    prepared.model,
                    prepared.dim,
                    now,
                )
                for position, chunk in enumerate(prepared.chunks)
            ],
        )


def _row_to_document(row: sqlite3.Row) -> DocumentRecord:
    return DocumentRecord(
        id=row["id"],
        subject_id=row["subject_id"],
        raw_byte_size=int(row["raw_byte_size"]),
        chunk_count=int(row["chunk_count"]),
        created_at=int(row["created_at"]),
        retention_expires_at=row["retention_expires_at"],
        filename=row["filename"],
        mime=row["mime"],
        uploaded_at=row["uploaded_at"],
        redacted=bool(row["redacted"]),
        meta=orjson.loads(row["meta_json"]) if row["meta_json"] else {},
    )


__all__ = ["DocumentStore", "DocumentCounter", "PreparedDocument", "CommitGuard", "WriteHook"]
