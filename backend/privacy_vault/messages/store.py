"""Short-lived chat message store."""

from __future__ import annotations

import sqlite3
from typing import Any, Callable, Iterable, Sequence

from privacy_vault.audit.log import AuditLog
from privacy_vault.core.errors import NotFound
from privacy_vault.core.logging import get_logger
from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.models.entities import (
    AuditAction,
    AuditEntry,
    ChatMessageRecord,
    Outcome,
    PiiDetection,
    ResourceHint,
    ResourceKind,
)
from privacy_vault.pii.records import delete_detections, insert_detections
from privacy_vault.security.encryption import TextCipher
from privacy_vault.utils.ids import MESSAGE, new_id
from privacy_vault.utils.time import now_ms

logger = get_logger(__name__)

SOURCE_KIND = ResourceHint.CHAT_MESSAGE.value

AuditFactory = Callable[[list[ChatMessageRecord]], Iterable[AuditEntry]]


class MessageStore:
    """Owns ``chat_messages``; text is sealed per subject with the row id bound in."""

    def __init__(self, db: SQLiteDatabase, audit: AuditLog, cipher: TextCipher) -> None:
        self.db = db
        self.audit = audit
        self.cipher = cipher

    def add_message(
        self,
        subject_id: str,
        text: str,
        session_id: str | None = None,
        detections: Sequence[PiiDetection] = (),
        expires_at: int | None = None,
        *,
        redacted: bool = False,
        guard: Callable[[sqlite3.Connection], None] | None = None,
        on_write: Callable[[str], None] | None = None,
        audit_detail: dict[str, Any] | None = None,
    ) -> ChatMessageRecord:
        record = ChatMessageRecord(
            id=new_id(MESSAGE),
            subject_id=subject_id,
            session_id=session_id,
            text=text,
            redacted=redacted,
            created_at=now_ms(),
            retention_expires_at=expires_at,
        )
        with self.db.transaction() as conn:
            if guard is not None:
                guard(conn)
            conn.execute(
                """
                INSERT INTO chat_messages (id, subject_id, session_id, ciphertext, redacted, created_at, retention_expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.subject_id,
                    record.session_id,
                    self.cipher.encrypt(record.subject_id, record.text, record.id),
                    int(record.redacted),
                    record.created_at,
                    record.retention_expires_at,
                ),
            )
            insert_detections(conn, detections, SOURCE_KIND, record.id, subject_id)
            if on_write is not None:
                on_write(record.id)
            self.audit.record(
                AuditEntry(
                    subject_id=subject_id,
                    action=AuditAction.MESSAGE_ADDED,
                    resource_kind=ResourceKind.CHAT_MESSAGES,
                    resource_id=record.id,
                    outcome=Outcome.SUCCESS,
                    detail={
                        "session_id": session_id,
                        "detections": len(detections),
                        "retention_expires_at": expires_at,
                        **(audit_detail or {}),
                    },
                    timestamp=record.created_at,
                )
            )
        return record

    def delete_message(self, message_id: str, *, reason: str = "user_request") -> ChatMessageRecord:
        removed = self.purge(
            [message_id],
            lambda records: [
                AuditEntry(
                    subject_id=record.subject_id,
                    action=AuditAction.MESSAGE_DELETED,
                    resource_kind=ResourceKind.CHAT_MESSAGES,
                    resource_id=record.id,
                    outcome=Outcome.SUCCESS,
                    detail={"reason": reason},
                )
                for record in records
            ],
        )
        if not removed:
            raise NotFound(f"Message '{message_id}' does not exist")
        return removed[0]

    def purge(self, message_ids: Sequence[str], audit_entries: AuditFactory) -> list[ChatMessageRecord]:
        """Delete messages and their detections in one transaction, with the given audit entries."""
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        with self.db.transaction() as conn:
            removed: list[ChatMessageRecord] = []
            for message_id in ids:
                row = conn.execute("SELECT * FROM chat_messages WHERE id = ?", (message_id,)).fetchone()
                if row is None:
                    continue
                delete_detections(conn, SOURCE_KIND, [message_id])
                conn.execute("DELETE FROM chat_messages WHERE id = ?", (message_id,))
                removed.append(self._row_to_message(row, with_text=False))
            for entry in audit_entries(removed):
                self.audit.record(entry)
        if removed:
            logger.info("Messages deleted", extra={"ctx_count": len(removed)})
        return removed

    def restamp(self, conn: sqlite3.Connection, ttl_seconds: int) -> int:
        return conn.execute(
            "UPDATE chat_messages SET retention_expires_at = created_at + ?",
            (ttl_seconds * 1000,),
        ).rowcount

    def get(self, message_id: str) -> ChatMessageRecord | None:
        row = self.db.query_one("SELECT * FROM chat_messages WHERE id = ?", [message_id])
        return self._row_to_message(row) if row else None

    def list_for_subject(self, subject_id: str, session_id: str | None = None) -> list[ChatMessageRecord]:
        if session_id is None:
            rows = self.db.query(
                "SELECT * FROM chat_messages WHERE subject_id = ? ORDER BY created_at, id",
                [subject_id],
            )
        else:
            rows = self.db.query(
                "SELECT * FROM chat_messages WHERE subject_id = ? AND session_id = ? ORDER BY created_at, id",
                [subject_id, session_id],
            )
        return [self._row_to_message(row) for row in rows]

    def expired(self, now: int | None = None) -> list[ChatMessageRecord]:
        current = now if now is not None else now_ms()
        rows = self.db.query(
            "SELECT * FROM chat_messages WHERE retention_expires_at IS NOT NULL AND retention_expires_at <= ? "
            "ORDER BY retention_expires_at, id",
            [current],
        )
        return [self._row_to_message(row) for row in rows]

    def count(self) -> int:
        row = self.db.query_one("SELECT COUNT(*) AS n FROM chat_messages")
        return int(row["n"]) if row else 0

    def _row_to_message(self, row: sqlite3.Row, with_text: bool = True) -> ChatMessageRecord:
        # deletes never open the ciphertext, so a damaged row can still be erased
        return ChatMessageRecord(
            id=row["id"],
            subject_id=row["subject_id"],
            session_id=row["session_id"],
            text=self.cipher.decrypt(row["subject_id"], row["ciphertext"], row["id"]) if with_text else "",
            redacted=bool(row["redacted"]),
            created_at=int(row["created_at"]),
            retention_expires_at=row["retention_expires_at"],
        )


__all__ = ["MessageStore"]
