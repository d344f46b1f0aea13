"""Record of processing activities (GDPR Art. 30)."""

from __future__ import annotations

import sqlite3
from typing import Any

import orjson

from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.models.entities import ConsentPurpose, ProcessingRecord, ResourceKind
from privacy_vault.utils.time import now_ms


class ProcessingRegister:
    """Writer and reader for ``processing_records``.

    Rows describe what was processed, why and under which safeguards; they
    never carry content. ``record`` joins an open transaction the same way
    ``AuditLog.record`` does. Rows survive subject erasure alongside consent
    history.
    """

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    def record(self, entry: ProcessingRecord) -> int:
        timestamp = entry.timestamp if entry.timestamp is not None else now_ms()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO processing_records (
                  timestamp, subject_id, purpose, legal_basis, data_categories_json, resource_kind,
                  resource_id, retention_seconds, recipients_json, security_measures_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    timestamp,
                    entry.subject_id,
                    entry.purpose.value,
                    entry.legal_basis,
                    _dumps(entry.data_categories),
                    entry.resource_kind.value,
                    entry.resource_id,
                    entry.retention_seconds,
                    _dumps(entry.recipients),
                    _dumps(entry.security_measures),
                ),
            )
        entry.id = int(cursor.lastrowid)
        entry.timestamp = timestamp
        return entry.id

    def query(
        self,
        subject_id: str | None = None,
        purpose: ConsentPurpose | None = None,
        limit: int | None = 100,
    ) -> list[ProcessingRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if subject_id is not None:
            clauses.append("subject_id = ?")
            params.append(subject_id)
        if purpose is not None:
            clauses.append("purpose = ?")
            params.append(ConsentPurpose(purpose).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.query(
            f"SELECT * FROM processing_records {where} ORDER BY timestamp DESC, id DESC LIMIT ?",
            [*params, -1 if limit is None else max(0, limit)],
        )
        return [_row_to_record(row) for row in rows]

    def for_subject(self, subject_id: str) -> list[ProcessingRecord]:
        return self.query(subject_id=subject_id, limit=None)


def _dumps(values: list[str]) -> str:
    return orjson.dumps(sorted(set(values))).decode("utf-8")


def _row_to_record(row: sqlite3.Row) -> ProcessingRecord:
    return ProcessingRecord(
        id=int(row["id"]),
        timestamp=int(row["timestamp"]),
        subject_id=row["subject_id"],
        purpose=ConsentPurpose(row["purpose"]),
        legal_basis=row["legal_basis"],
        data_categories=orjson.loads(row["data_categories_json"]),
        resource_kind=ResourceKind(row["resource_kind"]),
        resource_id=row["resource_id"],
        retention_seconds=row["retention_seconds"],
        recipients=orjson.loads(row["recipients_json"]),
        security_measures=orjson.loads(row["security_measures_json"]),
    )


__all__ = ["ProcessingRegister"]
