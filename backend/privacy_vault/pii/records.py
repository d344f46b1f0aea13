"""Persistence helpers for ``pii_detections`` rows.

Only kind, span, confidence and engine are written; the matched text has no
column to go into.
"""

from __future__ import annotations

import sqlite3
from typing import Iterable, Sequence

from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.models.entities import EntityKind, PiiDetection
from privacy_vault.utils.ids import DETECTION, new_id
from privacy_vault.utils.time import now_ms


def insert_detections(
    conn: sqlite3.Connection,
    detections: Iterable[PiiDetection],
    source_kind: str,
    source_entity_id: str,
    subject_id: str,
) -> list[PiiDetection]:
    stored: list[PiiDetection] = []
    created_at = now_ms()
    rows = []
    for detection in detections:
        row_id = new_id(DETECTION)
        rows.append(
            (
                row_id,
                source_kind,
                source_entity_id,
                subject_id,
                detection.entity_kind.value,
                float(detection.confidence),
                int(detection.span_start),
                int(detection.span_end),
                detection.detecting_engine,
                created_at,
            )
        )
        stored.append(
            PiiDetection(
                entity_kind=detection.entity_kind,
                confidence=detection.confidence,
                span_start=detection.span_start,
                span_end=detection.span_end,
                detecting_engine=detection.detecting_engine,
                source_entity_id=source_entity_id,
                id=row_id,
            )
        )
    if rows:
        conn.executemany(
            """
            INSERT INTO pii_detections(
                id, source_kind, source_entity_id, subject_id, entity_kind,
                confidence, span_start, span_end, detecting_engine, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
    return stored


def delete_detections(conn: sqlite3.Connection, source_kind: str, source_entity_ids: Sequence[str]) -> int:
    removed = 0
    for entity_id in source_entity_ids:
        removed += conn.execute(
            "DELETE FROM pii_detections WHERE source_kind = ? AND source_entity_id = ?",
            (source_kind, entity_id),
        ).rowcount
    return removed


def list_detections(
    db: SQLiteDatabase,
    *,
    subject_id: str | None = None,
    source_kind: str | None = None,
    source_entity_id: str | None = None,
) -> list[PiiDetection]:
    clauses: list[str] = []
    params: list[str] = []
    if subject_id is not None:
        clauses.append("subject_id = ?")
        params.append(subject_id)
    if source_kind is not None:
        clauses.append("source_kind = ?")
        params.append(source_kind)
    if source_entity_id is not None:
        clauses.append("source_entity_id = ?")
        params.append(source_entity_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.query(f"SELECT * FROM pii_detections {where} ORDER BY source_entity_id, span_start, span_end", params)
    return [
        PiiDetection(
            entity_kind=EntityKind(row["entity_kind"]),
            confidence=float(row["confidence"]),
            span_start=int(row["span_start"]),
            span_end=int(row["span_end"]),
            detecting_engine=row["detecting_engine"],
            source_entity_id=row["source_entity_id"],
            id=row["id"],
        )
        for row in rows
    ]


__all__ = ["insert_detections", "delete_detections", "list_detections"]
