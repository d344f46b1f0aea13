"""Append-only audit trail."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any

import orjson

from privacy_vault.core.errors import AuditWriteFailure, PersistenceFailure
from privacy_vault.core.logging import get_logger
from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.models.entities import AuditAction, AuditEntry, Outcome, ResourceKind
from privacy_vault.utils.time import now_ms

logger = get_logger(__name__)

DEFAULT_QUERY_LIMIT = 100


@dataclass(slots=True)
class AuditFilter:
    subject_id: str | None = None
    action: AuditAction | None = None
    resource_kind: ResourceKind | None = None
    resource_id: str | None = None
    outcome: Outcome | None = None
    since: int | None = None
    until: int | None = None


class AuditLog:
    """Synchronous writer and reader for ``audit_log``.

    ``record`` joins the caller's open transaction, so the audited write and
    its entry commit or roll back together. There is no update API and the
    only delete path is ``expire_older_than_floor``.
    """

    def __init__(self, db: SQLiteDatabase, floor_seconds: int) -> None:
        self.db = db
        self.floor_seconds = floor_seconds

    def record(self, entry: AuditEntry) -> int:
        timestamp = entry.timestamp if entry.timestamp is not None else now_ms()
        try:
            with self.db.transaction() as conn:
                cursor = self._insert(conn, entry, timestamp)
        except (PersistenceFailure, sqlite3.Error) as exc:
            logger.error(
                "Audit write failed",
                extra={"ctx_action": entry.action.value, "ctx_subject": entry.subject_id},
            )
            raise AuditWriteFailure(f"Could not record '{entry.action.value}': {exc}") from exc
        entry.id = int(cursor.lastrowid)
        entry.timestamp = timestamp
        return entry.id

    def _insert(self, conn: sqlite3.Connection, entry: AuditEntry, timestamp: int) -> sqlite3.Cursor:
        return conn.execute(
            """
            INSERT INTO audit_log(timestamp, subject_id, action, resource_kind, resource_id, outcome, detail_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                timestamp,
                entry.subject_id,
                entry.action.value,
                entry.resource_kind.value,
                entry.resource_id,
                entry.outcome.value,
                orjson.dumps(entry.detail, default=str, option=orjson.OPT_SORT_KEYS).decode("utf-8"),
            ),
        )

    def query(self, filters: AuditFilter | None = None, limit: int | None = DEFAULT_QUERY_LIMIT) -> list[AuditEntry]:
        """Newest first; ``limit=None`` returns every match."""
        where, params = _where(filters or AuditFilter())
        sql = f"SELECT * FROM audit_log {where} ORDER BY timestamp DESC, id DESC LIMIT ?"
        rows = self.db.query(sql, [*params, -1 if limit is None else max(0, limit)])
        return [_row_to_entry(row) for row in rows]

    def history(self, subject_id: str, limit: int | None = DEFAULT_QUERY_LIMIT) -> list[AuditEntry]:
        return self.query(AuditFilter(subject_id=subject_id), limit=limit)

    def count(self, filters: AuditFilter | None = None) -> int:
        where, params = _where(filters or AuditFilter())
        row = self.db.query_one(f"SELECT COUNT(*) AS n FROM audit_log {where}", params)
        return int(row["n"]) if row else 0

    def summarize(self, since: int | None = None, until: int | None = None) -> dict[str, Any]:
        """Counts grouped by action and outcome over a time window."""
        where, params = _where(AuditFilter(since=since, until=until))
        rows = self.db.query(
            f"SELECT action, outcome, COUNT(*) AS n FROM audit_log {where} GROUP BY action, outcome ORDER BY action, outcome",
            params,
        )
        by_action: dict[str, dict[str, int]] = {}
        totals = {Outcome.SUCCESS.value: 0, Outcome.FAILURE.value: 0}
        for row in rows:
            by_action.setdefault(row["action"], {})[row["outcome"]] = int(row["n"])
            totals[row["outcome"]] += int(row["n"])
        return {
            "since": since,
            "until": until,
            "total": sum(totals.values()),
            "by_outcome": totals,
            "by_action": by_action,
        }

    def expire_older_than_floor(self, now: int | None = None) -> int:
        """Delete entries older than the legal-retention floor and record that it happened."""
        current = now if now is not None else now_ms()
        cutoff = current - self.floor_seconds * 1000
        with self.db.transaction() as conn:
            removed = conn.execute("DELETE FROM audit_log WHERE timestamp < ?", (cutoff,)).rowcount
            self.record(
                AuditEntry(
                    subject_id="system",
                    action=AuditAction.AUDIT_EXPIRED,
                    resource_kind=ResourceKind.AUDIT_LOG,
                    outcome=Outcome.SUCCESS,
                    detail={"removed": removed, "cutoff": cutoff},
                )
            )
        if removed:
            logger.info("Expired audit entries", extra={"ctx_removed": removed})
        return removed


def _where(filters: AuditFilter) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if filters.subject_id is not None:
        clauses.append("subject_id = ?")
        params.append(filters.subject_id)
    if filters.action is not None:
        clauses.append("action = ?")
        params.append(AuditAction(filters.action).value)
    if filters.resource_kind is not None:
        clauses.append("resource_kind = ?")
        params.append(ResourceKind(filters.resource_kind).value)
    if filters.resource_id is not None:
        clauses.append("resource_id = ?")
        params.append(filters.resource_id)
    if filters.outcome is not None:
        clauses.append("outcome = ?")
        params.append(Outcome(filters.outcome).value)
    if filters.since is not None:
        clauses.append("timestamp >= ?")
        params.append(filters.since)
    if filters.until is not None:
        clauses.append("timestamp <= ?")
        params.append(filters.until)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        id=int(row["id"]),
        timestamp=int(row["timestamp"]),
        subject_id=row["subject_id"],
        action=AuditAction(row["action"]),
        resource_kind=ResourceKind(row["resource_kind"]),
        resource_id=row["resource_id"],
        outcome=Outcome(row["outcome"]),
        detail=orjson.loads(row["detail_json"]) if row["detail_json"] else {},
    )


__all__ = ["AuditLog", "AuditFilter", "DEFAULT_QUERY_LIMIT"]
