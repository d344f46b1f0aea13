"""Consent gate: versioned, append-only consent timeline."""

from __future__ import annotations

import sqlite3
import threading

from privacy_vault.audit.log import AuditLog
from privacy_vault.core.logging import get_logger
from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.models.entities import (
    AuditAction,
    AuditEntry,
    ConsentEvidence,
    ConsentPurpose,
    ConsentRecord,
    Outcome,
    ResourceKind,
)
from privacy_vault.utils.ids import CONSENT, new_id
from privacy_vault.utils.time import now_ms

logger = get_logger(__name__)

_Key = tuple[str, ConsentPurpose]


class ConsentGate:
    """Stores consent grants and answers ``check`` from an in-memory index.

    Every state change inserts a new row and closes the previous active row
    for the same (subject, purpose); rows are never rewritten otherwise. The
    "latest active" index is only updated after the transaction commits.
    """

    def __init__(self, db: SQLiteDatabase, audit: AuditLog) -> None:
        self.db = db
        self.audit = audit
        self._active: dict[_Key, ConsentRecord] = {}
        self._locks: dict[_Key, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def load(self) -> None:
        rows = self.db.query("SELECT * FROM consent_records WHERE revoked_at IS NULL")
        self._active = {(row["subject_id"], ConsentPurpose(row["purpose"])): _row_to_record(row) for row in rows}
        logger.info("Consent index loaded", extra={"ctx_active": len(self._active)})

    def check(self, subject_id: str, purpose: ConsentPurpose | str) -> bool:
        record = self._active.get((subject_id, ConsentPurpose(purpose)))
        return record is not None and record.granted

    def check_in_transaction(self, conn: sqlite3.Connection, subject_id: str, purpose: ConsentPurpose | str) -> bool:
        """Authoritative re-check against the table, for use just before a durable write."""
        row = conn.execute(
            "SELECT granted FROM consent_records WHERE subject_id = ? AND purpose = ? AND revoked_at IS NULL",
            (subject_id, ConsentPurpose(purpose).value),
        ).fetchone()
        return row is not None and bool(row["granted"])

    def grant(
        self,
        subject_id: str,
        purpose: ConsentPurpose | str,
        policy_version: str,
        evidence: ConsentEvidence | None = None,
    ) -> ConsentRecord:
        purpose = ConsentPurpose(purpose)
        with self._lock_for(subject_id, purpose):
            now = now_ms()
            record = ConsentRecord(
                id=new_id(CONSENT),
                subject_id=subject_id,
                purpose=purpose,
                granted=True,
                policy_version=policy_version,
                granted_at=now,
                revoked_at=None,
                evidence=evidence or ConsentEvidence(),
            )
            with self.db.transaction() as conn:
                previous = self._close_active(conn, subject_id, purpose, now)
                self._insert(conn, record)
                self.audit.record(
                    AuditEntry(
                        subject_id=subject_id,
                        action=AuditAction.CONSENT_GRANTED,
                        resource_kind=ResourceKind.CONSENT_RECORDS,
                        resource_id=record.id,
                        outcome=Outcome.SUCCESS,
                        detail={
                            "purpose": purpose.value,
                            "policy_version": policy_version,
                            "superseded": previous,
                        },
                        timestamp=now,
                    )
                )
            self._active[(subject_id, purpose)] = record
        logger.info("Consent granted", extra={"ctx_subject": subject_id, "ctx_purpose": purpose.value})
        return record

    def withdraw(self, subject_id: str, purpose: ConsentPurpose | str, reason: str | None = None) -> ConsentRecord:
        """Record a withdrawal; effective for every later ``check`` and commit-time re-check."""
        purpose = ConsentPurpose(purpose)
        with self._lock_for(subject_id, purpose):
            now = now_ms()
            current = self._active.get((subject_id, purpose))
            record = ConsentRecord(
                id=new_id(CONSENT),
                subject_id=subject_id,
                purpose=purpose,
                granted=False,
                policy_version=current.policy_version if current else "",
                granted_at=now,
                revoked_at=None,
                evidence=ConsentEvidence(),
                reason=reason,
            )
            with self.db.transaction() as conn:
                previous = self._close_active(conn, subject_id, purpose, now)
                self._insert(conn, record)
                self.audit.record(
                    AuditEntry(
                        subject_id=subject_id,
                        action=AuditAction.CONSENT_WITHDRAWN,
                        resource_kind=ResourceKind.CONSENT_RECORDS,
                        resource_id=record.id,
                        outcome=Outcome.SUCCESS,
                        detail={
                            "purpose": purpose.value,
                            "reason": reason,
                            "superseded": previous,
                            "had_active_grant": bool(current and current.granted),
                        },
                        timestamp=now,
                    )
                )
            self._active[(subject_id, purpose)] = record
        logger.info("Consent withdrawn", extra={"ctx_subject": subject_id, "ctx_purpose": purpose.value})
        return record

    def withdraw_all(self, subject_id: str, reason: str | None = None) -> list[ConsentRecord]:
        granted = [purpose for (subject, purpose), rec in list(self._active.items()) if subject == subject_id and rec.granted]
        return [self.withdraw(subject_id, purpose, reason) for purpose in sorted(granted, key=lambda p: p.value)]

    def needs_reconsent(self, subject_id: str, purpose: ConsentPurpose | str, current_version: str) -> bool:
        record = self._active.get((subject_id, ConsentPurpose(purpose)))
        if record is None or not record.granted:
            return True
        return record.policy_version != current_version

    def active(self, subject_id: str) -> dict[ConsentPurpose, ConsentRecord]:
        return {purpose: rec for (subject, purpose), rec in list(self._active.items()) if subject == subject_id}

    def history(self, subject_id: str, purpose: ConsentPurpose | str | None = None) -> list[ConsentRecord]:
        """Full timeline, oldest first."""
        if purpose is None:
            rows = self.db.query(
                "SELECT * FROM consent_records WHERE subject_id = ? ORDER BY granted_at, rowid",
                [subject_id],
            )
        else:
            rows = self.db.query(
                "SELECT * FROM consent_records WHERE subject_id = ? AND purpose = ? ORDER BY granted_at, rowid",
                [subject_id, ConsentPurpose(purpose).value],
            )
        return [_row_to_record(row) for row in rows]

    def _lock_for(self, subject_id: str, purpose: ConsentPurpose) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((subject_id, purpose), threading.Lock())

    @staticmethod
    def _close_active(conn: sqlite3.Connection, subject_id: str, purpose: ConsentPurpose, now: int) -> str | None:
        row = conn.execute(
            "SELECT id FROM consent_records WHERE subject_id = ? AND purpose = ? AND revoked_at IS NULL",
            (subject_id, purpose.value),
        ).fetchone()
        if row is None:
            return None
        conn.execute("UPDATE consent_records SET revoked_at = ? WHERE id = ?", (now, row["id"]))
        return row["id"]

    @staticmethod
    def _insert(conn: sqlite3.Connection, record: ConsentRecord) -> None:
        conn.execute(
            """
            INSERT INTO consent_records(
                id, subject_id, purpose, granted, policy_version, granted_at, revoked_at,
                origin_address, agent_string, reason
            ) VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?, ?)
            """,
            (
                record.id,
                record.subject_id,
                record.purpose.value,
                int(record.granted),
                record.policy_version,
                record.granted_at,
                record.evidence.origin_address,
                record.evidence.agent_string,
                record.reason,
            ),
        )


def _row_to_record(row: sqlite3.Row) -> ConsentRecord:
    return ConsentRecord(
        id=row["id"],
        subject_id=row["subject_id"],
        purpose=ConsentPurpose(row["purpose"]),
        granted=bool(row["granted"]),
        policy_version=row["policy_version"],
        granted_at=int(row["granted_at"]),
        revoked_at=row["revoked_at"],
        evidence=ConsentEvidence(origin_address=row["origin_address"], agent_string=row["agent_string"]),
        reason=row["reason"],
    )


__all__ = ["ConsentGate"]
