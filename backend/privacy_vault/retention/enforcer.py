"""Retention sweeps and subject erasure."""

from __future__ import annotations

import sqlite3
import threading
from typing import Any, Callable, Iterable, Sequence

from privacy_vault.audit.log import AuditLog
from privacy_vault.consent.gate import ConsentGate
from privacy_vault.core.errors import PersistenceFailure, PipelineError
from privacy_vault.core.logging import get_logger
from privacy_vault.core.metrics import SWEEP_DELETIONS
from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.documents.store import DocumentStore
from privacy_vault.ingest.types import KindReport, SweepReport
from privacy_vault.messages.store import MessageStore
from privacy_vault.models.entities import AuditAction, AuditEntry, Outcome, ResourceKind
from privacy_vault.retention.policies import MANAGED_KINDS, RetentionPolicyStore
from privacy_vault.utils.time import now_ms

logger = get_logger(__name__)

SYSTEM_SUBJECT = "system"


class RetentionEnforcer:
    """Deletes expired entities through their owning stores.

    Kinds are processed one at a time and each kind commits on its own, so a
    sweep can stop between kinds and a failure in one kind leaves the others
    untouched. Re-running a sweep only finds what is still expired.
    """

    def __init__(
        self,
        db: SQLiteDatabase,
        audit: AuditLog,
        policies: RetentionPolicyStore,
        documents: DocumentStore,
        messages: MessageStore,
        consent: ConsentGate,
    ) -> None:
        self.db = db
        self.audit = audit
        self.policies = policies
        self.documents = documents
        self.messages = messages
        self.consent = consent
        self._sweep_lock = threading.Lock()

    def run_sweep(self, cancel_event: threading.Event | None = None, now: int | None = None) -> SweepReport:
        with self._sweep_lock:
            current = now if now is not None else now_ms()
            report = SweepReport(started_at=now_ms())
            for kind in MANAGED_KINDS:
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    break
                report.kinds.append(self._sweep_kind(kind, current))
            if not report.cancelled:
                report.kinds.append(self._expire_audit(current))
            if report.total_deleted:
                report.reclaimed = self._reclaim()
            report.finished_at = now_ms()
        logger.info(
            "Retention sweep finished",
            extra={"ctx_deleted": report.total_deleted, "ctx_cancelled": report.cancelled},
        )
        return report

    def preview(self, now: int | None = None) -> dict[str, Any]:
        """Expired counts per kind, without deleting anything."""
        current = now if now is not None else now_ms()
        preview: dict[str, Any] = {"as_of": current, "kinds": {}}
        for kind in MANAGED_KINDS:
            policy = self.policies.get(kind)
            preview["kinds"][kind.value] = {
                "expired": len(self._expired_ids(kind, current)),
                "auto_delete": bool(policy and policy.auto_delete),
                "ttl_seconds": policy.ttl_seconds if policy else None,
            }
        return preview

    def erase_subject(self, subject_id: str, reason: str = "erasure request") -> SweepReport:
        """Delete every document and message of a subject and withdraw their consents.

        Writes one ``entity_erased`` entry per deleted entity and one summary
        per resource kind. Consent history itself is kept.
        """
        report = SweepReport(started_at=now_ms())
        for kind in MANAGED_KINDS:
            kind_report = KindReport(resource_kind=kind.value)
            try:
                ids = [record.id for record in self._owner(kind).list_for_subject(subject_id)]
                removed = self._purge(kind, ids, self._erasure_entries(subject_id, kind, reason))
                kind_report.deleted = len(removed)
                kind_report.deleted_ids = [record.id for record in removed]
                SWEEP_DELETIONS.labels(resource_kind=kind.value).inc(len(removed))
            except PipelineError as exc:
                kind_report.error = exc.code
                self._record_failure(subject_id, AuditAction.ERASURE_REQUESTED, kind, exc)
            report.kinds.append(kind_report)
        withdrawn = self.consent.withdraw_all(subject_id, reason=reason)
        logger.info("Subject erased", extra={"ctx_subject": subject_id, "ctx_consents_withdrawn": len(withdrawn)})
        if report.total_deleted:
            report.reclaimed = self._reclaim()
        report.finished_at = now_ms()
        return report

    # Internal helpers -------------------------------------------------

    def _sweep_kind(self, kind: ResourceKind, now: int) -> KindReport:
        kind_report = KindReport(resource_kind=kind.value)
        policy = self.policies.get(kind)
        if policy is None or not policy.auto_delete:
            kind_report.skipped = True
            return kind_report
        try:
            ids = self._expired_ids(kind, now)
            removed = self._purge(kind, ids, self._sweep_entries(kind, policy.ttl_seconds))
            kind_report.deleted = len(removed)
            kind_report.deleted_ids = [record.id for record in removed]
            SWEEP_DELETIONS.labels(resource_kind=kind.value).inc(len(removed))
        # one kind's failure must not stop the sweep; it is retried next run
        except Exception as exc:
            logger.exception("Retention sweep failed for %s", kind.value)
            kind_report.error = getattr(exc, "code", type(exc).__name__)
            self._record_failure(SYSTEM_SUBJECT, AuditAction.RETENTION_SWEEP, kind, exc)
        return kind_report

    def _expire_audit(self, now: int) -> KindReport:
        kind_report = KindReport(resource_kind=ResourceKind.AUDIT_LOG.value)
        try:
            kind_report.deleted = self.audit.expire_older_than_floor(now)
        except PipelineError as exc:
            logger.error("Audit expiry failed: %s", exc.message)
            kind_report.error = exc.code
        return kind_report

    def _owner(self, kind: ResourceKind) -> DocumentStore | MessageStore:
        return self.documents if kind is ResourceKind.DOCUMENTS else self.messages

    def _expired_ids(self, kind: ResourceKind, now: int) -> list[str]:
        return [record.id for record in self._owner(kind).expired(now)]

    def _purge(self, kind: ResourceKind, ids: Sequence[str], entries: Callable[[list], Iterable[AuditEntry]]) -> list:
        """Delete through the owning store; with nothing to delete the summary entries are still written."""
        if ids:
            return self._owner(kind).purge(ids, entries)
        with self.db.transaction():
            for entry in entries([]):
                self.audit.record(entry)
        return []

    @staticmethod
    def _sweep_entries(kind: ResourceKind, ttl_seconds: int) -> Callable[[list], list[AuditEntry]]:
        def build(records: list) -> list[AuditEntry]:
            return [
                AuditEntry(
                    subject_id=SYSTEM_SUBJECT,
                    action=AuditAction.RETENTION_SWEEP,
                    resource_kind=kind,
                    outcome=Outcome.SUCCESS,
                    detail={
                        "deleted": len(records),
                        "deleted_ids": [record.id for record in records],
                        "ttl_seconds": ttl_seconds,
                    },
                )
            ]

        return build

    @staticmethod
    def _erasure_entries(subject_id: str, kind: ResourceKind, reason: str) -> Callable[[list], Iterable[AuditEntry]]:
        def build(records: list) -> list[AuditEntry]:
            entries = [
                AuditEntry(
                    subject_id=subject_id,
                    action=AuditAction.ENTITY_ERASED,
                    resource_kind=kind,
                    resource_id=record.id,
                    outcome=Outcome.SUCCESS,
                    detail={"reason": reason},
                )
                for record in records
            ]
            entries.append(
                AuditEntry(
                    subject_id=subject_id,
                    action=AuditAction.ERASURE_REQUESTED,
                    resource_kind=kind,
                    outcome=Outcome.SUCCESS,
                    detail={"deleted": len(records), "reason": reason},
                )
            )
            return entries

        return build

    def _record_failure(self, subject_id: str, action: AuditAction, kind: ResourceKind, exc: BaseException) -> None:
        try:
            self.audit.record(
                AuditEntry(
                    subject_id=subject_id,
                    action=action,
                    resource_kind=kind,
                    outcome=Outcome.FAILURE,
                    detail={"error": getattr(exc, "code", type(exc).__name__)},
                )
            )
        except PipelineError as audit_exc:
            logger.error("Could not record %s failure: %s", action.value, audit_exc.message)

    def _reclaim(self) -> bool:
        try:
            self.db.vacuum()
        except (sqlite3.Error, PersistenceFailure, RuntimeError) as exc:
            logger.warning("Storage reclamation skipped: %s", exc)
            return False
        return True


__all__ = ["RetentionEnforcer", "SYSTEM_SUBJECT"]
