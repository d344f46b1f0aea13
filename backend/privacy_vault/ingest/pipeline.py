"""Ingest pipeline orchestration."""

from __future__ import annotations

import sqlite3
import time
from dataclasses import asdict
from typing import Any, Callable, TypeVar

from privacy_vault.audit.log import DEFAULT_QUERY_LIMIT, AuditLog
from privacy_vault.audit.processing import ProcessingRegister
from privacy_vault.consent.gate import ConsentGate
from privacy_vault.core.config import Settings
from privacy_vault.core.errors import (
    AuditWriteFailure,
    ConsentDenied,
    NotFound,
    PipelineError,
)
from privacy_vault.core.logging import get_logger
from privacy_vault.core.metrics import CONSENT_DENIALS, INGEST_COUNT, INGEST_DURATION
from privacy_vault.core.retry import with_retry
from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.documents.store import DocumentStore
from privacy_vault.ingest.embeddings import EmbeddingModel, RemoteEmbeddingClient
from privacy_vault.ingest.types import IngestResult, SearchHit, SourceMetadata, SubjectExport, SweepReport
from privacy_vault.messages.store import MessageStore
from privacy_vault.models.entities import (
    AuditAction,
    AuditEntry,
    ConsentEvidence,
    ConsentPurpose,
    ConsentRecord,
    DocumentRecord,
    Outcome,
    ProcessingRecord,
    ResourceHint,
    ResourceKind,
)
from privacy_vault.pii.engine import PiiEngine, redact, statistics
from privacy_vault.pii.records import list_detections
from privacy_vault.retention.enforcer import RetentionEnforcer
from privacy_vault.retention.policies import RetentionPolicyStore
from privacy_vault.retrieval.vector_index import VectorIndex
from privacy_vault.security.encryption import TextCipher
from privacy_vault.utils.time import now_ms

logger = get_logger(__name__)

T = TypeVar("T")

_KIND_FOR_HINT = {
    ResourceHint.DOCUMENT: ResourceKind.DOCUMENTS,
    ResourceHint.CHAT_MESSAGE: ResourceKind.CHAT_MESSAGES,
}
_PURPOSE_FOR_HINT = {
    ResourceHint.DOCUMENT: ConsentPurpose.DOCUMENT_PROCESSING,
    ResourceHint.CHAT_MESSAGE: ConsentPurpose.CHAT_STORAGE,
}
_ADDED_ACTION = {
    ResourceKind.DOCUMENTS: AuditAction.DOCUMENT_ADDED,
    ResourceKind.CHAT_MESSAGES: AuditAction.MESSAGE_ADDED,
}
_SECURITY_MEASURES = ["aes-256-gcm at rest", "per-subject keys", "consent re-check at commit"]


class PrivacyPipeline:
    """Single entry point for writes of user content and the reads built on it.

    Ingest order for one entity: consent check, detection, optional
    redaction, consent re-check inside the write transaction, persist, record
    of processing, audit. The data rows, the processing record and the audit
    entry commit together. Each resource kind accepts exactly one purpose.
    """

    def __init__(
        self,
        db: SQLiteDatabase,
        settings: Settings,
        audit: AuditLog,
        consent: ConsentGate,
        pii: PiiEngine,
        documents: DocumentStore,
        messages: MessageStore,
        policies: RetentionPolicyStore,
        enforcer: RetentionEnforcer,
        processing: ProcessingRegister,
    ) -> None:
        self.db = db
        self.settings = settings
        self.audit = audit
        self.consent = consent
        self.pii = pii
        self.documents = documents
        self.messages = messages
        self.policies = policies
        self.enforcer = enforcer
        self.processing = processing

    @classmethod
    def build(cls, settings: Settings, db: SQLiteDatabase | None = None) -> "PrivacyPipeline":
        database = db or SQLiteDatabase(settings.db_path)
        database.ensure_schema()
        audit = AuditLog(database, settings.audit_floor_seconds)
        consent = ConsentGate(database, audit)
        consent.load()
        embedding_model = EmbeddingModel.get(
            settings.embedding_model, settings.embedding_dim, backend=settings.embedding_backend
        )
        cipher = TextCipher.from_key_file(settings.resolved_key_path())
        remote = None
        if settings.remote_embedding_url:
            remote = RemoteEmbeddingClient(
                settings.remote_embedding_url,
                model_name=f"remote:{settings.embedding_model}",
                dim=embedding_model.dim,
                timeout=settings.remote_embedding_timeout,
            )
        documents = DocumentStore(
            database,
            settings,
            audit,
            embedding_model=embedding_model,
            vector_index=VectorIndex(embedding_model.dim),
            remote=remote,
            cipher=cipher,
        )
        documents.load()
        messages = MessageStore(database, audit, cipher)
        policies = RetentionPolicyStore(
            database,
            audit,
            settings,
            restampers={
                ResourceKind.DOCUMENTS: documents.restamp,
                ResourceKind.CHAT_MESSAGES: messages.restamp,
            },
        )
        policies.load()
        enforcer = RetentionEnforcer(database, audit, policies, documents, messages, consent)
        return cls(
            database,
            settings,
            audit,
            consent,
            PiiEngine(settings),
            documents,
            messages,
            policies,
            enforcer,
            ProcessingRegister(database),
        )

    def close(self) -> None:
        self.db.close()

    # Ingestion ----------------------------------------------------------

    def ingest_text(
        self,
        subject_id: str,
        purpose: ConsentPurpose | str,
        text: str,
        resource_hint: ResourceHint | str,
        metadata: SourceMetadata | None = None,
    ) -> IngestResult:
        purpose = ConsentPurpose(purpose)
        hint = ResourceHint(resource_hint)
        kind = _KIND_FOR_HINT[hint]
        started = time.perf_counter()
        try:
            result = self._ingest(subject_id, purpose, text, hint, kind, metadata or SourceMetadata())
        except ConsentDenied:
            INGEST_COUNT.labels(resource_kind=kind.value, outcome="denied").inc()
            raise
        except PipelineError:
            INGEST_COUNT.labels(resource_kind=kind.value, outcome="failure").inc()
            raise
        INGEST_COUNT.labels(resource_kind=kind.value, outcome="success").inc()
        INGEST_DURATION.labels(resource_kind=kind.value).observe(time.perf_counter() - started)
        return result

    def _ingest(
        self,
        subject_id: str,
        purpose: ConsentPurpose,
        text: str,
        hint: ResourceHint,
        kind: ResourceKind,
        metadata: SourceMetadata,
    ) -> IngestResult:
        # the purpose is fixed by what is being stored, not by what the caller claims
        required = _PURPOSE_FOR_HINT[hint]
        if purpose is not required:
            CONSENT_DENIALS.labels(purpose=required.value).inc()
            logger.info(
                "Ingest denied",
                extra={"ctx_subject": subject_id, "ctx_purpose": purpose.value, "ctx_required": required.value},
            )
            raise ConsentDenied(
                subject_id, required.value, reason=f"'{purpose.value}' does not cover {hint.value} ingest"
            )
        if not self.consent.check(subject_id, required):
            CONSENT_DENIALS.labels(purpose=required.value).inc()
            logger.info("Ingest denied", extra={"ctx_subject": subject_id, "ctx_purpose": required.value})
            raise ConsentDenied(subject_id, required.value)

        scan = self.pii.scan(text)
        redact_enabled = self.settings.redact_documents if hint is ResourceHint.DOCUMENT else self.settings.redact_messages
        stored_text = redact(text, scan.detections) if redact_enabled else text
        redacted = redact_enabled and bool(scan.detections)
        expires_at = self.policies.expiry_for(kind, now_ms())
        audit_detail: dict[str, Any] = {
            "purpose": purpose.value,
            "redacted": redacted,
            "pii_counts": statistics(scan.detections),
            "engines": scan.engines,
            "detection_degraded": scan.degraded,
        }
        if scan.degraded:
            audit_detail["degraded_reason"] = scan.degraded_reason

        def guard(conn: sqlite3.Connection) -> None:
            if not self.consent.check_in_transaction(conn, subject_id, required):
                raise ConsentDenied(subject_id, required.value, reason="withdrawn before commit")

        allow_remote = hint is ResourceHint.DOCUMENT and self.consent.check(subject_id, ConsentPurpose.REMOTE_INFERENCE)
        policy = self.policies.get(kind)
        categories = [hint.value, *sorted({detection.entity_kind.value for detection in scan.detections})]
        recipients = [self.settings.remote_embedding_url] if allow_remote and self.documents.remote is not None else []

        def register(resource_id: str) -> None:
            self.processing.record(
                ProcessingRecord(
                    subject_id=subject_id,
                    purpose=required,
                    resource_kind=kind,
                    resource_id=resource_id,
                    data_categories=categories,
                    retention_seconds=policy.ttl_seconds if policy is not None else None,
                    recipients=recipients,
                    security_measures=_SECURITY_MEASURES + (["redaction"] if redacted else []),
                )
            )

        try:
            if hint is ResourceHint.DOCUMENT:
                record = self._retry(
                    lambda: self.documents.add_document(
                        subject_id,
                        stored_text,
                        metadata,
                        scan.detections,
                        expires_at,
                        raw_byte_size=len(text.encode("utf-8")),
                        redacted=redacted,
                        allow_remote=allow_remote,
                        guard=guard,
                        on_write=register,
                        audit_detail=audit_detail,
                    )
                )
                resource_id, chunk_count = record.id, record.chunk_count
            else:
                message = self._retry(
                    lambda: self.messages.add_message(
                        subject_id,
                        stored_text,
                        metadata.session_id,
                        scan.detections,
                        expires_at,
                        redacted=redacted,
                        guard=guard,
                        on_write=register,
                        audit_detail=audit_detail,
                    )
                )
                resource_id, chunk_count = message.id, 0
        except ConsentDenied as exc:
            CONSENT_DENIALS.labels(purpose=required.value).inc()
            self._record(
                AuditEntry(
                    subject_id=subject_id,
                    action=AuditAction.INGEST_ABORTED,
                    resource_kind=kind,
                    outcome=Outcome.FAILURE,
                    detail={"purpose": required.value, "stage": "commit", "reason": exc.reason},
                )
            )
            logger.info("Ingest aborted at commit", extra={"ctx_subject": subject_id, "ctx_purpose": required.value})
            raise
        except PipelineError as exc:
            self._record_failure(subject_id, _ADDED_ACTION[kind], kind, exc)
            raise

        return IngestResult(
            resource_kind=kind.value,
            resource_id=resource_id,
            detections=scan.detections,
            redacted=redacted,
            chunk_count=chunk_count,
            retention_expires_at=expires_at,
            detection_degraded=scan.degraded,
        )

    # Consent ------------------------------------------------------------

    def grant_consent(
        self,
        subject_id: str,
        purpose: ConsentPurpose | str,
        policy_version: str,
        evidence: ConsentEvidence | None = None,
    ) -> ConsentRecord:
        return self._retry(lambda: self.consent.grant(subject_id, purpose, policy_version, evidence))

    def withdraw_consent(self, subject_id: str, purpose: ConsentPurpose | str, reason: str | None = None) -> ConsentRecord:
        return self._retry(lambda: self.consent.withdraw(subject_id, purpose, reason))

    # Retrieval and deletion ---------------------------------------------

    def search(self, query_text: str, k: int = 5, subject_id: str | None = None) -> list[SearchHit]:
        allow_remote = subject_id is not None and self.consent.check(subject_id, ConsentPurpose.REMOTE_INFERENCE)
        return self.documents.search(query_text, k=k, allow_remote=allow_remote)

    def delete_document(self, document_id: str, subject_id: str | None = None) -> DocumentRecord:
        record = self.documents.get(document_id)
        if record is None or (subject_id is not None and record.subject_id != subject_id):
            raise NotFound(f"Document '{document_id}' does not exist")
        try:
            return self._retry(lambda: self.documents.delete_document(document_id))
        except NotFound:
            raise
        except PipelineError as exc:
            self._record_failure(record.subject_id, AuditAction.DOCUMENT_DELETED, ResourceKind.DOCUMENTS, exc, document_id)
            raise

    def delete_message(self, message_id: str, subject_id: str | None = None) -> None:
        record = self.messages.get(message_id)
        if record is None or (subject_id is not None and record.subject_id != subject_id):
            raise NotFound(f"Message '{message_id}' does not exist")
        try:
            self._retry(lambda: self.messages.delete_message(message_id))
        except NotFound:
            raise
        except PipelineError as exc:
            self._record_failure(record.subject_id, AuditAction.MESSAGE_DELETED, ResourceKind.CHAT_MESSAGES, exc, message_id)
            raise

    # Subject rights -----------------------------------------------------

    def export_subject_data(self, subject_id: str) -> SubjectExport:
        export = SubjectExport(subject_id=subject_id, generated_at=now_ms())
        export.consents = [_consent_dict(record) for record in self.consent.history(subject_id)]
        for document in self.documents.list_for_subject(subject_id):
            payload = asdict(document)
            payload["chunks"] = [
                {"index": chunk.index, "start_char": chunk.start_char, "end_char": chunk.end_char, "text": chunk.text}
                for chunk in self.documents.chunks(document.id)
            ]
            export.documents.append(payload)
        export.messages = [asdict(message) for message in self.messages.list_for_subject(subject_id)]
        export.detections = [
            {
                "id": detection.id,
                "source_entity_id": detection.source_entity_id,
                "entity_kind": detection.entity_kind.value,
                "confidence": detection.confidence,
                "span_start": detection.span_start,
                "span_end": detection.span_end,
                "detecting_engine": detection.detecting_engine,
            }
            for detection in list_detections(self.db, subject_id=subject_id)
        ]
        export.audit = [_audit_dict(entry) for entry in self.audit.history(subject_id, limit=None)]
        export.processing = [_processing_dict(entry) for entry in self.processing.for_subject(subject_id)]
        self._record(
            AuditEntry(
                subject_id=subject_id,
                action=AuditAction.DATA_EXPORTED,
                resource_kind=ResourceKind.SUBJECT,
                resource_id=subject_id,
                outcome=Outcome.SUCCESS,
                detail={
                    "documents": len(export.documents),
                    "messages": len(export.messages),
                    "consents": len(export.consents),
                    "detections": len(export.detections),
                    "processing_records": len(export.processing),
                },
            )
        )
        return export

    def get_audit_history(self, subject_id: str, limit: int = DEFAULT_QUERY_LIMIT) -> list[AuditEntry]:
        return self.audit.history(subject_id, limit=limit)

    def erase_subject(self, subject_id: str, reason: str = "erasure request") -> SweepReport:
        return self.enforcer.erase_subject(subject_id, reason=reason)

    def run_sweep(self) -> SweepReport:
        return self.enforcer.run_sweep()

    # Internal helpers -------------------------------------------------

    def _retry(self, operation: Callable[[], T]) -> T:
        return with_retry(operation, retries=self.settings.write_retries, backoff=self.settings.write_backoff_seconds)

    def _record(self, entry: AuditEntry) -> int:
        return self._retry(lambda: self.audit.record(entry))

    def _record_failure(
        self,
        subject_id: str,
        action: AuditAction,
        kind: ResourceKind,
        exc: PipelineError,
        resource_id: str | None = None,
    ) -> None:
        """Record a failed write after its rollback; if even that fails, the original error still surfaces."""
        try:
            self.audit.record(
                AuditEntry(
                    subject_id=subject_id,
                    action=action,
                    resource_kind=kind,
                    resource_id=resource_id,
                    outcome=Outcome.FAILURE,
                    detail={"error": exc.code},
                )
            )
        except AuditWriteFailure:
            logger.error("Could not record %s failure", action.value, extra={"ctx_error": exc.code})


def _consent_dict(record: ConsentRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "purpose": record.purpose.value,
        "granted": record.granted,
        "policy_version": record.policy_version,
        "granted_at": record.granted_at,
        "revoked_at": record.revoked_at,
        "reason": record.reason,
        "origin_address": record.evidence.origin_address,
        "agent_string": record.evidence.agent_string,
    }


def _audit_dict(entry: AuditEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "timestamp": entry.timestamp,
        "subject_id": entry.subject_id,
        "action": entry.action.value,
        "resource_kind": entry.resource_kind.value,
        "resource_id": entry.resource_id,
        "outcome": entry.outcome.value,
        "detail": entry.detail,
    }



def _processing_dict(entry: ProcessingRecord) -> dict[str, Any]:
    payload = asdict(entry)
    payload["purpose"] = entry.purpose.value
    payload["resource_kind"] = entry.resource_kind.value
    return payload

__all__ = ["PrivacyPipeline"]
