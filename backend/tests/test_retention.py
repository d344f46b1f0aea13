"""Tests for retention policies, sweeps, erasure and the scheduler."""

from __future__ import annotations

import threading
import time

import pytest

from privacy_vault.audit.log import AuditFilter
from privacy_vault.ingest.pipeline import PrivacyPipeline
from privacy_vault.core.errors import PersistenceFailure
from privacy_vault.models.entities import AuditAction, Outcome, ResourceKind
from privacy_vault.pii.records import list_detections
from privacy_vault.retention.scheduler import RetentionScheduler
from privacy_vault.utils.time import now_ms

DOC_TEXT = "Client SSN: 123-45-6789. Retention review notes for the archive."


def _sweep_entries(pipeline: PrivacyPipeline, kind: ResourceKind):
    return pipeline.audit.query(AuditFilter(action=AuditAction.RETENTION_SWEEP, resource_kind=kind), limit=None)


def test_default_policies_are_loaded(pipeline: PrivacyPipeline) -> None:
    policies = {policy.resource_kind: policy for policy in pipeline.policies.all()}
    assert set(policies) == {ResourceKind.DOCUMENTS, ResourceKind.CHAT_MESSAGES}
    assert policies[ResourceKind.CHAT_MESSAGES].auto_delete
    assert not policies[ResourceKind.DOCUMENTS].auto_delete


def test_set_policy_validates(pipeline: PrivacyPipeline) -> None:
    with pytest.raises(ValueError):
        pipeline.policies.set_policy(ResourceKind.AUDIT_LOG, 60, True)
    with pytest.raises(ValueError):
        pipeline.policies.set_policy(ResourceKind.DOCUMENTS, 0, True)
    policy = pipeline.policies.set_policy(ResourceKind.DOCUMENTS, 60, True, actor="admin")
    assert pipeline.policies.get(ResourceKind.DOCUMENTS) == policy
    entry = pipeline.audit.query(AuditFilter(action=AuditAction.RETENTION_POLICY_SET))[0]
    assert entry.subject_id == "admin"
    assert entry.detail["ttl_seconds"] == 60


def test_one_second_ttl_document_is_swept(pipeline: PrivacyPipeline, consented: str) -> None:
    pipeline.policies.set_policy(ResourceKind.DOCUMENTS, 1, True)
    result = pipeline.ingest_text(consented, "document_processing", DOC_TEXT, "document")
    assert result.retention_expires_at is not None

    time.sleep(2)
    report = pipeline.run_sweep()

    documents = next(kind for kind in report.kinds if kind.resource_kind == "documents")
    assert documents.deleted_ids == [result.resource_id]
    assert pipeline.documents.get(result.resource_id) is None
    assert pipeline.documents.chunks(result.resource_id) == []
    assert list_detections(pipeline.db, source_entity_id=result.resource_id) == []
    assert pipeline.search(DOC_TEXT) == []
    assert report.reclaimed

    entries = _sweep_entries(pipeline, ResourceKind.DOCUMENTS)
    assert len(entries) == 1
    assert entries[0].detail["deleted_ids"] == [result.resource_id]
    assert entries[0].detail["ttl_seconds"] == 1


def test_sweep_is_idempotent(pipeline: PrivacyPipeline, consented: str) -> None:
    pipeline.policies.set_policy(ResourceKind.CHAT_MESSAGES, 60, True)
    message = pipeline.ingest_text(consented, "chat_storage", "hello there", "chat_message")
    later = now_ms() + 120_000

    first = pipeline.enforcer.run_sweep(now=later)
    second = pipeline.enforcer.run_sweep(now=later)

    assert first.total_deleted == 1
    assert second.total_deleted == 0
    assert pipeline.messages.get(message.resource_id) is None
    summaries = _sweep_entries(pipeline, ResourceKind.CHAT_MESSAGES)
    assert [entry.detail["deleted"] for entry in summaries] == [0, 1]


def test_auto_delete_off_skips_kind(pipeline: PrivacyPipeline, consented: str) -> None:
    result = pipeline.ingest_text(consented, "document_processing", DOC_TEXT, "document")
    report = pipeline.enforcer.run_sweep(now=now_ms() + 10 * 365 * 24 * 3600 * 1000)
    documents = next(kind for kind in report.kinds if kind.resource_kind == "documents")
    assert documents.skipped
    assert pipeline.documents.get(result.resource_id) is not None


def test_policy_change_affects_new_writes_until_restamped(pipeline: PrivacyPipeline, consented: str) -> None:
    message = pipeline.ingest_text(consented, "chat_storage", "first message", "chat_message")
    original_expiry = pipeline.messages.get(message.resource_id).retention_expires_at

    pipeline.policies.set_policy(ResourceKind.CHAT_MESSAGES, 5, True)
    assert pipeline.messages.get(message.resource_id).retention_expires_at == original_expiry

    updated = pipeline.policies.restamp(ResourceKind.CHAT_MESSAGES, actor="admin")
    assert updated == 1
    stored = pipeline.messages.get(message.resource_id)
    assert stored.retention_expires_at == stored.created_at + 5_000
    entry = pipeline.audit.query(AuditFilter(action=AuditAction.RETENTION_RESTAMPED))[0]
    assert entry.detail == {"updated": 1, "ttl_seconds": 5}


def test_preview_counts_without_deleting(pipeline: PrivacyPipeline, consented: str) -> None:
    pipeline.ingest_text(consented, "chat_storage", "hello there", "chat_message")
    preview = pipeline.enforcer.preview(now=now_ms() + 365 * 24 * 3600 * 1000)
    assert preview["kinds"]["chat_messages"]["expired"] == 1
    assert preview["kinds"]["documents"]["expired"] == 0
    assert pipeline.messages.count() == 1


def test_cancelled_sweep_deletes_nothing(pipeline: PrivacyPipeline, consented: str) -> None:
    pipeline.ingest_text(consented, "chat_storage", "hello there", "chat_message")
    cancel = threading.Event()
    cancel.set()
    report = pipeline.enforcer.run_sweep(cancel_event=cancel, now=now_ms() + 365 * 24 * 3600 * 1000)
    assert report.cancelled
    assert report.kinds == []
    assert pipeline.messages.count() == 1


def test_erase_subject(pipeline: PrivacyPipeline, consented: str) -> None:
    document = pipeline.ingest_text(consented, "document_processing", DOC_TEXT, "document")
    message = pipeline.ingest_text(consented, "chat_storage", "call me at 555-123-4567", "chat_message")
    pipeline.grant_consent("bystander", "chat_storage", "2024-01")
    kept = pipeline.ingest_text("bystander", "chat_storage", "unrelated note", "chat_message")

    report = pipeline.erase_subject(consented)

    assert report.total_deleted == 2
    assert pipeline.documents.list_for_subject(consented) == []
    assert pipeline.messages.list_for_subject(consented) == []
    assert list_detections(pipeline.db, subject_id=consented) == []
    assert pipeline.messages.get(kept.resource_id) is not None
    assert not pipeline.consent.check(consented, "document_processing")
    assert not pipeline.consent.check(consented, "chat_storage")
    assert len(pipeline.consent.history(consented)) == 4

    erased = pipeline.audit.query(AuditFilter(subject_id=consented, action=AuditAction.ENTITY_ERASED))
    assert {entry.resource_id for entry in erased} == {document.resource_id, message.resource_id}
    summaries = pipeline.audit.query(AuditFilter(subject_id=consented, action=AuditAction.ERASURE_REQUESTED))
    assert {entry.resource_kind for entry in summaries} == {ResourceKind.DOCUMENTS, ResourceKind.CHAT_MESSAGES}
    # the record of processing outlives the data it describes
    assert {record.resource_id for record in pipeline.processing.for_subject(consented)} == {
        document.resource_id,
        message.resource_id,
    }


def test_erase_subject_without_data_still_audits(pipeline: PrivacyPipeline) -> None:
    report = pipeline.erase_subject("ghost")
    assert report.total_deleted == 0
    summaries = pipeline.audit.query(AuditFilter(subject_id="ghost", action=AuditAction.ERASURE_REQUESTED))
    assert len(summaries) == 2
    assert all(entry.detail["deleted"] == 0 for entry in summaries)


def test_scheduler_runs_on_trigger(pipeline: PrivacyPipeline) -> None:
    scheduler = RetentionScheduler(pipeline.enforcer, interval_seconds=3600)
    scheduler.start()
    try:
        assert scheduler.running
        scheduler.trigger()
        deadline = time.monotonic() + 5
        while scheduler.last_report is None and time.monotonic() < deadline:
            time.sleep(0.05)
        assert scheduler.last_report is not None
        assert scheduler.status()["last_error"] is None
    finally:
        scheduler.stop()
    assert not scheduler.running


def _failing_purge(*args, **kwargs):
    raise PersistenceFailure("disk I/O error")


def test_failure_in_one_kind_does_not_stop_the_sweep(
    pipeline: PrivacyPipeline, consented: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    pipeline.policies.set_policy(ResourceKind.DOCUMENTS, 60, True)
    pipeline.policies.set_policy(ResourceKind.CHAT_MESSAGES, 60, True)
    document = pipeline.ingest_text(consented, "document_processing", DOC_TEXT, "document")
    message = pipeline.ingest_text(consented, "chat_storage", "hello there", "chat_message")
    monkeypatch.setattr(pipeline.messages, "purge", _failing_purge)

    report = pipeline.enforcer.run_sweep(now=now_ms() + 120_000)

    by_kind = {kind.resource_kind: kind for kind in report.kinds}
    assert by_kind["documents"].deleted_ids == [document.resource_id]
    assert by_kind["documents"].error is None
    assert by_kind["chat_messages"].error == "persistence_failure"
    assert by_kind["chat_messages"].deleted == 0
    assert pipeline.documents.get(document.resource_id) is None
    assert pipeline.messages.get(message.resource_id) is not None

    failed = [entry for entry in _sweep_entries(pipeline, ResourceKind.CHAT_MESSAGES) if entry.outcome is Outcome.FAILURE]
    assert len(failed) == 1
    assert failed[0].detail["error"] == "persistence_failure"
    swept = _sweep_entries(pipeline, ResourceKind.DOCUMENTS)
    assert [entry.outcome for entry in swept] == [Outcome.SUCCESS]


def test_erasure_continues_past_a_failing_kind(
    pipeline: PrivacyPipeline, consented: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    document = pipeline.ingest_text(consented, "document_processing", DOC_TEXT, "document")
    message = pipeline.ingest_text(consented, "chat_storage", "hello there", "chat_message")
    monkeypatch.setattr(pipeline.documents, "purge", _failing_purge)

    report = pipeline.erase_subject(consented)

    by_kind = {kind.resource_kind: kind for kind in report.kinds}
    assert by_kind["documents"].error == "persistence_failure"
    assert by_kind["chat_messages"].deleted_ids == [message.resource_id]
    assert pipeline.documents.get(document.resource_id) is not None
    assert pipeline.messages.get(message.resource_id) is None
    assert not pipeline.consent.check(consented, "chat_storage")

    failures = pipeline.audit.query(
        AuditFilter(subject_id=consented, action=AuditAction.ERASURE_REQUESTED, outcome=Outcome.FAILURE)
    )
    assert [entry.resource_kind for entry in failures] == [ResourceKind.DOCUMENTS]
    assert failures[0].detail["error"] == "persistence_failure"
