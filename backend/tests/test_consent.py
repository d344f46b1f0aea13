"""Tests for the consent gate."""

from __future__ import annotations

import pytest

from privacy_vault.audit.log import AuditFilter, AuditLog
from privacy_vault.consent.gate import ConsentGate
from privacy_vault.core.errors import PersistenceFailure
from privacy_vault.db.sqlite import SQLiteDatabase
from privacy_vault.models.entities import AuditAction, ConsentEvidence, ConsentPurpose


@pytest.fixture
def audit(db: SQLiteDatabase) -> AuditLog:
    return AuditLog(db, floor_seconds=3600)


@pytest.fixture
def gate(db: SQLiteDatabase, audit: AuditLog) -> ConsentGate:
    consent = ConsentGate(db, audit)
    consent.load()
    return consent


def test_unknown_subject_is_denied(gate: ConsentGate) -> None:
    assert not gate.check("nobody", ConsentPurpose.CHAT_STORAGE)


def test_grant_then_withdraw(gate: ConsentGate, audit: AuditLog) -> None:
    evidence = ConsentEvidence(origin_address="10.0.0.1", agent_string="pytest")
    granted = gate.grant("alice", "chat_storage", "v1", evidence)
    assert granted.granted and granted.active
    assert gate.check("alice", ConsentPurpose.CHAT_STORAGE)
    assert not gate.check("alice", ConsentPurpose.ANALYTICS)

    withdrawn = gate.withdraw("alice", ConsentPurpose.CHAT_STORAGE, reason="changed mind")
    assert not withdrawn.granted
    assert withdrawn.reason == "changed mind"
    assert not gate.check("alice", ConsentPurpose.CHAT_STORAGE)

    history = gate.history("alice")
    assert [record.granted for record in history] == [True, False]
    assert history[0].revoked_at is not None
    assert history[0].evidence == evidence
    assert history[1].revoked_at is None

    actions = [entry.action for entry in audit.query(AuditFilter(subject_id="alice"))]
    assert actions == [AuditAction.CONSENT_WITHDRAWN, AuditAction.CONSENT_GRANTED]


def test_regrant_supersedes_previous_version(gate: ConsentGate) -> None:
    gate.grant("bob", "document_processing", "v1")
    gate.grant("bob", "document_processing", "v2")
    active = gate.active("bob")
    assert active[ConsentPurpose.DOCUMENT_PROCESSING].policy_version == "v2"
    assert len(gate.history("bob", "document_processing")) == 2
    assert not gate.needs_reconsent("bob", "document_processing", "v2")
    assert gate.needs_reconsent("bob", "document_processing", "v3")
    assert gate.needs_reconsent("bob", "analytics", "v2")


def test_withdraw_without_grant_is_recorded(gate: ConsentGate, audit: AuditLog) -> None:
    record = gate.withdraw("carol", "analytics")
    assert not record.granted
    entry = audit.query(AuditFilter(subject_id="carol"))[0]
    assert entry.detail["had_active_grant"] is False


def test_withdraw_all(gate: ConsentGate) -> None:
    gate.grant("dave", "chat_storage", "v1")
    gate.grant("dave", "analytics", "v1")
    withdrawn = gate.withdraw_all("dave", reason="erasure")
    assert sorted(record.purpose.value for record in withdrawn) == ["analytics", "chat_storage"]
    assert not gate.check("dave", "chat_storage")
    assert not gate.check("dave", "analytics")


def test_index_survives_reload(db: SQLiteDatabase, audit: AuditLog, gate: ConsentGate) -> None:
    gate.grant("erin", "chat_storage", "v1")
    gate.grant("erin", "analytics", "v1")
    gate.withdraw("erin", "analytics")
    reloaded = ConsentGate(db, audit)
    reloaded.load()
    assert reloaded.check("erin", "chat_storage")
    assert not reloaded.check("erin", "analytics")


def test_check_in_transaction_sees_committed_withdrawal(db: SQLiteDatabase, gate: ConsentGate) -> None:
    gate.grant("frank", "chat_storage", "v1")
    with db.transaction() as conn:
        assert gate.check_in_transaction(conn, "frank", "chat_storage")
    gate.withdraw("frank", "chat_storage")
    with db.transaction() as conn:
        assert not gate.check_in_transaction(conn, "frank", "chat_storage")


def test_history_rows_cannot_be_rewritten_or_deleted(db: SQLiteDatabase, gate: ConsentGate) -> None:
    record = gate.grant("gina", "chat_storage", "v1")
    with pytest.raises(PersistenceFailure):
        with db.transaction() as conn:
            conn.execute("UPDATE consent_records SET policy_version = 'forged' WHERE id = ?", (record.id,))
    with pytest.raises(PersistenceFailure):
        with db.transaction() as conn:
            conn.execute("DELETE FROM consent_records WHERE id = ?", (record.id,))
    assert gate.history("gina")[0].policy_version == "v1"


def test_unknown_purpose_is_rejected(gate: ConsentGate) -> None:
    with pytest.raises(ValueError):
        gate.grant("hank", "marketing", "v1")


def test_failed_grant_leaves_index_untouched(db: SQLiteDatabase, audit: AuditLog, gate: ConsentGate) -> None:
    db.execute(
        "CREATE TEMP TRIGGER block_consent BEFORE INSERT ON consent_records "
        "BEGIN SELECT RAISE(ABORT, 'disk full'); END"
    )
    with pytest.raises(PersistenceFailure):
        gate.grant("ivan", "chat_storage", "v1")
    assert not gate.check("ivan", "chat_storage")
    assert audit.count(AuditFilter(subject_id="ivan")) == 0
