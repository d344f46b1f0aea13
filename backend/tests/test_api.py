"""API integration tests."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from privacy_vault.app import app


@pytest.fixture
def client() -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


def _grant(client: TestClient, subject: str, purpose: str) -> dict:
    resp = client.post(
        "/consents/grant",
        json={"subject_id": subject, "purpose": purpose, "policy_version": "2024-01"},
        headers={"user-agent": "pytest-agent"},
    )
    assert resp.status_code == 200
    return resp.json()


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["documents"] == 0
    assert payload["detection_degraded"] is False
    assert payload["embedding_backend"] == "hashed"
    assert payload["embedding_degraded"] is False


def test_ingest_and_search_flow(client: TestClient) -> None:
    grant = _grant(client, "alice", "document_processing")
    assert grant["granted"] is True
    assert grant["agent_string"] == "pytest-agent"

    text = "Client SSN: 123-45-6789. Quarterly archive review notes."
    ingest_resp = client.post(
        "/ingest",
        json={"subject_id": "alice", "purpose": "document_processing", "text": text, "filename": "notes.txt"},
    )
    assert ingest_resp.status_code == 200
    ingest_data = ingest_resp.json()
    assert ingest_data["resource_kind"] == "documents"
    assert ingest_data["redacted"] is True
    assert [d["entity_kind"] for d in ingest_data["detections"]] == ["SSN"]

    query_resp = client.post("/search", json={"query": "Client SSN: [SSN]. Quarterly archive review notes.", "k": 4})
    assert query_resp.status_code == 200
    results = query_resp.json()["results"]
    assert results, "Expected at least one result"
    assert results[0]["document_id"] == ingest_data["resource_id"]
    assert "123-45-6789" not in results[0]["text"]

    delete_resp = client.delete(f"/documents/{ingest_data['resource_id']}")
    assert delete_resp.status_code == 200
    assert delete_resp.json()["status"] == "ok"
    assert client.delete(f"/documents/{ingest_data['resource_id']}").status_code == 404


def test_ingest_without_consent_is_forbidden(client: TestClient) -> None:
    resp = client.post(
        "/ingest",
        json={"subject_id": "bob", "purpose": "chat_storage", "text": "hi", "resource_hint": "chat_message"},
    )
    assert resp.status_code == 403
    body = resp.json()
    assert body["error"] == "consent_denied"
    assert body["guidance"]

    # a refused write leaves no trace beyond metrics and logs
    assert client.get("/audit", params={"subject_id": "bob"}).json() == []
    assert client.get("/processing", params={"subject_id": "bob"}).json() == []


def test_ingest_with_an_unrelated_purpose_is_forbidden(client: TestClient) -> None:
    _grant(client, "erin", "analytics")
    resp = client.post(
        "/ingest",
        json={"subject_id": "erin", "purpose": "analytics", "text": "quarterly notes", "resource_hint": "document"},
    )
    assert resp.status_code == 403
    assert "document_processing" in resp.json()["guidance"]
    assert client.get("/health").json()["documents"] == 0


def test_consent_endpoints(client: TestClient) -> None:
    _grant(client, "carol", "chat_storage")
    resp = client.post("/consents/withdraw", json={"subject_id": "carol", "purpose": "chat_storage", "reason": "bye"})
    assert resp.status_code == 200
    assert resp.json()["granted"] is False

    listing = client.get("/consents/carol").json()
    assert [record["granted"] for record in listing["history"]] == [True, False]
    assert [record["granted"] for record in listing["active"]] == [False]


def test_subject_rights_endpoints(client: TestClient) -> None:
    _grant(client, "dave", "chat_storage")
    client.post(
        "/ingest",
        json={"subject_id": "dave", "purpose": "chat_storage", "text": "hello", "resource_hint": "chat_message"},
    )

    export = client.get("/subjects/dave/export")
    assert export.status_code == 200
    assert len(export.json()["messages"]) == 1
    assert [entry["purpose"] for entry in export.json()["processing"]] == ["chat_storage"]

    processing = client.get("/processing", params={"subject_id": "dave"}).json()
    assert len(processing) == 1
    assert processing[0]["resource_kind"] == "chat_messages"
    assert processing[0]["legal_basis"] == "consent"

    erase = client.post("/subjects/dave/erase")
    assert erase.status_code == 200
    assert erase.json()["total_deleted"] == 1

    history = client.get("/subjects/dave/audit").json()
    actions = {entry["action"] for entry in history}
    assert {"message_added", "data_exported", "entity_erased", "erasure_requested", "consent_withdrawn"} <= actions


def test_retention_endpoints(client: TestClient) -> None:
    policies = client.get("/retention/policies").json()
    assert {policy["resource_kind"] for policy in policies} == {"documents", "chat_messages"}

    resp = client.put("/retention/policies/chat_messages", json={"ttl_seconds": 30, "auto_delete": True})
    assert resp.status_code == 200
    assert resp.json()["ttl_seconds"] == 30

    assert client.put("/retention/policies/audit_log", json={"ttl_seconds": 30, "auto_delete": True}).status_code == 400
    assert client.put("/retention/policies/chat_messages", json={"ttl_seconds": 0, "auto_delete": True}).status_code == 422

    sweep = client.post("/retention/sweep")
    assert sweep.status_code == 200
    assert sweep.json()["cancelled"] is False

    preview = client.get("/retention/preview").json()
    assert set(preview["kinds"]) == {"documents", "chat_messages"}

    status = client.get("/retention/status").json()
    assert status["running"] is False


def test_audit_summary_and_metrics(client: TestClient) -> None:
    _grant(client, "erin", "analytics")
    summary = client.get("/audit/summary").json()
    assert summary["by_action"]["consent_granted"] == {"success": 1}

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "pvault_ingest_total" in metrics.text
