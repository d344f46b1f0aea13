"""CLI tests with the HTTP layer stubbed out."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from privacy_vault.cli import main as cli

runner = CliRunner()


class _Response:
    def __init__(self, payload: dict, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code
        self.text = json.dumps(payload)

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> dict:
        return self._payload


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch) -> list[dict]:
    recorded: list[dict] = []

    def fake_request(method: str, url: str, timeout: int, **kwargs) -> _Response:
        recorded.append({"method": method, "url": url, **kwargs})
        if url.endswith("/documents/doc_missing"):
            return _Response({"error": "not_found"}, status_code=404)
        return _Response({"status": "ok"})

    monkeypatch.setattr(cli.requests, "request", fake_request)
    monkeypatch.setenv("PVAULT_HOST", "http://vault.test:9000/")
    return recorded


def test_ingest_reads_file(tmp_path: Path, calls: list[dict]) -> None:
    source = tmp_path / "intake.txt"
    source.write_text("Client SSN: 123-45-6789.", encoding="utf-8")
    result = runner.invoke(cli.app, ["ingest", "alice", "--path", str(source)])
    assert result.exit_code == 0, result.output
    call = calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "http://vault.test:9000/ingest"
    assert call["json"]["filename"] == "intake.txt"
    assert call["json"]["purpose"] == "document_processing"


def test_ingest_requires_text_or_path(calls: list[dict]) -> None:
    result = runner.invoke(cli.app, ["ingest", "alice"])
    assert result.exit_code == 2
    assert calls == []


def test_consent_grant_and_sweep(calls: list[dict]) -> None:
    assert runner.invoke(cli.app, ["consent", "grant", "alice", "chat_storage"]).exit_code == 0
    assert runner.invoke(cli.app, ["sweep"]).exit_code == 0
    assert [call["url"] for call in calls] == [
        "http://vault.test:9000/consents/grant",
        "http://vault.test:9000/retention/sweep",
    ]


def test_failed_request_exits_non_zero(calls: list[dict]) -> None:
    result = runner.invoke(cli.app, ["delete", "doc_missing", "--host", "http://other:1"])
    assert result.exit_code == 1
    assert calls[0]["url"] == "http://other:1/documents/doc_missing"


def test_chat_ingest_defaults_to_chat_storage_purpose(calls: list[dict]) -> None:
    result = runner.invoke(cli.app, ["ingest", "alice", "--text", "hi", "--kind", "chat_message"])
    assert result.exit_code == 0, result.output
    assert calls[0]["json"]["purpose"] == "chat_storage"


def test_processing_filters_are_forwarded(calls: list[dict]) -> None:
    result = runner.invoke(cli.app, ["processing", "--subject", "alice", "--purpose", "chat_storage"])
    assert result.exit_code == 0, result.output
    assert calls[0]["url"] == "http://vault.test:9000/processing"
    assert calls[0]["params"] == {"limit": 100, "subject_id": "alice", "purpose": "chat_storage"}
