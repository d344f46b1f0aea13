"""Test fixtures for Privacy Vault."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from privacy_vault.core.config import Settings  # noqa: E402
from privacy_vault.db.sqlite import SQLiteDatabase  # noqa: E402
from privacy_vault.ingest.pipeline import PrivacyPipeline  # noqa: E402


def _reset_singletons() -> None:
    from privacy_vault.api import dependencies as deps
    from privacy_vault.core.config import get_settings
    from privacy_vault.ingest.embeddings import EmbeddingModel

    if deps._SCHEDULER is not None or deps._PIPELINE is not None:
        deps.shutdown()
    EmbeddingModel._instances.clear()
    get_settings.cache_clear()
    deps.get_app_settings.cache_clear()
    deps._PIPELINE = None
    deps._SCHEDULER = None


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("PVAULT_DB_PATH", str(tmp_path / "vault.db"))
    monkeypatch.setenv("PVAULT_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("PVAULT_EMBEDDING_BACKEND", "hashed")
    monkeypatch.delenv("PVAULT_CONFIG", raising=False)
    _reset_singletons()
    yield
    _reset_singletons()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "unit.db",
        scheduler_enabled=False,
        write_backoff_seconds=0.0,
        embedding_backend="hashed",
    )


@pytest.fixture
def db(settings: Settings) -> SQLiteDatabase:
    database = SQLiteDatabase(settings.db_path)
    database.ensure_schema()
    yield database
    database.close()


@pytest.fixture
def pipeline(settings: Settings) -> PrivacyPipeline:
    built = PrivacyPipeline.build(settings)
    yield built
    built.close()


@pytest.fixture
def consented(pipeline: PrivacyPipeline) -> str:
    """A subject holding both ingest purposes."""
    subject = "subject-1"
    pipeline.grant_consent(subject, "document_processing", "2024-01")
    pipeline.grant_consent(subject, "chat_storage", "2024-01")
    return subject


@pytest.fixture(scope="session")
def sample_text() -> str:
    return "Title\n\nParagraph one.\n\nParagraph two is here."
