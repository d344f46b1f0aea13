"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "PVAULT_"
DEFAULT_CONFIG_PATH = Path("~/.config/privacy-vault/config.yaml")

_DAY = 24 * 60 * 60

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "encryption_key_path"): "encryption_key_path",
    ("pii", "confidence_threshold"): "pii_confidence_threshold",
    ("pii", "context_window"): "pii_context_window",
    ("pii", "context_boost"): "pii_context_boost",
    ("pii", "merge_overlap"): "pii_merge_overlap",
    ("pii", "exclusions"): "pii_exclusions",
    ("pii", "contextual_enabled"): "pii_contextual_enabled",
    ("pii", "contextual_engine"): "pii_contextual_engine",
    ("pii", "presidio_language"): "pii_presidio_language",
    ("pii", "presidio_model"): "pii_presidio_model",
    ("pii", "redact_documents"): "redact_documents",
    ("pii", "redact_messages"): "redact_messages",
    ("pii", "custom_patterns"): "pii_custom_patterns",
    ("chunking", "target_chars"): "chunk_target_chars",
    ("chunking", "max_chars"): "chunk_max_chars",
    ("chunking", "overlap_chars"): "chunk_overlap_chars",
    ("embeddings", "backend"): "embedding_backend",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "dim"): "embedding_dim",
    ("embeddings", "remote_url"): "remote_embedding_url",
    ("embeddings", "remote_timeout"): "remote_embedding_timeout",
    ("documents", "capacity"): "document_capacity",
    ("retrieval", "min_similarity"): "min_similarity",
    ("retrieval", "max_chunks_per_document"): "max_chunks_per_document",
    ("retention", "document_ttl_seconds"): "document_ttl_seconds",
    ("retention", "document_auto_delete"): "document_auto_delete",
    ("retention", "chat_message_ttl_seconds"): "chat_message_ttl_seconds",
    ("retention", "chat_message_auto_delete"): "chat_message_auto_delete",
    ("retention", "audit_floor_seconds"): "audit_floor_seconds",
    ("retention", "sweep_interval_seconds"): "sweep_interval_seconds",
    ("retention", "scheduler_enabled"): "scheduler_enabled",
    ("writes", "retries"): "write_retries",
    ("writes", "backoff_seconds"): "write_backoff_seconds",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".privacy-vault" / "vault.db")
    # None keeps the master key beside the database as <db file>.key
    encryption_key_path: Path | None = None

    pii_confidence_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    pii_context_window: int = Field(default=50, ge=0)
    pii_context_boost: float = Field(default=0.1, ge=0.0, le=1.0)
    pii_merge_overlap: float = Field(default=0.5, gt=0.0, le=1.0)
    pii_exclusions: list[str] = Field(
        default_factory=lambda: [
            "United States",
            "New York",
            "Los Angeles",
            "San Francisco",
            "First Amendment",
            "Second Circuit",
            "Third Party",
            "Fourth Quarter",
            "Federal Court",
            "Supreme Court",
            "District Court",
            "Circuit Court",
        ]
    )
    pii_contextual_enabled: bool = True
    pii_contextual_engine: Literal["heuristic", "presidio"] = "heuristic"
    pii_presidio_language: str = "en"
    pii_presidio_model: str = "en_core_web_sm"
    pii_custom_patterns: dict[str, str] = Field(default_factory=dict)
    redact_documents: bool = True
    redact_messages: bool = True

    chunk_target_chars: int = Field(default=800, ge=1)
    chunk_max_chars: int = Field(default=1000, ge=1)
    chunk_overlap_chars: int = Field(default=100, ge=0)

    embedding_backend: Literal["sentence-transformers", "hashed"] = "sentence-transformers"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    # dimension of the hashed fallback and of remote vectors
    embedding_dim: int = Field(default=384, ge=8)
    remote_embedding_url: str | None = None
    remote_embedding_timeout: float = 10.0

    document_capacity: int = Field(default=100_000, ge=1)
    min_similarity: float = Field(default=0.7, ge=-1.0, le=1.0)
    max_chunks_per_document: int = Field(default=2, ge=1)

    document_ttl_seconds: int = Field(default=2 * 365 * _DAY, ge=1)
    document_auto_delete: bool = False
    chat_message_ttl_seconds: int = Field(default=90 * _DAY, ge=1)
    chat_message_auto_delete: bool = True
    audit_floor_seconds: int = Field(default=7 * 365 * _DAY, ge=1)
    sweep_interval_seconds: float = Field(default=float(_DAY), gt=0)
    scheduler_enabled: bool = True

    write_retries: int = Field(default=1, ge=0)
    write_backoff_seconds: float = Field(default=0.05, ge=0.0)

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", "encryption_key_path", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path | None:
        if value is None:
            return None
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("paths must be a path or string")

    @field_validator("pii_exclusions", mode="before")
    @classmethod
    def _split_exclusions(cls, value: Any) -> Any:
        # env overrides arrive as one comma separated string
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _check_chunk_budget(self) -> "Settings":
        if self.chunk_overlap_chars >= self.chunk_max_chars:
            raise ValueError("chunk_overlap_chars must be smaller than chunk_max_chars")
        return self

    def resolved_key_path(self) -> Path:
        if self.encryption_key_path is not None:
            return self.encryption_key_path
        return self.db_path.with_name(self.db_path.name + ".key")

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        mapped_key = _YAML_KEY_MAP.get(next_prefix)
        if mapped_key:
            flat[mapped_key] = value
        elif isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        elif key in Settings.model_fields:
            flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with PVAULT_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]
