"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from privacy_vault.models.entities import PiiDetection


@dataclass(slots=True)
class ChunkPayload:
    """Chunk produced by the chunker prior to embedding and persistence."""

    index: int
    start_char: int
    end_char: int
    text: str


@dataclass(slots=True)
class SourceMetadata:
    """Metadata supplied by the text-extraction layer alongside plain text."""

    filename: str | None = None
    mime: str | None = None
    uploaded_at: int | None = None
    session_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChunkRef:
    document_id: str
    chunk_id: str
    index: int
    start_char: int
    end_char: int


@dataclass(slots=True)
class SearchHit:
    ref: ChunkRef
    score: float
    text: str


@dataclass(slots=True)
class IngestResult:
    """Outcome of one ``ingest_text`` call."""

    resource_kind: str
    resource_id: str
    detections: list[PiiDetection]
    redacted: bool
    chunk_count: int = 0
    retention_expires_at: int | None = None
    detection_degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["detections"] = [
            {
                "entity_kind": det.entity_kind.value,
                "confidence": det.confidence,
                "span_start": det.span_start,
                "span_end": det.span_end,
                "detecting_engine": det.detecting_engine,
            }
            for det in self.detections
        ]
        return payload


@dataclass(slots=True)
class KindReport:
    resource_kind: str
    deleted: int = 0
    deleted_ids: list[str] = field(default_factory=list)
    error: str | None = None
    skipped: bool = False


@dataclass(slots=True)
class SweepReport:
    """Summary of one retention sweep or erasure request."""

    started_at: int
    finished_at: int | None = None
    kinds: list[KindReport] = field(default_factory=list)
    reclaimed: bool = False
    cancelled: bool = False

    @property
    def total_deleted(self) -> int:
        return sum(kind.deleted for kind in self.kinds)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["total_deleted"] = self.total_deleted
        return payload


@dataclass(slots=True)
class SubjectExport:
    """Everything held about one subject, for data portability.

    Detections carry kind, span and confidence only.
    """

    subject_id: str
    generated_at: int
    consents: list[dict[str, Any]] = field(default_factory=list)
    documents: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    detections: list[dict[str, Any]] = field(default_factory=list)
    audit: list[dict[str, Any]] = field(default_factory=list)
    processing: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = [
    "ChunkPayload",
    "SourceMetadata",
    "ChunkRef",
    "SearchHit",
    "IngestResult",
    "KindReport",
    "SweepReport",
    "SubjectExport",
]
