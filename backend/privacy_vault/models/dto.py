"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from privacy_vault.models.entities import (
    AuditAction,
    AuditEntry,
    ConsentPurpose,
    ConsentRecord,
    Outcome,
    ProcessingRecord,
    ResourceHint,
    ResourceKind,
    RetentionPolicy,
)
from privacy_vault.utils.time import ms_to_datetime


class IngestRequest(BaseModel):
    subject_id: str = Field(min_length=1)
    purpose: ConsentPurpose
    text: str
    resource_hint: ResourceHint = ResourceHint.DOCUMENT
    filename: str | None = None
    mime: str | None = None
    uploaded_at: datetime | None = None
    session_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DetectionResponse(BaseModel):
    entity_kind: str
    confidence: float
    span_start: int
    span_end: int
    detecting_engine: str


class IngestResponse(BaseModel):
    resource_kind: str
    resource_id: str
    detections: list[DetectionResponse]
    redacted: bool
    chunk_count: int
    retention_expires_at: datetime | None
    detection_degraded: bool


class SearchRequest(BaseModel):
    query: str
    k: int = Field(default=5, ge=1, le=50)
    subject_id: str | None = Field(default=None, description="Caller whose remote_inference consent may be used")


class ChunkResult(BaseModel):
    chunk_id: str
    document_id: str
    index: int
    score: float
    text: str
    start_char: int
    end_char: int


class SearchResponse(BaseModel):
    results: list[ChunkResult]


class DeleteResponse(BaseModel):
    status: Literal["ok"]
    document_id: str
    chunk_count: int


class ConsentGrantRequest(BaseModel):
    subject_id: str = Field(min_length=1)
    purpose: ConsentPurpose
    policy_version: str = Field(min_length=1)
    origin_address: str | None = None
    agent_string: str | None = None


class ConsentWithdrawRequest(BaseModel):
    subject_id: str = Field(min_length=1)
    purpose: ConsentPurpose
    reason: str | None = None


class ConsentResponse(BaseModel):
    id: str
    subject_id: str
    purpose: ConsentPurpose
    granted: bool
    policy_version: str
    granted_at: datetime
    revoked_at: datetime | None
    reason: str | None
    origin_address: str | None
    agent_string: str | None

    @classmethod
    def from_record(cls, record: ConsentRecord) -> "ConsentResponse":
        return cls(
            id=record.id,
            subject_id=record.subject_id,
            purpose=record.purpose,
            granted=record.granted,
            policy_version=record.policy_version,
            granted_at=ms_to_datetime(record.granted_at),
            revoked_at=ms_to_datetime(record.revoked_at),
            reason=record.reason,
            origin_address=record.evidence.origin_address,
            agent_string=record.evidence.agent_string,
        )


class ConsentListResponse(BaseModel):
    subject_id: str
    active: list[ConsentResponse]
    history: list[ConsentResponse]


class AuditEntryResponse(BaseModel):
    id: int
    timestamp: datetime
    subject_id: str
    action: AuditAction
    resource_kind: ResourceKind
    resource_id: str | None
    outcome: Outcome
    detail: dict[str, Any]

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id or 0,
            timestamp=ms_to_datetime(entry.timestamp),
            subject_id=entry.subject_id,
            action=entry.action,
            resource_kind=entry.resource_kind,
            resource_id=entry.resource_id,
            outcome=entry.outcome,
            detail=entry.detail,
        )


class ProcessingRecordResponse(BaseModel):
    id: int
    timestamp: datetime
    subject_id: str
    purpose: ConsentPurpose
    legal_basis: str
    data_categories: list[str]
    resource_kind: ResourceKind
    resource_id: str
    retention_seconds: int | None
    recipients: list[str]
    security_measures: list[str]

    @classmethod
    def from_record(cls, record: ProcessingRecord) -> "ProcessingRecordResponse":
        return cls(
            id=record.id or 0,
            timestamp=ms_to_datetime(record.timestamp),
            subject_id=record.subject_id,
            purpose=record.purpose,
            legal_basis=record.legal_basis,
            data_categories=record.data_categories,
            resource_kind=record.resource_kind,
            resource_id=record.resource_id,
            retention_seconds=record.retention_seconds,
            recipients=record.recipients,
            security_measures=record.security_measures,
        )

class AuditSummaryResponse(BaseModel):
    since: int | None
    until: int | None
    total: int
    by_outcome: dict[str, int]
    by_action: dict[str, dict[str, int]]


class RetentionPolicyRequest(BaseModel):
    ttl_seconds: int = Field(ge=1)
    auto_delete: bool
    restamp: bool = Field(default=False, description="Recompute expiry stamps of existing rows")


class RetentionPolicyResponse(BaseModel):
    resource_kind: ResourceKind
    ttl_seconds: int
    auto_delete: bool
    updated_at: datetime | None

    @classmethod
    def from_policy(cls, policy: RetentionPolicy) -> "RetentionPolicyResponse":
        return cls(
            resource_kind=policy.resource_kind,
            ttl_seconds=policy.ttl_seconds,
            auto_delete=policy.auto_delete,
            updated_at=ms_to_datetime(policy.updated_at),
        )


class KindReportResponse(BaseModel):
    resource_kind: str
    deleted: int
    deleted_ids: list[str]
    error: str | None
    skipped: bool


class SweepResponse(BaseModel):
    started_at: int
    finished_at: int | None
    kinds: list[KindReportResponse]
    reclaimed: bool
    cancelled: bool
    total_deleted: int


__all__ = [
    "IngestRequest",
    "IngestResponse",
    "DetectionResponse",
    "SearchRequest",
    "SearchResponse",
    "ChunkResult",
    "DeleteResponse",
    "ConsentGrantRequest",
    "ConsentWithdrawRequest",
    "ConsentResponse",
    "ConsentListResponse",
    "AuditEntryResponse",
    "AuditSummaryResponse",
    "ProcessingRecordResponse",
    "RetentionPolicyRequest",
    "RetentionPolicyResponse",
    "KindReportResponse",
    "SweepResponse",
]
