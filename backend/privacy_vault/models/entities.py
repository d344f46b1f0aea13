"""Internal dataclasses representing persisted entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConsentPurpose(str, Enum):
    CHAT_STORAGE = "chat_storage"
    DOCUMENT_PROCESSING = "document_processing"
    PII_ENHANCEMENT = "pii_enhancement"
    ANALYTICS = "analytics"
    REMOTE_INFERENCE = "remote_inference"


class EntityKind(str, Enum):
    SSN = "SSN"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    CREDIT_CARD = "CREDIT_CARD"
    PERSON = "PERSON"
    ORG = "ORG"
    LOCATION = "LOCATION"
    MEDICAL_ID = "MEDICAL_ID"
    CASE_NUMBER = "CASE_NUMBER"
    IP_ADDRESS = "IP_ADDRESS"
    CUSTOM = "CUSTOM"


class ResourceKind(str, Enum):
    DOCUMENTS = "documents"
    CHAT_MESSAGES = "chat_messages"
    AUDIT_LOG = "audit_log"
    CONSENT_RECORDS = "consent_records"
    RETENTION_POLICIES = "retention_policies"
    SUBJECT = "subject"


class ResourceHint(str, Enum):
    DOCUMENT = "document"
    CHAT_MESSAGE = "chat_message"


class AuditAction(str, Enum):
    CONSENT_GRANTED = "consent_granted"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    DOCUMENT_ADDED = "document_added"
    DOCUMENT_DELETED = "document_deleted"
    MESSAGE_ADDED = "message_added"
    MESSAGE_DELETED = "message_deleted"
    INGEST_ABORTED = "ingest_aborted"
    RETENTION_SWEEP = "retention_sweep"
    RETENTION_POLICY_SET = "retention_policy_set"
    RETENTION_RESTAMPED = "retention_restamped"
    ERASURE_REQUESTED = "erasure_requested"
    ENTITY_ERASED = "entity_erased"
    DATA_EXPORTED = "data_exported"
    AUDIT_EXPIRED = "audit_expired"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(slots=True)
class ConsentEvidence:
    origin_address: str | None = None
    agent_string: str | None = None


@dataclass(slots=True)
class ConsentRecord:
    id: str
    subject_id: str
    purpose: ConsentPurpose
    granted: bool
    policy_version: str
    granted_at: int
    revoked_at: int | None
    evidence: ConsentEvidence
    reason: str | None = None

    @property
    def active(self) -> bool:
        return self.revoked_at is None


@dataclass(slots=True)
class PiiDetection:
    """A detection as persisted: kind, span and confidence only."""

    entity_kind: EntityKind
    confidence: float
    span_start: int
    span_end: int
    detecting_engine: str
    source_entity_id: str | None = None
    id: str | None = None


@dataclass(slots=True)
class DocumentRecord:
    id: str
    subject_id: str
    raw_byte_size: int
    chunk_count: int
    created_at: int
    retention_expires_at: int | None
    filename: str | None = None
    mime: str | None = None
    uploaded_at: int | None = None
    redacted: bool = False
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChunkRecord:
    id: str
    document_id: str
    index: int
    start_char: int
    end_char: int
    text: str
    embedding: list[float]


@dataclass(slots=True)
class ChatMessageRecord:
    id: str
    subject_id: str
    session_id: str | None
    text: str
    redacted: bool
    created_at: int
    retention_expires_at: int | None


@dataclass(slots=True)
class AuditEntry:
    subject_id: str
    action: AuditAction
    resource_kind: ResourceKind
    outcome: Outcome
    resource_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: int | None = None
    id: int | None = None


@dataclass(slots=True)
class RetentionPolicy:
    resource_kind: ResourceKind
    ttl_seconds: int
    auto_delete: bool
    updated_at: int | None = None

    def expires_at(self, created_at_ms: int) -> int:
        return created_at_ms + self.ttl_seconds * 1000


@dataclass(slots=True)
class ProcessingRecord:
    """One entry in the record of processing activities; never holds content."""

    subject_id: str
    purpose: ConsentPurpose
    resource_kind: ResourceKind
    resource_id: str
    legal_basis: str = "consent"
    data_categories: list[str] = field(default_factory=list)
    retention_seconds: int | None = None
    recipients: list[str] = field(default_factory=list)
    security_measures: list[str] = field(default_factory=list)
    timestamp: int | None = None
    id: int | None = None


__all__ = [
    "ConsentPurpose",
    "EntityKind",
    "ResourceKind",
    "ResourceHint",
    "AuditAction",
    "Outcome",
    "ConsentEvidence",
    "ConsentRecord",
    "PiiDetection",
    "DocumentRecord",
    "ChunkRecord",
    "ChatMessageRecord",
    "AuditEntry",
    "RetentionPolicy",
    "ProcessingRecord",
]
