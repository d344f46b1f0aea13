"""Ingest API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from privacy_vault.api.dependencies import get_pipeline
from privacy_vault.ingest.pipeline import PrivacyPipeline
from privacy_vault.ingest.types import SourceMetadata
from privacy_vault.models.dto import DetectionResponse, IngestRequest, IngestResponse
from privacy_vault.utils.time import datetime_to_ms, ms_to_datetime

router = APIRouter()


@router.post("", response_model=IngestResponse, summary="Ingest a chat message or extracted document text")
def ingest_text(
    request: IngestRequest,
    pipeline: PrivacyPipeline = Depends(get_pipeline),
) -> IngestResponse:
    metadata = SourceMetadata(
        filename=request.filename,
        mime=request.mime,
        uploaded_at=datetime_to_ms(request.uploaded_at) if request.uploaded_at else None,
        session_id=request.session_id,
        extra=request.metadata,
    )
    result = pipeline.ingest_text(
        request.subject_id,
        request.purpose,
        request.text,
        request.resource_hint,
        metadata,
    )
    return IngestResponse(
        resource_kind=result.resource_kind,
        resource_id=result.resource_id,
        detections=[
            DetectionResponse(
                entity_kind=detection.entity_kind.value,
                confidence=detection.confidence,
                span_start=detection.span_start,
                span_end=detection.span_end,
                detecting_engine=detection.detecting_engine,
            )
            for detection in result.detections
        ],
        redacted=result.redacted,
        chunk_count=result.chunk_count,
        retention_expires_at=ms_to_datetime(result.retention_expires_at),
        detection_degraded=result.detection_degraded,
    )
