"""Search and document routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from privacy_vault.api.dependencies import get_pipeline
from privacy_vault.ingest.pipeline import PrivacyPipeline
from privacy_vault.models.dto import ChunkResult, DeleteResponse, SearchRequest, SearchResponse

router = APIRouter()


@router.post("/search", response_model=SearchResponse, summary="Similarity search over document chunks")
def run_search(
    request: SearchRequest,
    pipeline: PrivacyPipeline = Depends(get_pipeline),
) -> SearchResponse:
    hits = pipeline.search(request.query, k=request.k, subject_id=request.subject_id)
    return SearchResponse(
        results=[
            ChunkResult(
                chunk_id=hit.ref.chunk_id,
                document_id=hit.ref.document_id,
                index=hit.ref.index,
                score=hit.score,
                text=hit.text,
                start_char=hit.ref.start_char,
                end_char=hit.ref.end_char,
            )
            for hit in hits
        ]
    )


@router.delete("/documents/{document_id}", response_model=DeleteResponse, summary="Delete a document and its chunks")
def delete_document(
    document_id: str,
    subject_id: str | None = Query(default=None, description="Only delete if owned by this subject"),
    pipeline: PrivacyPipeline = Depends(get_pipeline),
) -> DeleteResponse:
    record = pipeline.delete_document(document_id, subject_id=subject_id)
    return DeleteResponse(status="ok", document_id=record.id, chunk_count=record.chunk_count)
