"""Consent, audit, subject-rights and retention routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from privacy_vault.api.dependencies import get_pipeline, get_scheduler
from privacy_vault.audit.log import DEFAULT_QUERY_LIMIT, AuditFilter
from privacy_vault.core.metrics import metrics_response
from privacy_vault.ingest.pipeline import PrivacyPipeline
from privacy_vault.ingest.types import SweepReport
from privacy_vault.models.dto import (
    AuditEntryResponse,
    AuditSummaryResponse,
    ConsentGrantRequest,
    ConsentListResponse,
    ConsentResponse,
    ConsentWithdrawRequest,
    ProcessingRecordResponse,
    RetentionPolicyRequest,
    RetentionPolicyResponse,
    SweepResponse,
)
from privacy_vault.models.entities import AuditAction, ConsentEvidence, ConsentPurpose, Outcome, ResourceKind
from privacy_vault.retention.scheduler import RetentionScheduler

router = APIRouter()


# Consent --------------------------------------------------------------


@router.get("/consents/{subject_id}", response_model=ConsentListResponse, summary="Active consents and full timeline")
def list_consents(subject_id: str, pipeline: PrivacyPipeline = Depends(get_pipeline)) -> ConsentListResponse:
    active = sorted(pipeline.consent.active(subject_id).values(), key=lambda record: record.purpose.value)
    return ConsentListResponse(
        subject_id=subject_id,
        active=[ConsentResponse.from_record(record) for record in active],
        history=[ConsentResponse.from_record(record) for record in pipeline.consent.history(subject_id)],
    )


@router.post("/consents/grant", response_model=ConsentResponse, summary="Grant consent for one purpose")
def grant_consent(
    body: ConsentGrantRequest,
    request: Request,
    pipeline: PrivacyPipeline = Depends(get_pipeline),
) -> ConsentResponse:
    evidence = ConsentEvidence(
        origin_address=body.origin_address or (request.client.host if request.client else None),
        agent_string=body.agent_string or request.headers.get("user-agent"),
    )
    record = pipeline.grant_consent(body.subject_id, body.purpose, body.policy_version, evidence)
    return ConsentResponse.from_record(record)


@router.post("/consents/withdraw", response_model=ConsentResponse, summary="Withdraw consent for one purpose")
def withdraw_consent(body: ConsentWithdrawRequest, pipeline: PrivacyPipeline = Depends(get_pipeline)) -> ConsentResponse:
    record = pipeline.withdraw_consent(body.subject_id, body.purpose, body.reason)
    return ConsentResponse.from_record(record)


# Audit ----------------------------------------------------------------


@router.get("/audit", response_model=list[AuditEntryResponse], summary="Query the audit trail, newest first")
def query_audit(
    subject_id: str | None = None,
    action: AuditAction | None = None,
    resource_kind: ResourceKind | None = None,
    outcome: Outcome | None = None,
    since: int | None = Query(default=None, description="Epoch milliseconds, inclusive"),
    until: int | None = Query(default=None, description="Epoch milliseconds, inclusive"),
    limit: int = Query(default=DEFAULT_QUERY_LIMIT, ge=1, le=1000),
    pipeline: PrivacyPipeline = Depends(get_pipeline),
) -> list[AuditEntryResponse]:
    filters = AuditFilter(
        subject_id=subject_id,
        action=action,
        resource_kind=resource_kind,
        outcome=outcome,
        since=since,
        until=until,
    )
    return [AuditEntryResponse.from_entry(entry) for entry in pipeline.audit.query(filters, limit=limit)]


@router.get("/audit/summary", response_model=AuditSummaryResponse, summary="Counts by action and outcome")
def audit_summary(
    since: int | None = None,
    until: int | None = None,
    pipeline: PrivacyPipeline = Depends(get_pipeline),
) -> AuditSummaryResponse:
    return AuditSummaryResponse(**pipeline.audit.summarize(since=since, until=until))


@router.get(
    "/processing",
    response_model=list[ProcessingRecordResponse],
    summary="Record of processing activities, newest first",
)
def query_processing(
    subject_id: str | None = None,
    purpose: ConsentPurpose | None = None,
    limit: int = Query(default=DEFAULT_QUERY_LIMIT, ge=1, le=1000),
    pipeline: PrivacyPipeline = Depends(get_pipeline),
) -> list[ProcessingRecordResponse]:
    records = pipeline.processing.query(subject_id=subject_id, purpose=purpose, limit=limit)
    return [ProcessingRecordResponse.from_record(record) for record in records]

# Subject rights -------------------------------------------------------


@router.get("/subjects/{subject_id}/audit", response_model=list[AuditEntryResponse], summary="A subject's own history")
def subject_audit(
    subject_id: str,
    limit: int = Query(default=DEFAULT_QUERY_LIMIT, ge=1, le=1000),
    pipeline: PrivacyPipeline = Depends(get_pipeline),
) -> list[AuditEntryResponse]:
    return [AuditEntryResponse.from_entry(entry) for entry in pipeline.get_audit_history(subject_id, limit=limit)]


@router.get("/subjects/{subject_id}/export", summary="Structured export of everything held about a subject")
def export_subject(subject_id: str, pipeline: PrivacyPipeline = Depends(get_pipeline)) -> dict[str, Any]:
    return pipeline.export_subject_data(subject_id).to_dict()


@router.post("/subjects/{subject_id}/erase", response_model=SweepResponse, summary="Erase all data held about a subject")
def erase_subject(subject_id: str, pipeline: PrivacyPipeline = Depends(get_pipeline)) -> SweepResponse:
    return _sweep_response(pipeline.erase_subject(subject_id))


# Retention ------------------------------------------------------------


@router.get("/retention/policies", response_model=list[RetentionPolicyResponse], summary="Active retention policies")
def list_policies(pipeline: PrivacyPipeline = Depends(get_pipeline)) -> list[RetentionPolicyResponse]:
    return [RetentionPolicyResponse.from_policy(policy) for policy in pipeline.policies.all()]


@router.put("/retention/policies/{resource_kind}", response_model=RetentionPolicyResponse, summary="Set a policy")
def set_policy(
    resource_kind: ResourceKind,
    body: RetentionPolicyRequest,
    pipeline: PrivacyPipeline = Depends(get_pipeline),
) -> RetentionPolicyResponse:
    try:
        policy = pipeline.policies.set_policy(
            resource_kind,
            body.ttl_seconds,
            body.auto_delete,
            restamp=body.restamp,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RetentionPolicyResponse.from_policy(policy)


@router.post("/retention/sweep", response_model=SweepResponse, summary="Run a retention sweep now")
def run_sweep(pipeline: PrivacyPipeline = Depends(get_pipeline)) -> SweepResponse:
    return _sweep_response(pipeline.run_sweep())


@router.get("/retention/preview", summary="Expired entity counts without deleting")
def preview_sweep(pipeline: PrivacyPipeline = Depends(get_pipeline)) -> dict[str, Any]:
    return pipeline.enforcer.preview()


@router.get("/retention/status", summary="Background scheduler status")
def scheduler_status(scheduler: RetentionScheduler = Depends(get_scheduler)) -> dict[str, Any]:
    return scheduler.status()


@router.get("/metrics", summary="Prometheus metrics")
def get_metrics():
    return metrics_response()


def _sweep_response(report: SweepReport) -> SweepResponse:
    return SweepResponse(**report.to_dict())


__all__ = ["router"]
