"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

INGEST_COUNT = Counter(
    "pvault_ingest_total",
    "Ingest requests by resource kind and outcome",
    labelnames=("resource_kind", "outcome"),
    registry=REGISTRY,
)

INGEST_DURATION = Histogram(
    "pvault_ingest_duration_seconds",
    "Ingest pipeline duration",
    labelnames=("resource_kind",),
    registry=REGISTRY,
)

CONSENT_DENIALS = Counter(
    "pvault_consent_denials_total",
    "Writes rejected for missing consent",
    labelnames=("purpose",),
    registry=REGISTRY,
)

SWEEP_DELETIONS = Counter(
    "pvault_retention_deleted_total",
    "Entities deleted by retention sweeps and erasure requests",
    labelnames=("resource_kind",),
    registry=REGISTRY,
)

DOCUMENT_COUNT = Gauge(
    "pvault_documents",
    "Number of live documents in the store",
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "INGEST_COUNT",
    "INGEST_DURATION",
    "CONSENT_DENIALS",
    "SWEEP_DELETIONS",
    "DOCUMENT_COUNT",
    "metrics_response",
]
