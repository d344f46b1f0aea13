"""Error taxonomy for the ingestion pipeline.

Every error carries a stable ``code`` for API clients and a ``guidance``
string telling the caller what they can do about it. ``ConsentDenied`` and
``CapacityExceeded`` are expected operating conditions, not bugs.
"""

from __future__ import annotations


class PipelineError(Exception):
    code = "pipeline_error"
    status_code = 500
    guidance = ""

    def __init__(self, message: str, *, guidance: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if guidance is not None:
            self.guidance = guidance

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "detail": self.message, "guidance": self.guidance}


class ConsentDenied(PipelineError):
    code = "consent_denied"
    status_code = 403

    def __init__(self, subject_id: str, purpose: str, *, reason: str = "no active grant") -> None:
        super().__init__(
            f"Consent for '{purpose}' is not active for subject '{subject_id}': {reason}",
            guidance=f"Grant the '{purpose}' consent purpose before retrying.",
        )
        self.subject_id = subject_id
        self.purpose = purpose
        self.reason = reason


class CapacityExceeded(PipelineError):
    code = "capacity_exceeded"
    status_code = 507

    def __init__(self, ceiling: int) -> None:
        super().__init__(
            f"Document store is full ({ceiling} documents)",
            guidance="Delete documents you no longer need or wait for retention to reap expired ones.",
        )
        self.ceiling = ceiling


class DetectionEngineUnavailable(PipelineError):
    code = "detection_engine_unavailable"

    def __init__(self, engine: str, reason: str) -> None:
        super().__init__(f"Detector '{engine}' unavailable: {reason}")
        self.engine = engine
        self.reason = reason


class PersistenceFailure(PipelineError):
    code = "persistence_failure"
    guidance = "The write was rolled back; retry later."


class AuditWriteFailure(PipelineError):
    code = "audit_write_failure"
    guidance = "The operation was rolled back because it could not be recorded; retry later."


class IntegrityFailure(PipelineError):
    code = "integrity_failure"
    guidance = "Stored text could not be opened with the vault key; check that the key file belongs to this database."


class NotFound(PipelineError):
    code = "not_found"
    status_code = 404


__all__ = [
    "PipelineError",
    "ConsentDenied",
    "CapacityExceeded",
    "DetectionEngineUnavailable",
    "IntegrityFailure",
    "PersistenceFailure",
    "AuditWriteFailure",
    "NotFound",
]
