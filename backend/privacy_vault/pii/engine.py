"""PII detection engine: runs the detectors and scores their output.

Order of operations for one scan:

1. contextual detector (when it initialised), then the pattern detector;
2. merge spans that overlap by more than ``merge_overlap`` of either span,
   keeping the higher confidence, then the pattern engine, then the earlier span;
3. context enhancement: a bounded additive boost when a kind-specific cue
   appears within ``context_window`` characters of the span;
4. exclusion list (case-insensitive, whole span);
5. confidence threshold.

The engine keeps no state between scans and never stores the scanned text.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from privacy_vault.core.config import Settings
from privacy_vault.core.errors import DetectionEngineUnavailable
from privacy_vault.core.logging import get_logger
from privacy_vault.models.entities import EntityKind, PiiDetection
from privacy_vault.pii.detectors import (
    PATTERN_ENGINE,
    Candidate,
    ContextualDetector,
    Detector,
    PatternDetector,
    PresidioDetector,
)

logger = get_logger(__name__)

CONTEXT_CUES: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.SSN: ("ssn", "social security", "ss#", "taxpayer"),
    EntityKind.CREDIT_CARD: ("credit", "card", "visa", "mastercard", "amex", "payment"),
    EntityKind.EMAIL: ("email", "e-mail", "contact", "mailto"),
    EntityKind.PHONE: ("phone", "tel", "call", "mobile", "cell", "fax"),
    EntityKind.PERSON: ("plaintiff", "defendant", "attorney", "client", "witness", "judge", "patient", "mr.", "ms."),
    EntityKind.ORG: ("company", "corporation", "firm", "agency", "employer", "counsel"),
    EntityKind.LOCATION: ("address", "resides", "located", "lives", "city", "state"),
    EntityKind.MEDICAL_ID: ("mrn", "medical record", "patient", "chart"),
    EntityKind.CASE_NUMBER: ("case no", "case number", "docket", "plaintiff", "defendant", "court"),
    EntityKind.IP_ADDRESS: ("ip", "host", "server", "login"),
}


@dataclass(slots=True)
class DetectionResult:
    detections: list[PiiDetection]
    degraded: bool = False
    degraded_reason: str | None = None
    engines: list[str] = field(default_factory=list)


ContextualFactory = Callable[[], Detector]


def default_contextual(settings: Settings) -> Detector:
    """The configured contextual backend; raises when it is off or cannot start."""
    if not settings.pii_contextual_enabled:
        raise DetectionEngineUnavailable(settings.pii_contextual_engine, "disabled by configuration")
    if settings.pii_contextual_engine == "presidio":
        return PresidioDetector(language=settings.pii_presidio_language, model_name=settings.pii_presidio_model)
    return ContextualDetector()


class PiiEngine:
    """Stateless scanner built from configuration."""

    def __init__(
        self,
        settings: Settings,
        contextual_factory: ContextualFactory | None = None,
    ) -> None:
        self.threshold = settings.pii_confidence_threshold
        self.context_window = settings.pii_context_window
        self.context_boost = settings.pii_context_boost
        self.merge_overlap = settings.pii_merge_overlap
        self.exclusions = frozenset(term.strip().casefold() for term in settings.pii_exclusions if term.strip())
        self.pattern = PatternDetector(settings.pii_custom_patterns)
        self.contextual: Detector | None = None
        self.degraded_reason: str | None = None

        factory = contextual_factory or (lambda: default_contextual(settings))
        try:
            self.contextual = factory()
        except DetectionEngineUnavailable as exc:
            self.degraded_reason = exc.reason
            logger.warning("PII engine degraded: %s", exc.message)

    @property
    def degraded(self) -> bool:
        return self.contextual is None

    def detect(self, text: str, source_entity_id: str | None = None) -> list[PiiDetection]:
        return self.scan(text, source_entity_id).detections

    def scan(self, text: str, source_entity_id: str | None = None) -> DetectionResult:
        candidates: list[Candidate] = []
        engines: list[str] = []
        degraded_reason = self.degraded_reason
        if self.contextual is not None:
            try:
                candidates.extend(self.contextual.detect(text))
                engines.append(self.contextual.name)
            except DetectionEngineUnavailable as exc:
                degraded_reason = exc.reason
                logger.warning("Contextual detector failed, continuing with patterns: %s", exc.message)
        candidates.extend(self.pattern.detect(text))
        engines.append(self.pattern.name)

        merged = self.merge(candidates)
        boosted = [self._enhance(text, candidate) for candidate in merged]
        kept = [
            candidate
            for candidate in boosted
            if not self._excluded(text, candidate) and candidate.confidence >= self.threshold
        ]
        kept.sort(key=lambda item: (item.start, item.end, item.entity_kind.value))
        detections = [
            PiiDetection(
                entity_kind=candidate.entity_kind,
                confidence=candidate.confidence,
                span_start=candidate.start,
                span_end=candidate.end,
                detecting_engine=candidate.engine,
                source_entity_id=source_entity_id,
            )
            for candidate in kept
        ]
        return DetectionResult(
            detections=detections,
            degraded=degraded_reason is not None,
            degraded_reason=degraded_reason,
            engines=engines,
        )

    def merge(self, candidates: Iterable[Candidate]) -> list[Candidate]:
        ranked = sorted(
            candidates,
            key=lambda c: (-c.confidence, 0 if c.engine == PATTERN_ENGINE else 1, c.start, c.end, c.entity_kind.value),
        )
        accepted: list[Candidate] = []
        for candidate in ranked:
            if candidate.length <= 0:
                continue
            if any(self._overlaps(candidate, kept) for kept in accepted):
                continue
            accepted.append(candidate)
        return accepted

    def _overlaps(self, a: Candidate, b: Candidate) -> bool:
        shared = min(a.end, b.end) - max(a.start, b.start)
        if shared <= 0:
            return False
        return shared > self.merge_overlap * a.length or shared > self.merge_overlap * b.length

    def _enhance(self, text: str, candidate: Candidate) -> Candidate:
        cues = CONTEXT_CUES.get(candidate.entity_kind)
        if not cues or self.context_boost <= 0:
            return candidate
        before = text[max(0, candidate.start - self.context_window) : candidate.start]
        after = text[candidate.end : candidate.end + self.context_window]
        window = f"{before} {after}".lower()
        if not any(cue in window for cue in cues):
            return candidate
        boosted = round(min(1.0, candidate.confidence + self.context_boost), 4)
        return Candidate(candidate.entity_kind, candidate.start, candidate.end, boosted, candidate.engine)

    def _excluded(self, text: str, candidate: Candidate) -> bool:
        if not self.exclusions:
            return False
        return text[candidate.start : candidate.end].strip().casefold() in self.exclusions


def redact(text: str, detections: Sequence[PiiDetection]) -> str:
    """Replace detected spans with ``[KIND]`` placeholders.

    Overlapping spans are unioned and labelled with the earliest span's kind.
    Returned offsets of ``detections`` keep referring to the original text.
    """
    if not detections:
        return text
    spans = sorted((d.span_start, d.span_end, d.entity_kind.value) for d in detections)
    merged: list[list] = []
    for start, end, kind in spans:
        if merged and start < merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
            continue
        merged.append([start, end, kind])
    result = text
    for start, end, kind in reversed(merged):
        result = f"{result[:start]}[{kind}]{result[end:]}"
    return result


def statistics(detections: Iterable[PiiDetection]) -> dict[str, int]:
    counts = Counter(detection.entity_kind.value for detection in detections)
    return dict(sorted(counts.items()))


__all__ = ["PiiEngine", "DetectionResult", "default_contextual", "CONTEXT_CUES", "redact", "statistics"]
