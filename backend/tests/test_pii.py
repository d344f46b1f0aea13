"""Tests for the PII detection engine."""

from __future__ import annotations

from dataclasses import fields

import pytest

from privacy_vault.core.config import Settings
from privacy_vault.core.errors import DetectionEngineUnavailable
from privacy_vault.models.entities import EntityKind, PiiDetection
from privacy_vault.pii import detectors
from privacy_vault.pii.detectors import (
    CONTEXTUAL_ENGINE,
    PATTERN_ENGINE,
    PRESIDIO_ENGINE,
    Candidate,
    PatternDetector,
    PresidioDetector,
    luhn_valid,
)
from privacy_vault.pii.engine import PiiEngine, redact, statistics


@pytest.fixture
def engine(settings: Settings) -> PiiEngine:
    return PiiEngine(settings)


def _unavailable() -> None:
    raise DetectionEngineUnavailable(CONTEXTUAL_ENGINE, "model files missing")


def test_ssn_with_context_cue(engine: PiiEngine) -> None:
    detections = engine.detect("Client SSN: 123-45-6789.")
    assert len(detections) == 1
    ssn = detections[0]
    assert ssn.entity_kind is EntityKind.SSN
    assert (ssn.span_start, ssn.span_end) == (12, 23)
    assert ssn.confidence == 1.0
    assert ssn.detecting_engine == PATTERN_ENGINE


def test_email_without_cue_keeps_base_confidence(engine: PiiEngine) -> None:
    text = "Reach me at jane.doe@example.com today"
    detections = engine.detect(text)
    assert [d.entity_kind for d in detections] == [EntityKind.EMAIL]
    assert text[detections[0].span_start : detections[0].span_end] == "jane.doe@example.com"
    assert detections[0].confidence == 0.99


def test_credit_card_requires_luhn(engine: PiiEngine) -> None:
    assert luhn_valid("4111 1111 1111 1111")
    assert not luhn_valid("4111 1111 1111 1112")
    valid = engine.detect("Paid with card 4111 1111 1111 1111 yesterday")
    invalid = engine.detect("Reference 4111 1111 1111 1112 yesterday")
    assert [d.entity_kind for d in valid] == [EntityKind.CREDIT_CARD]
    assert invalid == []


def test_context_boost_lifts_name_over_threshold(engine: PiiEngine) -> None:
    boosted = engine.detect("The plaintiff Maria Lopez testified.")
    assert [d.entity_kind for d in boosted] == [EntityKind.PERSON]
    assert boosted[0].confidence == pytest.approx(0.85)
    assert boosted[0].detecting_engine == CONTEXTUAL_ENGINE

    assert engine.detect("We met Maria Lopez yesterday.") == []


def test_exclusions_are_case_insensitive(tmp_path) -> None:
    settings = Settings(
        db_path=tmp_path / "x.db",
        pii_custom_patterns={"CASE_NUMBER": r"\bACME-\d+\b"},
        pii_exclusions=["acme-1"],
    )
    engine = PiiEngine(settings)
    text = "Refs ACME-1 and ACME-22"
    detections = engine.detect(text)
    assert [text[d.span_start : d.span_end] for d in detections] == ["ACME-22"]
    assert detections[0].entity_kind is EntityKind.CASE_NUMBER


def test_invalid_custom_pattern_is_rejected() -> None:
    with pytest.raises(ValueError):
        PatternDetector({"broken": "(unclosed"})


def test_merge_keeps_higher_confidence_and_prefers_pattern(engine: PiiEngine) -> None:
    high = Candidate(EntityKind.SSN, 0, 10, 0.9, PATTERN_ENGINE)
    shadowed = Candidate(EntityKind.PERSON, 2, 12, 0.8, CONTEXTUAL_ENGINE)
    neighbour = Candidate(EntityKind.ORG, 9, 20, 0.85, CONTEXTUAL_ENGINE)
    merged = engine.merge([shadowed, neighbour, high])
    assert merged == [high, neighbour]

    tie_contextual = Candidate(EntityKind.PERSON, 0, 10, 0.9, CONTEXTUAL_ENGINE)
    tie_pattern = Candidate(EntityKind.PHONE, 0, 10, 0.9, PATTERN_ENGINE)
    assert engine.merge([tie_contextual, tie_pattern]) == [tie_pattern]


def test_output_is_ordered_and_deterministic(engine: PiiEngine) -> None:
    text = "Email jane@example.com or call 555-123-4567. SSN 123-45-6789."
    first = engine.detect(text)
    second = engine.detect(text)
    assert first == second
    assert [d.span_start for d in first] == sorted(d.span_start for d in first)
    assert {d.entity_kind for d in first} == {EntityKind.EMAIL, EntityKind.PHONE, EntityKind.SSN}


def test_detections_hold_no_matched_text() -> None:
    names = {field.name for field in fields(PiiDetection)}
    assert names == {
        "entity_kind",
        "confidence",
        "span_start",
        "span_end",
        "detecting_engine",
        "source_entity_id",
        "id",
    }


def test_degraded_when_contextual_unavailable(settings: Settings) -> None:
    engine = PiiEngine(settings, contextual_factory=_unavailable)
    assert engine.degraded
    result = engine.scan("Client SSN: 123-45-6789.")
    assert result.degraded
    assert result.degraded_reason == "model files missing"
    assert result.engines == [PATTERN_ENGINE]
    assert [d.entity_kind for d in result.detections] == [EntityKind.SSN]


def test_disabled_contextual_degrades(tmp_path) -> None:
    engine = PiiEngine(Settings(db_path=tmp_path / "x.db", pii_contextual_enabled=False))
    assert engine.degraded
    assert engine.detect("The plaintiff Maria Lopez testified.") == []


def test_runtime_failure_degrades_single_scan(settings: Settings) -> None:
    class Flaky:
        name = CONTEXTUAL_ENGINE

        def detect(self, text: str) -> list[Candidate]:
            raise DetectionEngineUnavailable(self.name, "worker crashed")

    engine = PiiEngine(settings, contextual_factory=Flaky)
    result = engine.scan("Client SSN: 123-45-6789.")
    assert not engine.degraded
    assert result.degraded
    assert result.degraded_reason == "worker crashed"
    assert len(result.detections) == 1


def test_redact_and_statistics(engine: PiiEngine) -> None:
    text = "SSN 123-45-6789 and jane@example.com"
    detections = engine.detect(text)
    assert redact(text, detections) == "SSN [SSN] and [EMAIL]"
    assert statistics(detections) == {"EMAIL": 1, "SSN": 1}


def test_redact_unions_overlapping_spans() -> None:
    detections = [
        PiiDetection(EntityKind.PERSON, 0.9, 0, 5, CONTEXTUAL_ENGINE),
        PiiDetection(EntityKind.ORG, 0.9, 3, 9, CONTEXTUAL_ENGINE),
    ]
    assert redact("abcdefghij", detections) == "[PERSON]j"


class _Result:
    def __init__(self, entity_type: str, start: int, end: int, score: float) -> None:
        self.entity_type = entity_type
        self.start = start
        self.end = end
        self.score = score


class _FakeProvider:
    def __init__(self, nlp_configuration: dict) -> None:
        self.nlp_configuration = nlp_configuration

    def create_engine(self) -> str:
        return "spacy-engine"


class _FakeAnalyzer:
    requests: list[dict] = []

    def __init__(self, nlp_engine: str, supported_languages: list[str]) -> None:
        self.nlp_engine = nlp_engine

    def analyze(self, text: str, entities: list[str], language: str) -> list[_Result]:
        self.requests.append({"entities": entities, "language": language})
        return [
            _Result("PERSON", 12, 23, 0.85),
            _Result("US_SSN", 29, 40, 0.6),
            _Result("NRP", 0, 4, 0.9),
        ]


def _presidio_settings(tmp_path) -> Settings:
    return Settings(db_path=tmp_path / "p.db", pii_contextual_engine="presidio")


def test_presidio_missing_degrades_to_patterns(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(detectors, "AnalyzerEngine", None)
    with pytest.raises(DetectionEngineUnavailable) as excinfo:
        PresidioDetector()
    assert excinfo.value.engine == PRESIDIO_ENGINE

    engine = PiiEngine(_presidio_settings(tmp_path))
    assert engine.degraded
    assert engine.degraded_reason == "presidio-analyzer is not installed"
    assert [d.entity_kind for d in engine.detect("Client SSN: 123-45-6789.")] == [EntityKind.SSN]


def test_presidio_model_load_failure_is_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    class BrokenProvider(_FakeProvider):
        def create_engine(self) -> str:
            raise OSError("Can't find model 'en_core_web_sm'")

    monkeypatch.setattr(detectors, "AnalyzerEngine", _FakeAnalyzer)
    monkeypatch.setattr(detectors, "NlpEngineProvider", BrokenProvider)
    with pytest.raises(DetectionEngineUnavailable, match="en_core_web_sm"):
        PresidioDetector()


def test_presidio_results_map_to_entity_kinds(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(detectors, "AnalyzerEngine", _FakeAnalyzer)
    monkeypatch.setattr(detectors, "NlpEngineProvider", _FakeProvider)
    engine = PiiEngine(_presidio_settings(tmp_path))
    assert not engine.degraded
    result = engine.scan("The witness Maria Lopez, SSN 123-45-6789, testified.")
    assert result.engines == [PRESIDIO_ENGINE, PATTERN_ENGINE]
    kinds = {(d.entity_kind, d.detecting_engine) for d in result.detections}
    assert (EntityKind.PERSON, PRESIDIO_ENGINE) in kinds
    assert all(d.entity_kind in set(EntityKind) for d in result.detections)
    assert "NRP" not in _FakeAnalyzer.requests[-1]["entities"]
    assert _FakeAnalyzer.requests[-1]["language"] == "en"


def test_presidio_runtime_failure_degrades_single_scan(monkeypatch: pytest.MonkeyPatch) -> None:
    class CrashingAnalyzer(_FakeAnalyzer):
        def analyze(self, text: str, entities: list[str], language: str) -> list[_Result]:
            raise RuntimeError("spaCy pipeline crashed")

    monkeypatch.setattr(detectors, "AnalyzerEngine", CrashingAnalyzer)
    monkeypatch.setattr(detectors, "NlpEngineProvider", _FakeProvider)
    detector = PresidioDetector()
    with pytest.raises(DetectionEngineUnavailable, match="analysis failed"):
        detector.detect("Maria Lopez")
