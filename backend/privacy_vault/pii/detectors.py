"""Detector backends for the PII engine.

Every backend returns ``Candidate`` spans; the engine owns merging, context
scoring, exclusions and thresholding. Candidates carry offsets only, never the
matched substring.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Protocol

try:
    from presidio_analyzer import AnalyzerEngine
    from presidio_analyzer.nlp_engine import NlpEngineProvider
except ImportError:  # optional "presidio" extra
    AnalyzerEngine = None  # type: ignore[assignment,misc]
    NlpEngineProvider = None  # type: ignore[assignment,misc]

from privacy_vault.core.errors import DetectionEngineUnavailable
from privacy_vault.models.entities import EntityKind

PATTERN_ENGINE = "pattern"
CONTEXTUAL_ENGINE = "contextual"
PRESIDIO_ENGINE = "presidio"

PRESIDIO_KINDS: dict[str, EntityKind] = {
    "PERSON": EntityKind.PERSON,
    "ORGANIZATION": EntityKind.ORG,
    "LOCATION": EntityKind.LOCATION,
    "EMAIL_ADDRESS": EntityKind.EMAIL,
    "PHONE_NUMBER": EntityKind.PHONE,
    "US_SSN": EntityKind.SSN,
    "CREDIT_CARD": EntityKind.CREDIT_CARD,
    "IP_ADDRESS": EntityKind.IP_ADDRESS,
    "MEDICAL_LICENSE": EntityKind.MEDICAL_ID,
}

CUSTOM_PATTERN_CONFIDENCE = 0.85


@dataclass(slots=True)
class Candidate:
    entity_kind: EntityKind
    start: int
    end: int
    confidence: float
    engine: str

    @property
    def length(self) -> int:
        return self.end - self.start


class Detector(Protocol):
    name: str

    def detect(self, text: str) -> list[Candidate]: ...


@dataclass(slots=True)
class _Rule:
    kind: EntityKind
    regex: re.Pattern[str]
    confidence: float
    group: int = 0


_SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
_CARD_RE = re.compile(r"\b(?:\d{4}[- ]?){3}\d{1,7}\b")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"(?<![\w-])(?:\+?1[-. ]?)?(?:\(\d{3}\)|\d{3})[-. ]?\d{3}[-. ]\d{4}\b")
_IP_RE = re.compile(
    r"\b(?:(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.){3}(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\b"
)
_CASE_RE = re.compile(r"\b(?:Case\s*(?:No\.?|Number)?:?\s*)?(\d{1,2}:\d{2}-[a-z]{2}-\d{3,6}|\d{2,4}-?[A-Z]{2,4}-?\d{3,6})\b")
_MEDICAL_RE = re.compile(r"\b(?:MRN|Medical Record(?:\s+Number)?)[:#]?\s*([A-Z0-9]{6,12})\b")


def luhn_valid(number: str) -> bool:
    digits = [int(ch) for ch in number if ch.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for position, digit in enumerate(reversed(digits)):
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


class PatternDetector:
    """Deterministic regex detector; always available."""

    name = PATTERN_ENGINE

    def __init__(self, custom_patterns: Mapping[str, str] | None = None) -> None:
        self._rules: list[_Rule] = [
            _Rule(EntityKind.SSN, _SSN_RE, 0.95),
            _Rule(EntityKind.EMAIL, _EMAIL_RE, 0.99),
            _Rule(EntityKind.PHONE, _PHONE_RE, 0.9),
            _Rule(EntityKind.IP_ADDRESS, _IP_RE, 0.9),
            _Rule(EntityKind.CASE_NUMBER, _CASE_RE, 0.85, group=1),
            _Rule(EntityKind.MEDICAL_ID, _MEDICAL_RE, 0.9, group=1),
        ]
        for name, pattern in sorted((custom_patterns or {}).items()):
            try:
                regex = re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid custom PII pattern '{name}': {exc}") from exc
            kind = EntityKind.__members__.get(name.upper(), EntityKind.CUSTOM)
            self._rules.append(_Rule(kind, regex, CUSTOM_PATTERN_CONFIDENCE))

    def detect(self, text: str) -> list[Candidate]:
        found: list[Candidate] = []
        for match in _CARD_RE.finditer(text):
            if luhn_valid(match.group(0)):
                found.append(Candidate(EntityKind.CREDIT_CARD, match.start(), match.end(), 0.95, self.name))
        for rule in self._rules:
            for match in rule.regex.finditer(text):
                start, end = match.span(rule.group)
                if start < end:
                    found.append(Candidate(rule.kind, start, end, rule.confidence, self.name))
        return found


_TITLE_NAME_RE = re.compile(
    r"\b(?:Mr\.|Mrs\.|Ms\.|Dr\.|Prof\.|Judge|Attorney|Counselor)\s+([A-Z][a-z]+(?: [A-Z]\.)?(?: [A-Z][a-z]+)?)\b"
)
_NAME_PAIR_RE = re.compile(r"\b[A-Z][a-z]+ (?:[A-Z]\. )?[A-Z][a-z]+\b")
_ORG_RE = re.compile(
    r"\b(?:(?:[A-Z][\w'-]*|&)[ \t]+){1,5}"
    r"(?:Inc|LLC|LLP|Corp|Corporation|Company|Partners|Group|Associates|Firm|Ltd|Limited)\b\.?"
)
_LAW_FIRM_RE = re.compile(r"\bLaw (?:Office|Firm|Offices) of ([A-Z][a-z]+(?: (?:& )?[A-Z][a-z]+)?)\b")

_US_STATES = (
    "Alabama", "Alaska", "Arizona", "Arkansas", "California", "Colorado", "Connecticut",
    "Delaware", "Florida", "Georgia", "Hawaii", "Idaho", "Illinois", "Indiana", "Iowa",
    "Kansas", "Kentucky", "Louisiana", "Maine", "Maryland", "Massachusetts", "Michigan",
    "Minnesota", "Mississippi", "Missouri", "Montana", "Nebraska", "Nevada", "New Hampshire",
    "New Jersey", "New Mexico", "New York", "North Carolina", "North Dakota", "Ohio",
    "Oklahoma", "Oregon", "Pennsylvania", "Rhode Island", "South Carolina", "South Dakota",
    "Tennessee", "Texas", "Utah", "Vermont", "Virginia", "Washington", "West Virginia",
    "Wisconsin", "Wyoming",
)
_STATE_CODES = (
    "AL|AK|AZ|AR|CA|CO|CT|DE|FL|GA|HI|ID|IL|IN|IA|KS|KY|LA|ME|MD|MA|MI|MN|MS|MO|MT|NE|NV|"
    "NH|NJ|NM|NY|NC|ND|OH|OK|OR|PA|RI|SC|SD|TN|TX|UT|VT|VA|WA|WV|WI|WY|DC"
)
_CITY_STATE_RE = re.compile(rf"\b[A-Z][a-z]+(?: [A-Z][a-z]+)?, (?:{_STATE_CODES})\b")


class ContextualDetector:
    """High-recall heuristic recogniser for names, organisations and places.

    Raises ``DetectionEngineUnavailable`` from the constructor when it is
    switched off or its gazetteer cannot be compiled; the engine then runs the
    pattern detector alone.
    """

    name = CONTEXTUAL_ENGINE

    def __init__(self, enabled: bool = True, extra_places: tuple[str, ...] = ()) -> None:
        if not enabled:
            raise DetectionEngineUnavailable(self.name, "disabled by configuration")
        places = sorted(set(_US_STATES) | set(extra_places), key=len, reverse=True)
        try:
            self._state_re = re.compile(r"\b(?:" + "|".join(re.escape(place) for place in places) + r")\b")
        except re.error as exc:
            raise DetectionEngineUnavailable(self.name, f"gazetteer failed to compile: {exc}") from exc

    def detect(self, text: str) -> list[Candidate]:
        found: list[Candidate] = []
        titled: set[tuple[int, int]] = set()
        for match in _TITLE_NAME_RE.finditer(text):
            span = match.span(1)
            titled.add(span)
            found.append(Candidate(EntityKind.PERSON, span[0], span[1], 0.9, self.name))
        for match in _NAME_PAIR_RE.finditer(text):
            if match.span() in titled:
                continue
            found.append(Candidate(EntityKind.PERSON, match.start(), match.end(), 0.75, self.name))
        for match in _ORG_RE.finditer(text):
            found.append(Candidate(EntityKind.ORG, match.start(), match.end(), 0.85, self.name))
        for match in _LAW_FIRM_RE.finditer(text):
            start, end = match.span(1)
            found.append(Candidate(EntityKind.ORG, start, end, 0.9, self.name))
        for match in _CITY_STATE_RE.finditer(text):
            found.append(Candidate(EntityKind.LOCATION, match.start(), match.end(), 0.85, self.name))
        for match in self._state_re.finditer(text):
            found.append(Candidate(EntityKind.LOCATION, match.start(), match.end(), 0.8, self.name))
        return found


class PresidioDetector:
    """NER-backed recogniser on top of presidio-analyzer and a spaCy model.

    Only kinds with a counterpart in ``EntityKind`` are requested; the
    engine's own scores become candidate confidences. Any failure to build
    the analyzer, or to run it, surfaces as ``DetectionEngineUnavailable``.
    """

    name = PRESIDIO_ENGINE

    def __init__(self, language: str = "en", model_name: str = "en_core_web_sm") -> None:
        if AnalyzerEngine is None or NlpEngineProvider is None:
            raise DetectionEngineUnavailable(self.name, "presidio-analyzer is not installed")
        self.language = language
        try:
            provider = NlpEngineProvider(
                nlp_configuration={
                    "nlp_engine_name": "spacy",
                    "models": [{"lang_code": language, "model_name": model_name}],
                }
            )
            self._analyzer = AnalyzerEngine(nlp_engine=provider.create_engine(), supported_languages=[language])
        except Exception as exc:  # model missing or incompatible
            raise DetectionEngineUnavailable(self.name, f"analyzer failed to initialise: {exc}") from exc

    def detect(self, text: str) -> list[Candidate]:
        try:
            results = self._analyzer.analyze(text=text, entities=list(PRESIDIO_KINDS), language=self.language)
        except Exception as exc:
            raise DetectionEngineUnavailable(self.name, f"analysis failed: {exc}") from exc
        found: list[Candidate] = []
        for result in results:
            kind = PRESIDIO_KINDS.get(result.entity_type)
            if kind is None or result.end <= result.start:
                continue
            found.append(Candidate(kind, result.start, result.end, round(float(result.score), 4), self.name))
        return found


__all__ = [
    "Candidate",
    "Detector",
    "PatternDetector",
    "ContextualDetector",
    "PresidioDetector",
    "PRESIDIO_KINDS",
    "luhn_valid",
    "PATTERN_ENGINE",
    "CONTEXTUAL_ENGINE",
    "PRESIDIO_ENGINE",
]
