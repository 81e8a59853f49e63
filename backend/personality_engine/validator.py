"""
Completeness checks for personality records.

A field counts as missing when it is absent, empty, or still holds one of the neutral
placeholders the parsers and the safe default record fall back to.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Union

from .models import (
    CommunicationStyle,
    EmotionalIntelligence,
    MessageArchitecture,
    PartialPersonalityRecord,
    PersonalityRecord,
    SocialBehaviorMetrics,
    ThoughtProcess,
    Vocabulary,
    VocabularyMetrics,
)

SUMMARY_PLACEHOLDERS = {
    "Analysis summary not available",
    "Analysis temporarily unavailable",
    "No summary available",
}
INTEREST_PLACEHOLDERS = ["General topics"]
THEME_PLACEHOLDERS = ["General themes"]
TONE_PLACEHOLDERS = {"Neutral", "Neutral emotional expression"}
EI_PLACEHOLDERS = {
    "Standard",
    "Balanced",
    "Neutral",
    "Balanced and professional",
    "Solution-oriented",
    "Neutral and objective",
}
SUPPORTIVE_PLACEHOLDERS = [["Positive acknowledgment"]]
TERM_PLACEHOLDERS = {"general", "standard", "typical"}
ENTHUSIASM_PLACEHOLDERS = {"good", "great", "nice"}

AnyRecord = Union[PersonalityRecord, PartialPersonalityRecord]


@dataclass
class ValidationReport:
    is_valid: bool
    missing_fields: List[str] = field(default_factory=list)
    missing_interests: bool = False
    missing_psychoanalysis: bool = False
    missing_social_metrics: bool = False
    missing_emotional_tone: bool = False
    missing_vocabulary_patterns: bool = False
    missing_communication_patterns: bool = False


def _summary_missing(summary: str) -> bool:
    return not summary.strip() or summary.strip() in SUMMARY_PLACEHOLDERS


def _traits_missing(traits) -> bool:
    if not traits:
        return True
    if all(not t.explanation.strip() for t in traits):
        return True
    return len(traits) == 1 and traits[0].name == "Neutral"


def _communication_missing(style: CommunicationStyle) -> bool:
    description = style.description.strip()
    if not description or description == "Communication style analysis not available" \
            or description.startswith("Default communication style"):
        return True
    structure = style.patterns.messageStructure
    if not structure.opening or not structure.framing or not structure.closing:
        return True
    variations = style.contextualVariations
    return any(not getattr(variations, name).strip() for name in ("business", "casual", "technical", "crisis"))


def _vocabulary_missing(vocabulary: Vocabulary) -> bool:
    if not vocabulary.commonTerms or not vocabulary.commonPhrases or not vocabulary.enthusiasmMarkers \
            or not vocabulary.industryTerms or not vocabulary.nGrams.bigrams or not vocabulary.nGrams.trigrams:
        return True
    if {t.term.lower() for t in vocabulary.commonTerms} <= TERM_PLACEHOLDERS:
        return True
    return {m.lower() for m in vocabulary.enthusiasmMarkers} <= ENTHUSIASM_PLACEHOLDERS


def _metrics_missing(metrics: VocabularyMetrics) -> bool:
    return metrics.averageMessageLength == 0 or metrics.uniqueWordsCount == 0


def _all_zero(model) -> bool:
    return all(not value for value in model.model_dump().values())


def _architecture_missing(arch: MessageArchitecture) -> bool:
    # structure and punctuation shares can legitimately all be zero; lengths cannot once posts exist
    return _all_zero(arch.characterMetrics)


def _emotional_intelligence_missing(ei: EmotionalIntelligence) -> bool:
    values = (ei.leadershipStyle.strip(), ei.challengeResponse.strip(), ei.analyticalTone.strip())
    if not all(values) or not ei.supportivePatterns:
        return True
    if any(v in EI_PLACEHOLDERS for v in values):
        return True
    return ei.supportivePatterns in SUPPORTIVE_PLACEHOLDERS


def _thought_process_missing(tp: ThoughtProcess) -> bool:
    return not (tp.initialApproach.strip() and tp.processingStyle.strip() and tp.expressionStyle.strip())


def _social_missing(metrics: SocialBehaviorMetrics) -> bool:
    return _all_zero(metrics)


def validate(record: AnyRecord) -> ValidationReport:
    """Check a record for missing fields.

    A partial record (one stage's output) is checked field by field; fields it does not
    carry are reported missing. ``messageArchitecture`` is only checked on a whole record.
    """
    missing: List[str] = []

    def check(name: str, value, is_missing) -> None:
        if value is None or is_missing(value):
            missing.append(name)

    check("summary", record.summary, _summary_missing)
    check("traits", record.traits, _traits_missing)
    check("interests", record.interests, lambda v: not v or v == INTEREST_PLACEHOLDERS)
    check("communicationStyle", record.communicationStyle, _communication_missing)
    check("vocabulary", record.vocabulary, _vocabulary_missing)
    check("vocabularyMetrics", record.vocabulary.metrics if record.vocabulary is not None else None,
          _metrics_missing)
    if isinstance(record, PersonalityRecord):
        check("messageArchitecture", record.vocabulary.metrics.messageArchitecture, _architecture_missing)
    check("emotionalTone", record.emotionalTone, lambda v: not v.strip() or v.strip() in TONE_PLACEHOLDERS)
    check("topicsAndThemes", record.topicsAndThemes, lambda v: not v or v == THEME_PLACEHOLDERS)
    check("emotionalIntelligence", record.emotionalIntelligence, _emotional_intelligence_missing)
    check("thoughtProcess", record.thoughtProcess, _thought_process_missing)
    check("socialBehaviorMetrics", record.socialBehaviorMetrics, _social_missing)

    found = set(missing)
    return ValidationReport(
        is_valid=not missing,
        missing_fields=missing,
        missing_interests="interests" in found,
        missing_psychoanalysis=bool(found & {"emotionalIntelligence", "thoughtProcess"}),
        missing_social_metrics="socialBehaviorMetrics" in found,
        missing_emotional_tone="emotionalTone" in found,
        missing_vocabulary_patterns=bool(found & {"vocabulary", "vocabularyMetrics", "messageArchitecture"}),
        missing_communication_patterns="communicationStyle" in found,
    )
