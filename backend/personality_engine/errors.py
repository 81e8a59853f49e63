"""
Error taxonomy for the analysis pipeline and dispatcher.

Every failure the pipeline can report is one of these types. Retry decisions do not
inspect exception classes directly: they go through ``classify_error`` and compare the
resulting ``ErrorKind`` against ``TRANSIENT_KINDS`` / ``FIELD_SPECIFIC_KINDS``.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Set

from .models import AnalysisStage, PartialPersonalityRecord


# ---- Text generation ----
class TextGenerationError(Exception):
    """Base class for failures talking to the text-generation service."""

    status: Optional[int] = None

    def __init__(self, message: str = "Text generation failed", status: Optional[int] = None):
        super().__init__(message)
        if status is not None:
            self.status = status


class ModelUnavailableError(TextGenerationError):
    status = 503

    def __init__(self, message: str = "The model is currently unavailable"):
        super().__init__(message)


class GenerationTimeoutError(TextGenerationError):
    status = 408

    def __init__(self, message: str = "Text generation timed out"):
        super().__init__(message)


class PersonalityAnalysisTimeoutError(GenerationTimeoutError):
    def __init__(self, message: str = "Personality analysis timed out"):
        super().__init__(message)


class ChatResponseTimeoutError(GenerationTimeoutError):
    def __init__(self, message: str = "Chat response timed out"):
        super().__init__(message)


class EmptyResponseError(TextGenerationError):
    def __init__(self, message: str = "Model returned an empty response"):
        super().__init__(message)


class LowQualityResponseError(TextGenerationError):
    def __init__(self, score: float, threshold: float):
        super().__init__(f"Response quality {score:.2f} below threshold {threshold:.2f}")
        self.score = score
        self.threshold = threshold


class NetworkError(TextGenerationError):
    """Connection failures and upstream throttling (HTTP 429)."""


# ---- Incomplete analysis ----
class IncompleteAnalysisError(Exception):
    """A stage or the final record is missing required fields."""

    default_message = "Analysis is missing required fields"

    def __init__(self, message: Optional[str] = None, missing_fields: Iterable[str] = ()):
        self.missing_fields: List[str] = sorted(set(missing_fields))
        super().__init__(message or self.default_message)


class MissingInterestsError(IncompleteAnalysisError):
    default_message = "Could not identify interests"


class MissingPsychoanalysisError(IncompleteAnalysisError):
    default_message = "Could not produce emotional intelligence analysis"


class MissingSocialMetricsError(IncompleteAnalysisError):
    default_message = "Could not produce social behavior metrics"


class MissingEmotionalToneError(IncompleteAnalysisError):
    default_message = "Could not determine emotional tone"


class MissingVocabularyPatternsError(IncompleteAnalysisError):
    default_message = "Could not extract vocabulary patterns"


class MissingCommunicationPatternsError(IncompleteAnalysisError):
    default_message = "Could not extract communication patterns"


class PersonalityAnalysisError(IncompleteAnalysisError):
    """Generic incomplete analysis. Not tolerated at the job level."""

    default_message = "Failed to generate complete analysis after multiple attempts"


# ---- Cancellation ----
class AnalysisAborted(Exception):
    """The caller cancelled the run. Terminal for the run; the job stays resumable."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"Analysis aborted: {reason}")
        self.reason = reason


class StageAborted(Exception):
    """An internal abort interrupted a stage; the run resumes at that stage."""

    def __init__(self, stage: AnalysisStage, completed: Set[AnalysisStage], reason: str = "stage aborted"):
        super().__init__(f"Stage {stage.label} aborted: {reason}")
        self.stage = stage
        self.completed = set(completed)
        self.reason = reason


# ---- Dispatcher ----
class RetryableError(Exception):
    """A retryable failure that exhausted the dispatcher's attempt budget."""

    def __init__(self, message: str, attempts: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class QueueTerminationError(Exception):
    """The work item was aborted because the dispatcher shut down."""

    def __init__(self, message: str = "Queue terminated before the item completed"):
        super().__init__(message)


# ---- Classification ----
class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    MODEL_UNAVAILABLE = "model_unavailable"
    NETWORK = "network"
    EMPTY_RESPONSE = "empty_response"
    LOW_QUALITY = "low_quality"
    MISSING_INTERESTS = "missing_interests"
    MISSING_PSYCHOANALYSIS = "missing_psychoanalysis"
    MISSING_SOCIAL_METRICS = "missing_social_metrics"
    MISSING_EMOTIONAL_TONE = "missing_emotional_tone"
    MISSING_VOCABULARY_PATTERNS = "missing_vocabulary_patterns"
    MISSING_COMMUNICATION_PATTERNS = "missing_communication_patterns"
    INCOMPLETE_ANALYSIS = "incomplete_analysis"
    ABORTED = "aborted"
    CRITICAL = "critical"


TRANSIENT_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.MODEL_UNAVAILABLE,
    ErrorKind.NETWORK,
    ErrorKind.EMPTY_RESPONSE,
    ErrorKind.LOW_QUALITY,
})

FIELD_SPECIFIC_KINDS = frozenset({
    ErrorKind.MISSING_INTERESTS,
    ErrorKind.MISSING_PSYCHOANALYSIS,
    ErrorKind.MISSING_SOCIAL_METRICS,
    ErrorKind.MISSING_EMOTIONAL_TONE,
    ErrorKind.MISSING_VOCABULARY_PATTERNS,
    ErrorKind.MISSING_COMMUNICATION_PATTERNS,
})

_KIND_TO_ERROR = {
    ErrorKind.MISSING_INTERESTS: MissingInterestsError,
    ErrorKind.MISSING_PSYCHOANALYSIS: MissingPsychoanalysisError,
    ErrorKind.MISSING_SOCIAL_METRICS: MissingSocialMetricsError,
    ErrorKind.MISSING_EMOTIONAL_TONE: MissingEmotionalToneError,
    ErrorKind.MISSING_VOCABULARY_PATTERNS: MissingVocabularyPatternsError,
    ErrorKind.MISSING_COMMUNICATION_PATTERNS: MissingCommunicationPatternsError,
    ErrorKind.INCOMPLETE_ANALYSIS: PersonalityAnalysisError,
}

# Checked in order; the first group with a missing field decides the kind
_MISSING_FIELD_PRECEDENCE = (
    ({"interests"}, ErrorKind.MISSING_INTERESTS),
    ({"psychoanalysis", "emotionalIntelligence", "thoughtProcess"}, ErrorKind.MISSING_PSYCHOANALYSIS),
    ({"socialBehaviorMetrics"}, ErrorKind.MISSING_SOCIAL_METRICS),
    ({"emotionalTone"}, ErrorKind.MISSING_EMOTIONAL_TONE),
    ({"vocabulary", "vocabularyMetrics", "messageArchitecture"}, ErrorKind.MISSING_VOCABULARY_PATTERNS),
    ({"communicationStyle"}, ErrorKind.MISSING_COMMUNICATION_PATTERNS),
)


def kind_for_missing_fields(missing_fields: Iterable[str]) -> ErrorKind:
    missing = set(missing_fields)
    for names, kind in _MISSING_FIELD_PRECEDENCE:
        if missing & names:
            return kind
    return ErrorKind.INCOMPLETE_ANALYSIS


def error_for_missing_fields(missing_fields: Iterable[str]) -> IncompleteAnalysisError:
    """Build the most specific typed error for a set of missing fields."""
    missing = sorted(set(missing_fields))
    error_cls = _KIND_TO_ERROR[kind_for_missing_fields(missing)]
    return error_cls(missing_fields=missing)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, (AnalysisAborted, StageAborted)):
        return ErrorKind.ABORTED
    if isinstance(exc, GenerationTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ModelUnavailableError):
        return ErrorKind.MODEL_UNAVAILABLE
    if isinstance(exc, NetworkError):
        return ErrorKind.NETWORK
    if isinstance(exc, EmptyResponseError):
        return ErrorKind.EMPTY_RESPONSE
    if isinstance(exc, LowQualityResponseError):
        return ErrorKind.LOW_QUALITY
    if isinstance(exc, PersonalityAnalysisError):
        return ErrorKind.INCOMPLETE_ANALYSIS
    if isinstance(exc, IncompleteAnalysisError):
        return kind_for_missing_fields(exc.missing_fields)
    if isinstance(exc, TextGenerationError):
        return ErrorKind.NETWORK if exc.status == 429 else ErrorKind.CRITICAL
    return ErrorKind.CRITICAL


def is_critical(exc: BaseException) -> bool:
    """Anything that is not a field-specific incomplete analysis fails the job."""
    return classify_error(exc) not in FIELD_SPECIFIC_KINDS


@dataclass
class StageOutcome:
    """Tagged result of one stage execution: ``ok`` with a record, or a kind with its cause."""

    stage: AnalysisStage
    ok: bool
    record: Optional[PartialPersonalityRecord] = None
    kind: Optional[ErrorKind] = None
    missing_fields: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None
    attempts: int = 0

    @classmethod
    def success(cls, stage: AnalysisStage, record: PartialPersonalityRecord, attempts: int) -> "StageOutcome":
        return cls(stage=stage, ok=True, record=record, attempts=attempts)

    @classmethod
    def failure(cls, stage: AnalysisStage, kind: ErrorKind, *, error: Optional[BaseException] = None,
                missing_fields: Iterable[str] = (), attempts: int = 0) -> "StageOutcome":
        return cls(stage=stage, ok=False, kind=kind, error=error,
                   missing_fields=sorted(set(missing_fields)), attempts=attempts)

    def to_exception(self) -> BaseException:
        """Typed exception to surface for a failed outcome."""
        if self.ok:
            raise ValueError("successful outcome has no exception")
        if self.kind in FIELD_SPECIFIC_KINDS or self.kind is ErrorKind.INCOMPLETE_ANALYSIS:
            return error_for_missing_fields(self.missing_fields)
        if self.error is not None:
            return self.error
        return PersonalityAnalysisError(f"Stage {self.stage.label} failed ({self.kind.value})")
