from __future__ import annotations
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field

Level = Literal["low", "medium", "high"]


class AnalysisStage(IntEnum):
    """Analysis stages in execution order. The integer value is the persisted stage index."""

    BASIC_INFO = 1
    INTERESTS = 2
    SOCIAL_METRICS = 3
    COMMUNICATION = 4
    VOCABULARY = 5
    EMOTIONAL = 6

    @property
    def label(self) -> str:
        return self.name.lower()

    def next(self) -> Optional["AnalysisStage"]:
        if self is AnalysisStage.EMOTIONAL:
            return None
        return AnalysisStage(self.value + 1)


TOTAL_STAGES = len(AnalysisStage)

# Percent complete reported once a stage has finished
STAGE_PROGRESS: Dict[AnalysisStage, int] = {
    AnalysisStage.BASIC_INFO: 20,
    AnalysisStage.INTERESTS: 40,
    AnalysisStage.SOCIAL_METRICS: 60,
    AnalysisStage.COMMUNICATION: 80,
    AnalysisStage.VOCABULARY: 90,
    AnalysisStage.EMOTIONAL: 100,
}

# Record fields each stage is responsible for producing
STAGE_FIELDS: Dict[AnalysisStage, Set[str]] = {
    AnalysisStage.BASIC_INFO: {"summary", "traits"},
    AnalysisStage.INTERESTS: {"interests"},
    AnalysisStage.SOCIAL_METRICS: {"socialBehaviorMetrics"},
    AnalysisStage.COMMUNICATION: {"communicationStyle"},
    AnalysisStage.VOCABULARY: {"vocabulary", "vocabularyMetrics"},
    AnalysisStage.EMOTIONAL: {"emotionalIntelligence", "emotionalTone", "thoughtProcess"},
}


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DeviceClass(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


# ---- Inputs ----
class Post(BaseModel):
    id: Optional[str] = None
    text: Optional[str] = None
    createdAt: Optional[str] = None


class Profile(BaseModel):
    name: Optional[str] = None
    bio: Optional[str] = None
    followersCount: Optional[int] = None
    followingCount: Optional[int] = None


# ---- Personality record ----
class Trait(BaseModel):
    name: str
    score: int = Field(..., ge=0, le=10)
    explanation: str = ""


class SocialBehaviorMetrics(BaseModel):
    oversharer: int = 0
    replyGuy: int = 0
    viralChaser: int = 0
    threadMaker: int = 0
    retweeter: int = 0
    hotTaker: int = 0
    joker: int = 0
    debater: int = 0
    doomPoster: int = 0
    earlyAdopter: int = 0
    knowledgeDropper: int = 0
    hypeBeast: int = 0


class MessageStructure(BaseModel):
    opening: List[str] = Field(default_factory=list)
    framing: List[str] = Field(default_factory=list)
    closing: List[str] = Field(default_factory=list)


class WritingPatterns(BaseModel):
    capitalization: str = "mixed"
    punctuation: List[str] = Field(default_factory=list)
    lineBreaks: str = "minimal"
    messageStructure: MessageStructure = Field(default_factory=MessageStructure)


class ContextualVariations(BaseModel):
    business: str = ""
    casual: str = ""
    technical: str = ""
    crisis: str = ""


class CommunicationStyle(BaseModel):
    formality: Level = "medium"
    enthusiasm: Level = "medium"
    technicalLevel: Level = "medium"
    emojiUsage: Level = "medium"
    verbosity: Level = "medium"
    description: str = ""
    patterns: WritingPatterns = Field(default_factory=WritingPatterns)
    contextualVariations: ContextualVariations = Field(default_factory=ContextualVariations)


class TermFrequency(BaseModel):
    term: str
    frequency: int = 0
    percentage: float = 0.0
    category: Optional[str] = None


class PhraseFrequency(BaseModel):
    phrase: str
    frequency: int = 0
    percentage: float = 0.0


class NGrams(BaseModel):
    bigrams: List[PhraseFrequency] = Field(default_factory=list)
    trigrams: List[PhraseFrequency] = Field(default_factory=list)


class LengthBuckets(BaseModel):
    veryShort: float = 0
    short: float = 0
    medium: float = 0
    long: float = 0
    veryLong: float = 0


class SentenceLengths(LengthBuckets):
    distribution: LengthBuckets = Field(default_factory=LengthBuckets)


class CapitalizationStats(BaseModel):
    lowercase: float = 0
    sentenceCase: float = 0
    mixedCase: float = 0
    totalMessages: int = 0


class StructureTypes(BaseModel):
    singleWord: float = 0
    shortPhrase: float = 0
    actionOriented: float = 0
    bulletedList: float = 0
    streamOfConsciousness: float = 0


class TerminalPunctuation(BaseModel):
    none: float = 0
    period: float = 0
    questionMark: float = 0
    exclamationMark: float = 0
    ellipsis: float = 0


class CharacterMetrics(BaseModel):
    averageLength: float = 0
    shortMessages: float = 0
    longMessages: float = 0


class FormattingPreferences(BaseModel):
    usesMarkdown: bool = False
    usesBulletPoints: bool = False
    usesNumberedLists: bool = False
    usesCodeBlocks: bool = False
    preferredListStyle: Literal["bullet", "numbered", "none"] = "none"


class MessageArchitecture(BaseModel):
    structureTypes: StructureTypes = Field(default_factory=StructureTypes)
    terminalPunctuation: TerminalPunctuation = Field(default_factory=TerminalPunctuation)
    characterMetrics: CharacterMetrics = Field(default_factory=CharacterMetrics)
    preferences: FormattingPreferences = Field(default_factory=FormattingPreferences)


class VocabularyMetrics(BaseModel):
    sentenceLengths: SentenceLengths = Field(default_factory=SentenceLengths)
    capitalizationStats: CapitalizationStats = Field(default_factory=CapitalizationStats)
    averageMessageLength: float = 0
    uniqueWordsCount: int = 0
    totalWordsAnalyzed: int = 0
    messageArchitecture: MessageArchitecture = Field(default_factory=MessageArchitecture)


class Vocabulary(BaseModel):
    commonTerms: List[TermFrequency] = Field(default_factory=list)
    commonPhrases: List[PhraseFrequency] = Field(default_factory=list)
    enthusiasmMarkers: List[str] = Field(default_factory=list)
    industryTerms: List[str] = Field(default_factory=list)
    nGrams: NGrams = Field(default_factory=NGrams)
    metrics: VocabularyMetrics = Field(default_factory=VocabularyMetrics)


class EmotionalIntelligence(BaseModel):
    leadershipStyle: str = ""
    challengeResponse: str = ""
    analyticalTone: str = ""
    supportivePatterns: List[str] = Field(default_factory=list)


class ThoughtProcess(BaseModel):
    initialApproach: str = ""
    processingStyle: str = ""
    expressionStyle: str = ""


# Fields merged by union rather than first-writer-wins
COLLECTION_FIELDS = ("traits", "interests", "topicsAndThemes")

RECORD_FIELDS = (
    "summary",
    "traits",
    "interests",
    "socialBehaviorMetrics",
    "communicationStyle",
    "vocabulary",
    "emotionalIntelligence",
    "topicsAndThemes",
    "emotionalTone",
    "thoughtProcess",
)


class PersonalityRecord(BaseModel):
    summary: str = ""
    traits: List[Trait] = Field(default_factory=list)
    interests: List[str] = Field(default_factory=list)
    socialBehaviorMetrics: SocialBehaviorMetrics = Field(default_factory=SocialBehaviorMetrics)
    communicationStyle: CommunicationStyle = Field(default_factory=CommunicationStyle)
    vocabulary: Vocabulary = Field(default_factory=Vocabulary)
    emotionalIntelligence: EmotionalIntelligence = Field(default_factory=EmotionalIntelligence)
    topicsAndThemes: List[str] = Field(default_factory=list)
    emotionalTone: str = ""
    thoughtProcess: ThoughtProcess = Field(default_factory=ThoughtProcess)


class PartialPersonalityRecord(BaseModel):
    """Output of one stage: only the fields that stage contributed are set."""

    summary: Optional[str] = None
    traits: Optional[List[Trait]] = None
    interests: Optional[List[str]] = None
    socialBehaviorMetrics: Optional[SocialBehaviorMetrics] = None
    communicationStyle: Optional[CommunicationStyle] = None
    vocabulary: Optional[Vocabulary] = None
    emotionalIntelligence: Optional[EmotionalIntelligence] = None
    topicsAndThemes: Optional[List[str]] = None
    emotionalTone: Optional[str] = None
    thoughtProcess: Optional[ThoughtProcess] = None

    def present_fields(self) -> Set[str]:
        return {name for name in RECORD_FIELDS if getattr(self, name) is not None}

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ---- Jobs and progress ----
class AnalysisJobInfo(BaseModel):
    id: str
    identity: str
    totalStages: int
    processedStages: int = 0
    status: JobStatus = JobStatus.PENDING
    errorMessage: Optional[str] = None
    createdAt: Optional[datetime] = None
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None


class StageResult(BaseModel):
    jobId: str
    stage: AnalysisStage
    itemCount: int = 0
    status: JobStatus = JobStatus.COMPLETED
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    createdAt: Optional[datetime] = None


class ProgressUpdate(BaseModel):
    stage: str
    percentComplete: int
