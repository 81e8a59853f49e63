"""
Stage parsers: model text -> PartialPersonalityRecord.

``parse`` is total. Any section that cannot be read falls back to the stage's neutral
placeholder values, and an unexpected exception inside a stage parser yields that stage's
defaults instead of propagating.
"""
from __future__ import annotations
import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..models import (
    AnalysisStage,
    CommunicationStyle,
    ContextualVariations,
    EmotionalIntelligence,
    NGrams,
    PartialPersonalityRecord,
    PhraseFrequency,
    SocialBehaviorMetrics,
    TermFrequency,
    ThoughtProcess,
    Trait,
    Vocabulary,
)
from . import patterns as P

logger = logging.getLogger(__name__)

# Placeholder values the parsers fall back to
SUMMARY_PLACEHOLDER = "Analysis summary not available"
NEUTRAL_TRAIT = Trait(name="Neutral", score=5, explanation="Default trait due to incomplete analysis")
INTERESTS_PLACEHOLDER = "General topics"
THEMES_PLACEHOLDER = "General themes"
COMMUNICATION_PLACEHOLDER = "Communication style analysis not available"
OPENING_PLACEHOLDER = "Standard greeting"
CLOSING_PLACEHOLDER = "Standard closing"
VARIATION_DEFAULTS = {
    "business": "Standard professional communication",
    "casual": "Relaxed and approachable",
    "technical": "Clear and precise",
    "crisis": "Direct and solution-focused",
}
TERM_PLACEHOLDERS = ("general", "standard", "typical")
ENTHUSIASM_PLACEHOLDERS = ("good", "great", "nice")
EI_DEFAULTS = {
    "leadershipStyle": "Balanced and professional",
    "challengeResponse": "Solution-oriented",
    "analyticalTone": "Neutral and objective",
}
SUPPORTIVE_PLACEHOLDER = "Positive acknowledgment"
EMOTIONAL_TONE_PLACEHOLDER = "Neutral emotional expression"


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text.replace("**", "").strip(" \t-–:*[]")).strip()


def _dedupe(items: Sequence[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        key = item.lower()
        if item and key not in seen:
            seen.add(key)
            out.append(item)
    return out


def _level(score: int) -> str:
    if score >= P.LEVEL_HIGH:
        return "high"
    if score <= P.LEVEL_LOW:
        return "low"
    return "medium"


# ---- Basic info ----
def parse_traits(lines: Sequence[str]) -> List[Trait]:
    traits = []
    for line in lines:
        if not line.strip():
            continue
        m = P.first_match(P.TRAIT_PATTERNS, line)
        if not m:
            continue
        name = _clean(m.group("name"))
        if not name:
            continue
        score = max(0, min(10, int(m.group("score"))))
        explanation = _clean(m.group("explanation") or "") or name
        traits.append(Trait(name=name, score=score, explanation=explanation))
    return sorted(traits, key=lambda t: t.score, reverse=True)


def parse_basic_info(text: str) -> PartialPersonalityRecord:
    sections = P.split_sections(text)

    summary = ""
    m = P.first_match(P.SUMMARY_PATTERNS, text)
    if m:
        summary = _clean(m.group("value"))
    if not summary:
        for section in P.find_sections(sections, P.SUMMARY_SECTION_KEYWORDS):
            paragraph = section.body.split("\n\n")[0]
            summary = " ".join(line.strip() for line in paragraph.splitlines() if line.strip())
            if summary:
                break

    trait_sections = P.find_sections(sections, P.TRAIT_SECTION_KEYWORDS)
    trait_lines = [line for s in trait_sections for line in s.lines] if trait_sections else text.splitlines()
    traits = parse_traits(trait_lines)

    return PartialPersonalityRecord(
        summary=summary or SUMMARY_PLACEHOLDER,
        traits=traits or [NEUTRAL_TRAIT.model_copy()],
    )


# ---- Interests ----
def _list_items(lines: Sequence[str], item_patterns=P.INTEREST_ITEM_PATTERNS) -> List[str]:
    items = []
    for line in lines:
        m = P.first_match(item_patterns, line)
        if not m:
            continue
        item = _clean(m.group("item"))
        if not item or any(noise in item.lower() for noise in P.INTEREST_NOISE):
            continue
        items.append(item)
    return _dedupe(items)


def parse_interests(text: str) -> PartialPersonalityRecord:
    sections = P.split_sections(text)
    interest_sections = P.find_sections(sections, P.INTEREST_SECTION_KEYWORDS)
    lines = [line for s in interest_sections for line in s.lines] if interest_sections else text.splitlines()
    interests = _list_items(lines)
    return PartialPersonalityRecord(
        interests=interests or [INTERESTS_PLACEHOLDER],
        topicsAndThemes=list(interests) or [THEMES_PLACEHOLDER],
    )


# ---- Social metrics ----
def _metric_key(name: str) -> Optional[str]:
    normalized = re.sub(r"[^a-z]", "", name.lower())
    return P.SOCIAL_METRIC_ALIASES.get(normalized)


def _social_from_lines(lines: Sequence[str], pattern: re.Pattern) -> Dict[str, int]:
    found = {}
    for line in lines:
        m = pattern.search(line)
        if not m:
            continue
        key = _metric_key(m.group("name"))
        if key:
            found[key] = max(0, min(100, int(m.group("score"))))
    return found


def _social_from_lettered(lines: Sequence[str]) -> Dict[str, int]:
    found = {}
    current = None
    for line in lines:
        header = P.SOCIAL_LETTERED_HEADER.match(line)
        if header:
            current = _metric_key(header.group("name"))
            inline = P.SOCIAL_SCORE_LINE.search(line[header.end():])
            if current and inline:
                found[current] = max(0, min(100, int(inline.group("score"))))
            continue
        if current:
            m = P.SOCIAL_SCORE_LINE.search(line)
            if m:
                found[current] = max(0, min(100, int(m.group("score"))))
    return found


def parse_social_metrics(text: str) -> PartialPersonalityRecord:
    lines = text.splitlines()
    strategies: Tuple[Callable[[], Dict[str, int]], ...] = (
        lambda: _social_from_lines(lines, P.SOCIAL_LINE_PATTERNS[0]),
        lambda: _social_from_lettered(lines),
        lambda: _social_from_lines(lines, P.SOCIAL_LINE_PATTERNS[1]),
    )
    scores: Dict[str, int] = {}
    for strategy in strategies:
        scores = strategy()
        if scores:
            break
    return PartialPersonalityRecord(socialBehaviorMetrics=SocialBehaviorMetrics(**scores))


# ---- Communication ----
def parse_communication(text: str) -> PartialPersonalityRecord:
    style = CommunicationStyle()
    sections = P.split_sections(text)
    lines = text.splitlines()

    metric_sections = P.find_sections(sections, ("core metric",))
    metric_lines = [line for s in metric_sections for line in s.lines] if metric_sections else lines
    description_parts = []
    for line in metric_lines:
        m = P.first_match(P.CORE_METRIC_PATTERNS, line)
        if not m:
            continue
        field_name = P.CORE_METRIC_FIELDS.get(_clean(m.group("name")).lower())
        if not field_name:
            continue
        level = _level(int(m.group("score")))
        setattr(style, field_name, level)
        label = _clean(m.group("name"))
        description_parts.append(f"{label} level: {level} - {_clean(m.group('explanation') or '')}".rstrip(" -"))

    for line in lines:
        m = P.WRITING_PATTERN_LINE.match(line)
        if not m:
            continue
        name, value = m.group("name").lower(), m.group("value").lower()
        if name == "capitalization":
            if "lowercase" in value:
                style.patterns.capitalization = "mostly-lowercase"
            elif "uppercase" in value:
                style.patterns.capitalization = "mostly-uppercase"
            elif "mixed" in value:
                style.patterns.capitalization = "mixed"
            else:
                style.patterns.capitalization = "standard"
        elif name == "punctuation":
            style.patterns.punctuation = _dedupe(P.PUNCTUATION_MARKS.findall(m.group("value")))
        elif name == "line breaks":
            if "frequent" in value:
                style.patterns.lineBreaks = "frequent"
            elif "moderate" in value:
                style.patterns.lineBreaks = "moderate"
            else:
                style.patterns.lineBreaks = "minimal"

    structure = style.patterns.messageStructure
    for keyword, attr in P.STRUCTURE_SECTIONS.items():
        for section in P.find_sections(sections, (keyword,)):
            getattr(structure, attr).extend(_clean(item) for item in P.bullet_items(section.lines))
    structure.opening = _dedupe(structure.opening) or [OPENING_PLACEHOLDER]
    structure.framing = _dedupe(structure.framing)
    structure.closing = _dedupe(structure.closing) or [CLOSING_PLACEHOLDER]

    variations = {}
    for line in lines:
        m = P.VARIATION_LINE.match(line)
        if m:
            variations.setdefault(m.group("context").lower(), _clean(m.group("value")))
    style.contextualVariations = ContextualVariations(
        **{key: variations.get(key) or default for key, default in VARIATION_DEFAULTS.items()}
    )

    style.description = ". ".join(description_parts) or COMMUNICATION_PLACEHOLDER
    return PartialPersonalityRecord(communicationStyle=style)


# ---- Vocabulary ----
def _frequency_item(item: str) -> Optional[Tuple[str, int, float]]:
    m = P.first_match(P.FREQUENCY_ITEM_PATTERNS, item)
    if not m:
        return None
    term = _clean(m.group("term")).strip("\"'")
    if not term:
        return None
    groups = m.groupdict()
    frequency = int(groups.get("frequency") or 0)
    percentage = float(groups.get("percentage") or 0)
    return term, frequency, percentage


def parse_vocabulary(text: str) -> PartialPersonalityRecord:
    sections = P.split_sections(text)
    collected: Dict[str, List[str]] = {attr: [] for attr in P.VOCAB_SECTIONS.values()}
    for keyword, attr in P.VOCAB_SECTIONS.items():
        for section in P.find_sections(sections, (keyword,)):
            collected[attr].extend(P.bullet_items(section.lines))

    def frequencies(attr: str) -> List[Tuple[str, int, float]]:
        return [parsed for parsed in (_frequency_item(i) for i in collected[attr]) if parsed]

    terms = [TermFrequency(term=t, frequency=f, percentage=p) for t, f, p in frequencies("commonTerms")]
    vocabulary = Vocabulary(
        commonTerms=terms or [TermFrequency(term=t) for t in TERM_PLACEHOLDERS],
        commonPhrases=[PhraseFrequency(phrase=t, frequency=f, percentage=p) for t, f, p in frequencies("commonPhrases")],
        enthusiasmMarkers=_dedupe([_clean(i) for i in collected["enthusiasmMarkers"]]) or list(ENTHUSIASM_PLACEHOLDERS),
        industryTerms=_dedupe([_clean(i) for i in collected["industryTerms"]]),
        nGrams=NGrams(
            bigrams=[PhraseFrequency(phrase=t, frequency=f, percentage=p) for t, f, p in frequencies("bigrams")],
            trigrams=[PhraseFrequency(phrase=t, frequency=f, percentage=p) for t, f, p in frequencies("trigrams")],
        ),
    )
    return PartialPersonalityRecord(vocabulary=vocabulary)


# ---- Emotional ----
def parse_emotional(text: str) -> PartialPersonalityRecord:
    sections = P.split_sections(text)

    ei_values = {}
    for attr, candidates in P.EI_LINE_PATTERNS.items():
        m = P.first_match(candidates, text)
        ei_values[attr] = _clean(m.group("value")) if m else ""
        ei_values[attr] = ei_values[attr] or EI_DEFAULTS[attr]

    supportive = []
    for section in P.find_sections(sections, P.SUPPORTIVE_SECTION_KEYWORDS):
        supportive.extend(_clean(item) for item in P.bullet_items(section.lines))
    supportive = _dedupe(supportive) or [SUPPORTIVE_PLACEHOLDER]

    tone = ""
    for include, exclude in P.EMOTIONAL_TONE_SECTIONS:
        for section in P.find_sections(sections, include, exclude):
            tone = " ".join(line.strip() for line in section.lines if line.strip())
            if tone:
                break
        if tone:
            break

    themes = []
    for section in P.find_sections(sections, P.THEME_SECTION_KEYWORDS):
        themes.extend(_list_items(section.lines))

    return PartialPersonalityRecord(
        emotionalIntelligence=EmotionalIntelligence(supportivePatterns=supportive, **ei_values),
        emotionalTone=tone or EMOTIONAL_TONE_PLACEHOLDER,
        thoughtProcess=ThoughtProcess(
            initialApproach=ei_values["leadershipStyle"],
            processingStyle=ei_values["challengeResponse"],
            expressionStyle=ei_values["analyticalTone"],
        ),
        topicsAndThemes=_dedupe(themes) or None,
    )


STAGE_PARSERS: Dict[AnalysisStage, Callable[[str], PartialPersonalityRecord]] = {
    AnalysisStage.BASIC_INFO: parse_basic_info,
    AnalysisStage.INTERESTS: parse_interests,
    AnalysisStage.SOCIAL_METRICS: parse_social_metrics,
    AnalysisStage.COMMUNICATION: parse_communication,
    AnalysisStage.VOCABULARY: parse_vocabulary,
    AnalysisStage.EMOTIONAL: parse_emotional,
}


def parse(stage: AnalysisStage, text: Optional[str]) -> PartialPersonalityRecord:
    """Parse one stage's model output. Never raises."""
    parser = STAGE_PARSERS[AnalysisStage(stage)]
    try:
        return parser(text or "")
    except Exception as e:
        logger.warning(f"Parser for {AnalysisStage(stage).label} failed, using defaults: {e}")
        return parser("")
