import pytest

from personality_engine.models import AnalysisStage
from personality_engine.parsers.patterns import heading_title, split_sections
from personality_engine.parsers.stages import (
    COMMUNICATION_PLACEHOLDER,
    INTERESTS_PLACEHOLDER,
    SUMMARY_PLACEHOLDER,
    parse,
    parse_traits,
)
from personality_engine.validator import validate

from fakes import BASIC_INFO, COMMUNICATION, EMOTIONAL, INTERESTS, SOCIAL_METRICS, VOCABULARY

MALFORMED = [
    "",
    "   \n\n  ",
    "I'm sorry, I can't help with that.",
    "**Summary**\n\n- [/10]\n::::\n### \n1. :",
    "Score: abc\n- Oversharer: Score\n- : 9/10",
    "\x00\x01 binary-ish � text ((((",
]


@pytest.mark.parametrize("stage", list(AnalysisStage))
@pytest.mark.parametrize("text", MALFORMED)
def test_parse_then_validate_never_raises(stage, text):
    partial = parse(stage, text)
    report = validate(partial)
    assert isinstance(report.missing_fields, list)


@pytest.mark.parametrize("stage,text", [
    (AnalysisStage.BASIC_INFO, BASIC_INFO),
    (AnalysisStage.COMMUNICATION, COMMUNICATION),
    (AnalysisStage.EMOTIONAL, EMOTIONAL),
])
def test_parse_is_idempotent(stage, text):
    assert parse(stage, text) == parse(stage, text)


def test_none_text_is_treated_as_empty():
    partial = parse(AnalysisStage.BASIC_INFO, None)
    assert partial.summary == SUMMARY_PLACEHOLDER


class TestSections:
    """Heading detection used by every stage parser."""

    def test_heading_shapes(self):
        assert heading_title("### Core Personality Traits") == "Core Personality Traits"
        assert heading_title("**Supportive Patterns:**") == "Supportive Patterns"
        assert heading_title("2. Primary Interests & Expertise:") == "Primary Interests & Expertise"
        assert heading_title("Emotional Expression:") == "Emotional Expression"
        assert heading_title("- Formality: 35 - relaxed") is None
        assert heading_title("Summary: a full sentence") is None

    def test_preamble_has_empty_title(self):
        sections = split_sections("intro line\nTraits:\n- a")
        assert sections[0].title == ""
        assert sections[0].lines == ["intro line"]
        assert sections[1].title == "Traits"


class TestBasicInfo:
    def test_summary_and_traits(self):
        partial = parse(AnalysisStage.BASIC_INFO, BASIC_INFO)
        assert partial.summary.startswith("Maya is a curious product engineer")
        assert [t.name for t in partial.traits] == ["Analytical", "Generous", "Playful"]
        assert partial.traits[0].score == 8
        assert partial.present_fields() == {"summary", "traits"}

    def test_summary_from_section_paragraph(self):
        text = "Summary:\nLoves tooling.\nPosts daily.\n\nSecond paragraph.\n"
        partial = parse(AnalysisStage.BASIC_INFO, text)
        assert partial.summary == "Loves tooling. Posts daily."

    def test_missing_traits_yield_neutral_placeholder(self):
        partial = parse(AnalysisStage.BASIC_INFO, "Summary: short and sweet overview of the person.")
        assert len(partial.traits) == 1
        assert partial.traits[0].name == "Neutral"
        assert "traits" in validate(partial).missing_fields

    def test_trait_shapes_in_precedence_order(self):
        traits = parse_traits([
            "- Curious: 9/10 - asks questions",
            "Patient (6/10): waits for data",
            "- Direct - 4/10 - blunt feedback",
            "- Kind [7/10] - warm replies",
        ])
        assert [(t.name, t.score) for t in traits] == [
            ("Curious", 9), ("Kind", 7), ("Patient", 6), ("Direct", 4),
        ]

    def test_scores_are_clamped(self):
        traits = parse_traits(["- **Bold** [14/10] - very bold"])
        assert traits[0].score == 10


class TestInterests:
    def test_bullets_become_interests_and_topics(self):
        partial = parse(AnalysisStage.INTERESTS, INTERESTS)
        assert partial.interests == [
            "Developer tooling", "Open source maintenance", "Mentorship", "Coffee brewing",
        ]
        assert partial.topicsAndThemes == partial.interests

    def test_no_bullets_yields_placeholder(self):
        partial = parse(AnalysisStage.INTERESTS, "Primary Interests:\nNothing stands out in these posts.")
        assert partial.interests == [INTERESTS_PLACEHOLDER]
        assert validate(partial).missing_interests

    def test_noise_and_duplicates_are_dropped(self):
        text = "Interests:\n- **Rust**: systems\n- rust\n- Expertise Level: high\n- Evidence: posts"
        partial = parse(AnalysisStage.INTERESTS, text)
        assert partial.interests == ["Rust"]


class TestSocialMetrics:
    def test_score_lines(self):
        metrics = parse(AnalysisStage.SOCIAL_METRICS, SOCIAL_METRICS).socialBehaviorMetrics
        assert metrics.oversharer == 35
        assert metrics.replyGuy == 60
        assert metrics.hotTaker == 25
        assert metrics.knowledgeDropper == 85

    def test_lettered_headers(self):
        text = "a) Oversharer:\n   Score: 40\nb) Joker:\n   Score: 120\n"
        metrics = parse(AnalysisStage.SOCIAL_METRICS, text).socialBehaviorMetrics
        assert metrics.oversharer == 40
        assert metrics.joker == 100

    def test_fallback_shape(self):
        metrics = parse(AnalysisStage.SOCIAL_METRICS, "Debater score: 70\nDoom Poster: 12/100").socialBehaviorMetrics
        assert metrics.debater == 70
        assert metrics.doomPoster == 12

    def test_nothing_found_is_all_zero(self):
        partial = parse(AnalysisStage.SOCIAL_METRICS, "no numbers here")
        assert validate(partial).missing_social_metrics


class TestCommunication:
    def test_full_response(self):
        style = parse(AnalysisStage.COMMUNICATION, COMMUNICATION).communicationStyle
        assert style.formality == "medium"
        assert style.enthusiasm == "high"
        assert style.technicalLevel == "high"
        assert style.emojiUsage == "low"
        assert style.patterns.capitalization == "mostly-lowercase"
        assert style.patterns.punctuation == ["!", "..."]
        assert style.patterns.lineBreaks == "moderate"
        assert style.patterns.messageStructure.framing == ["Uses numbered lessons to frame advice"]
        assert style.contextualVariations.crisis == "calm, lists next steps"
        assert style.description.startswith("Formality level: medium")

    def test_defaults_when_unparseable(self):
        partial = parse(AnalysisStage.COMMUNICATION, "They write normally.")
        style = partial.communicationStyle
        assert style.formality == "medium"
        assert style.description == COMMUNICATION_PLACEHOLDER
        assert style.patterns.messageStructure.opening == ["Standard greeting"]
        assert validate(partial).missing_communication_patterns


class TestVocabulary:
    def test_sections(self):
        vocabulary = parse(AnalysisStage.VOCABULARY, VOCABULARY).vocabulary
        assert vocabulary.commonTerms[0].term == "shipping"
        assert vocabulary.commonTerms[0].frequency == 12
        assert vocabulary.commonTerms[0].percentage == pytest.approx(4.5)
        assert vocabulary.enthusiasmMarkers == ["love this", "so good"]
        assert vocabulary.nGrams.trigrams[0].phrase == "ship it today"

    def test_placeholders(self):
        vocabulary = parse(AnalysisStage.VOCABULARY, "").vocabulary
        assert [t.term for t in vocabulary.commonTerms] == ["general", "standard", "typical"]
        assert vocabulary.enthusiasmMarkers == ["good", "great", "nice"]


class TestEmotional:
    def test_full_response(self):
        partial = parse(AnalysisStage.EMOTIONAL, EMOTIONAL)
        ei = partial.emotionalIntelligence
        assert ei.leadershipStyle == "Leads by example and shares credit openly"
        assert ei.supportivePatterns[1] == "Offers to pair with people who are stuck"
        assert partial.emotionalTone.startswith("Warm and upbeat")
        assert partial.topicsAndThemes == ["Craftsmanship", "Community"]
        assert partial.thoughtProcess.initialApproach == ei.leadershipStyle

    def test_defaults(self):
        partial = parse(AnalysisStage.EMOTIONAL, "")
        assert partial.topicsAndThemes is None
        report = validate(partial)
        assert report.missing_psychoanalysis
        assert report.missing_emotional_tone
