"""
Candidate patterns for pulling fields out of model text.

Each field has an ordered tuple of patterns. Parsers try them in order and keep the first
that matches, so precedence is the position in the tuple, not the position in the text.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

M = re.MULTILINE
I = re.IGNORECASE

# ---- Section headings ----
HEADING_PATTERNS: Tuple[Pattern[str], ...] = (
    # ### Title / ## 3. Title
    re.compile(r"^\s*#{1,6}\s*(?:\d+\.\s*)?(?P<title>.+?)\s*:?\s*$"),
    # **Title** / **Title:**
    re.compile(r"^\s*\*\*(?P<title>[^*]+?):?\*\*\s*:?\s*$"),
    # 1. Title (notes): / A. Title: / b) Title:
    re.compile(r"^\s*(?:\d+|[A-Za-z])[.)]\s+(?P<title>[A-Za-z][^:\n*\[]*?)\s*:\s*$"),
    # Title:
    re.compile(r"^\s*(?P<title>[A-Za-z][A-Za-z0-9 &/'(),\-]{1,60}?)\s*:\s*$"),
)

BULLET = re.compile(r"^\s*(?:[-•*]|\d+[.)])\s+(?P<item>.+?)\s*$")

# ---- Basic info ----
SUMMARY_PATTERNS: Tuple[Pattern[str], ...] = (
    # Summary: text on the same line
    re.compile(r"^\s*(?:#+\s*)?(?:\d+\.\s*)?\**Summary\**(?:\s*\([^)\n]*\))?\s*:\**[ \t]*(?P<value>\S[^\n]*)$", M | I),
)

TRAIT_PATTERNS: Tuple[Pattern[str], ...] = (
    # - **Name** [8/10] - explanation
    re.compile(r"^\s*(?:[-•*]|\d+\.)?\s*\*\*(?P<name>[^*]+)\*\*\s*\[(?P<score>\d+)\s*/\s*10\]\s*[-–:]?\s*(?P<explanation>.*)$"),
    # Name: 8/10 - explanation
    re.compile(r"^\s*(?:[-•*]|\d+\.)?\s*(?P<name>[^:\[\n(]+?)\s*:\s*(?P<score>\d+)\s*/\s*10\s*[-–:]?\s*(?P<explanation>.*)$"),
    # Name (8/10): explanation
    re.compile(r"^\s*(?:[-•*]|\d+\.)?\s*(?P<name>[^(\n]+?)\s*\((?P<score>\d+)\s*/\s*10\)\s*[-–:]?\s*(?P<explanation>.*)$"),
    # Name - 8/10 - explanation
    re.compile(r"^\s*(?:[-•*]|\d+\.)?\s*(?P<name>[^\n]+?)\s+[-–]\s*(?P<score>\d+)\s*/\s*10\s*[-–:]?\s*(?P<explanation>.*)$"),
    # - Name [8/10] - explanation
    re.compile(r"^\s*[-•*]\s*(?P<name>[^\[\n]+?)\s*\[(?P<score>\d+)\s*/\s*10\]\s*[-–:]?\s*(?P<explanation>.*)$"),
)

TRAIT_SECTION_KEYWORDS = ("personality trait", "core trait", "traits")
SUMMARY_SECTION_KEYWORDS = ("summary",)

# ---- Interests ----
INTEREST_SECTION_KEYWORDS = ("interest", "expertise", "areas of focus")
INTEREST_ITEM_PATTERNS: Tuple[Pattern[str], ...] = (
    # - **Interest**: notes
    re.compile(r"^\s*(?:[-•*]|\d+[.)])\s+\*\*(?P<item>[^*]+?)\*\*"),
    # - Interest: notes
    re.compile(r"^\s*(?:[-•*]|\d+[.)])\s+(?P<item>[^:\n]+?)\s*(?::.*)?$"),
)
INTEREST_NOISE = ("expertise level", "evidence")
THEME_SECTION_KEYWORDS = ("primary themes", "topics/themes", "topics and themes")

# ---- Social metrics ----
SOCIAL_METRIC_ALIASES: Dict[str, str] = {
    "oversharer": "oversharer",
    "replyguy": "replyGuy",
    "reply": "replyGuy",
    "viralchaser": "viralChaser",
    "viral": "viralChaser",
    "threadmaker": "threadMaker",
    "thread": "threadMaker",
    "retweeter": "retweeter",
    "retweet": "retweeter",
    "reposter": "retweeter",
    "hottakes": "hotTaker",
    "hottaker": "hotTaker",
    "hot": "hotTaker",
    "joker": "joker",
    "joke": "joker",
    "debater": "debater",
    "debate": "debater",
    "doomposter": "doomPoster",
    "doom": "doomPoster",
    "earlyadopter": "earlyAdopter",
    "early": "earlyAdopter",
    "knowledgedropper": "knowledgeDropper",
    "knowledge": "knowledgeDropper",
    "hypebeast": "hypeBeast",
    "hype": "hypeBeast",
}

SOCIAL_LINE_PATTERNS: Tuple[Pattern[str], ...] = (
    # - Name: Score 65 - explanation
    re.compile(r"^\s*[-•*]\s*(?P<name>[^:\n]+?)\s*:\s*Score\s*(?P<score>\d+)", I),
    # Name score: 65 / Name: 65/100
    re.compile(r"^\s*[-•*]?\s*(?P<name>[A-Za-z][A-Za-z \-]*?)\s*(?:score)?\s*:\s*(?P<score>\d+)(?:\s*/\s*100)?\b", I),
)
# a) Oversharer:   followed later by   Score: 65
SOCIAL_LETTERED_HEADER = re.compile(r"^\s*[a-z]\)\s*(?P<name>[^:\n]+):", I)
SOCIAL_SCORE_LINE = re.compile(r"score\s*:\s*(?P<score>\d+)", I)

# ---- Communication ----
LEVEL_HIGH = 70
LEVEL_LOW = 30
CORE_METRIC_PATTERNS: Tuple[Pattern[str], ...] = (
    # - Formality: 70 - explanation
    re.compile(r"^\s*[-•*]\s*(?P<name>[^:\n]+?)\s*:\s*(?P<score>\d+)(?:\s*/\s*100)?\s*[-–]\s*(?P<explanation>.+)$"),
    # - Formality: Score 70 - explanation
    re.compile(r"^\s*[-•*]\s*(?P<name>[^:\n]+?)\s*:\s*Score\s*(?P<score>\d+)\s*[-–]?\s*(?P<explanation>.*)$", I),
)
CORE_METRIC_FIELDS: Dict[str, str] = {
    "formality": "formality",
    "enthusiasm": "enthusiasm",
    "technical level": "technicalLevel",
    "technicality": "technicalLevel",
    "emoji usage": "emojiUsage",
    "emojis": "emojiUsage",
    "verbosity": "verbosity",
}
WRITING_PATTERN_LINE = re.compile(r"^\s*[-•*]\s*(?P<name>capitalization|punctuation|line breaks)\s*:\s*(?P<value>.+)$", I)
PUNCTUATION_MARKS = re.compile(r"\.\.\.|…|[.!?\-]+")
STRUCTURE_SECTIONS: Dict[str, str] = {
    "opening pattern": "opening",
    "framing pattern": "framing",
    "closing pattern": "closing",
}
VARIATION_LINE = re.compile(r"^\s*(?:[-•*]\s*)?\**(?P<context>business|casual|technical|crisis)\**\s*:\s*(?P<value>\S.*)$", I)

# ---- Vocabulary ----
VOCAB_SECTIONS: Dict[str, str] = {
    "common terms": "commonTerms",
    "common phrases": "commonPhrases",
    "enthusiasm markers": "enthusiasmMarkers",
    "industry terms": "industryTerms",
    "bigrams": "bigrams",
    "trigrams": "trigrams",
}
FREQUENCY_ITEM_PATTERNS: Tuple[Pattern[str], ...] = (
    # term (5, 12%)
    re.compile(r"^(?P<term>[^(\n]+?)\s*\(\s*(?P<frequency>\d+)\s*,\s*(?P<percentage>\d+(?:\.\d+)?)\s*%\s*\)"),
    # term (12%)
    re.compile(r"^(?P<term>[^(\n]+?)\s*\(\s*(?P<percentage>\d+(?:\.\d+)?)\s*%\s*\)"),
    # term (5)
    re.compile(r"^(?P<term>[^(\n]+?)\s*\(\s*(?P<frequency>\d+)\s*\)"),
    # term
    re.compile(r"^(?P<term>[^(\n]+?)\s*$"),
)

# ---- Emotional ----
EI_LINE_PATTERNS: Dict[str, Tuple[Pattern[str], ...]] = {
    "leadershipStyle": (re.compile(r"^\s*(?:[-•*]\s*)?\**Leadership Style\**\s*:\s*\**\s*(?P<value>\S.*)$", M | I),),
    "challengeResponse": (re.compile(r"^\s*(?:[-•*]\s*)?\**Challenge Response\**\s*:\s*\**\s*(?P<value>\S.*)$", M | I),),
    "analyticalTone": (re.compile(r"^\s*(?:[-•*]\s*)?\**Analytical Tone\**\s*:\s*\**\s*(?P<value>\S.*)$", M | I),),
}
SUPPORTIVE_SECTION_KEYWORDS = ("supportive pattern",)
EMOTIONAL_TONE_SECTIONS: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...]], ...] = (
    # (include keywords, exclude keywords), tried in order
    (("emotional expression", "emotional tone"), ()),
    (("emotion",), ("intelligence",)),
)


# ---- Section splitting ----
@dataclass
class Section:
    title: str
    lines: List[str] = field(default_factory=list)

    @property
    def body(self) -> str:
        return "\n".join(self.lines).strip()


def heading_title(line: str) -> Optional[str]:
    for pattern in HEADING_PATTERNS:
        m = pattern.match(line)
        if m:
            return m.group("title").strip().strip("*").strip()
    return None


def split_sections(text: str) -> List[Section]:
    """Split model text on heading lines. Text before the first heading has an empty title."""
    sections = [Section(title="")]
    for line in text.splitlines():
        title = heading_title(line)
        if title is not None:
            sections.append(Section(title=title))
        else:
            sections[-1].lines.append(line)
    return sections


def find_sections(sections: Sequence[Section], include: Sequence[str],
                  exclude: Sequence[str] = ()) -> List[Section]:
    found = []
    for section in sections:
        title = section.title.lower()
        if any(k in title for k in include) and not any(k in title for k in exclude):
            found.append(section)
    return found


def first_match(patterns: Sequence[Pattern[str]], text: str) -> Optional[re.Match]:
    for pattern in patterns:
        m = pattern.search(text)
        if m:
            return m
    return None


def bullet_items(lines: Sequence[str]) -> List[str]:
    items = []
    for line in lines:
        m = BULLET.match(line)
        if m:
            items.append(m.group("item").strip())
    return items
