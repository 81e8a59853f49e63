"""
Local text statistics over a profile's posts.

Computed without the model and merged into the vocabulary stage: word frequencies,
sentence-length buckets, capitalization and message architecture. All percentages are
0-100 and every function tolerates an empty post list.
"""
from __future__ import annotations
import random
import re
from collections import Counter
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .config import settings
from .models import (
    CapitalizationStats,
    LengthBuckets,
    MessageArchitecture,
    PartialPersonalityRecord,
    PersonalityRecord,
    Post,
    SentenceLengths,
    TermFrequency,
    VocabularyMetrics,
)

LONG_MESSAGE_CHARS = 280
SHORT_MESSAGE_CHARS = 50
TOP_TERMS = 20

_EMOJI = re.compile("[\U0001F300-\U0001FAFF☀-➿]")
_ACTION_START = re.compile(r"^[A-Za-z]+(?:ed|ing|s|)\b")
_NUMBERED_LINE = re.compile(r"\n\d+\.")
_SENTENCE_BREAK = re.compile(r"[.!?]+")
_TERMINAL = re.compile(r"[.!?…]$")
_MARKDOWN = re.compile(r"(\*\*[^*]+\*\*|__[^_]+__|\[[^\]]+\]\([^)]+\)|^#{1,6}\s)", re.MULTILINE)

_PRONOUNS = {"i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them"}
_MODALS = {"can", "could", "will", "would", "shall", "should", "may", "might", "must"}
_ADJECTIVES = {"good", "great", "nice", "bad", "best", "better", "worse", "worst"}
_VERBS = {"is", "are", "was", "were", "be", "have", "has", "had", "do", "does", "did"}
_PLURAL_NOUN = re.compile(r"^[a-z]+[^s]s$")


def count_words(text: Optional[str]) -> int:
    if not text:
        return 0
    return len(text.split())


def filter_posts(posts: Iterable[Post], min_words: Optional[int] = None) -> List[Post]:
    """Posts with text of at least ``min_words`` words."""
    min_words = settings.MIN_POST_WORDS if min_words is None else min_words
    return [p for p in posts if p.text and count_words(p.text) >= min_words]


def _pct(count: float, total: int) -> float:
    return (count / total) * 100 if total else 0.0


def select_representative_posts(posts: Sequence[Post],
                                analysis: Optional[PersonalityRecord | PartialPersonalityRecord] = None,
                                limit: Optional[int] = None,
                                rng: Optional[random.Random] = None) -> List[Post]:
    """Pick example posts for the prompt.

    Reposts, replies and overlong posts are skipped. Without an analysis the selection is
    random; otherwise posts are ranked by how well they match known traits, interests and
    communication style.
    """
    limit = settings.MAX_EXAMPLE_POSTS if limit is None else limit
    rng = rng or random.Random()
    candidates = [
        p for p in posts
        if p.text and len(p.text) < LONG_MESSAGE_CHARS
        and not p.text.startswith("RT ") and not p.text.startswith("@")
    ]
    if analysis is None:
        shuffled = list(candidates)
        rng.shuffle(shuffled)
        return shuffled[:limit]

    traits = [t.name for t in (analysis.traits or []) if t.name]
    interests = [i.lower() for i in (analysis.interests or []) if i]
    style = analysis.communicationStyle

    def score(post: Post) -> int:
        text = post.text or ""
        lowered = text.lower()
        points = sum(1 for name in traits if name.lower() in lowered)
        points += sum(1 for interest in interests if interest in lowered)
        if style is not None:
            emojis = len(_EMOJI.findall(text))
            if (style.emojiUsage == "high" and emojis) or (style.emojiUsage == "low" and not emojis) \
                    or (style.emojiUsage == "medium" and 0 < emojis <= 2):
                points += 1
            bangs = text.count("!")
            if (style.enthusiasm == "high" and bangs > 2) or (style.enthusiasm == "low" and bangs == 0) \
                    or (style.enthusiasm == "medium" and bangs <= 2):
                points += 1
        return points

    return sorted(candidates, key=score, reverse=True)[:limit]


def categorize_word(word: str) -> str:
    word = word.lower()
    if word in _PRONOUNS:
        return "pronoun"
    if word in _MODALS:
        return "modal"
    if word in _ADJECTIVES:
        return "adjective"
    if word in _VERBS:
        return "verb"
    if _PLURAL_NOUN.match(word):
        return "noun"
    return "other"


def analyze_message_architecture(texts: Sequence[str]) -> MessageArchitecture:
    arch = MessageArchitecture()
    total = len(texts)
    if not total:
        return arch

    structure = Counter()
    terminal = Counter()
    short_count = long_count = total_chars = 0
    prefs = arch.preferences

    for text in texts:
        words = text.split()
        length = len(text)
        total_chars += length
        stripped = text.strip()

        if len(words) == 1:
            structure["singleWord"] += 1
        elif len(words) <= 3:
            structure["shortPhrase"] += 1
        if _ACTION_START.match(text):
            structure["actionOriented"] += 1
        if "\n-" in text or "\n•" in text:
            structure["bulletedList"] += 1
            prefs.usesBulletPoints = True
        if _NUMBERED_LINE.search(text):
            prefs.usesNumberedLists = True
        if "`" in text:
            prefs.usesCodeBlocks = True
        if _MARKDOWN.search(text):
            prefs.usesMarkdown = True
        if length > LONG_MESSAGE_CHARS and len(_SENTENCE_BREAK.split(text)) <= 2:
            structure["streamOfConsciousness"] += 1

        if not _TERMINAL.search(stripped):
            terminal["none"] += 1
        elif stripped.endswith("...") or stripped.endswith("…"):
            terminal["ellipsis"] += 1
        elif stripped.endswith("."):
            terminal["period"] += 1
        elif stripped.endswith("?"):
            terminal["questionMark"] += 1
        elif stripped.endswith("!"):
            terminal["exclamationMark"] += 1

        if length < SHORT_MESSAGE_CHARS:
            short_count += 1
        if length > LONG_MESSAGE_CHARS:
            long_count += 1

    for name, count in structure.items():
        setattr(arch.structureTypes, name, _pct(count, total))
    for name, count in terminal.items():
        setattr(arch.terminalPunctuation, name, _pct(count, total))
    arch.characterMetrics.averageLength = total_chars / total
    arch.characterMetrics.shortMessages = _pct(short_count, total)
    arch.characterMetrics.longMessages = _pct(long_count, total)

    if prefs.usesBulletPoints and not prefs.usesNumberedLists:
        prefs.preferredListStyle = "bullet"
    elif prefs.usesNumberedLists and not prefs.usesBulletPoints:
        prefs.preferredListStyle = "numbered"
    return arch


def _length_bucket(word_count: int) -> str:
    if word_count <= 5:
        return "veryShort"
    if word_count <= 10:
        return "short"
    if word_count <= 20:
        return "medium"
    if word_count <= 40:
        return "long"
    return "veryLong"


def analyze_linguistic_metrics(texts: Sequence[str]) -> Tuple[List[TermFrequency], VocabularyMetrics]:
    """Top terms and vocabulary metrics for a list of post texts."""
    frequencies: Counter = Counter()
    buckets: Counter = Counter()
    caps: Counter = Counter()
    total_words = 0

    for text in texts:
        words = [w.lower() for w in text.split()]
        total_words += len(words)
        frequencies.update(words)
        buckets[_length_bucket(len(words))] += 1
        if text == text.lower():
            caps["lowercase"] += 1
        elif text == text[:1].upper() + text[1:].lower():
            caps["sentenceCase"] += 1
        else:
            caps["mixedCase"] += 1

    total = len(texts)
    terms = [
        TermFrequency(term=term, frequency=count, percentage=_pct(count, total_words),
                      category=categorize_word(term))
        for term, count in frequencies.most_common(TOP_TERMS)
    ]
    names = ("veryShort", "short", "medium", "long", "veryLong")
    lengths = SentenceLengths(
        **{name: buckets[name] for name in names},
        distribution=LengthBuckets(**{name: _pct(buckets[name], total) for name in names}),
    )
    metrics = VocabularyMetrics(
        sentenceLengths=lengths,
        capitalizationStats=CapitalizationStats(
            lowercase=_pct(caps["lowercase"], total),
            sentenceCase=_pct(caps["sentenceCase"], total),
            mixedCase=_pct(caps["mixedCase"], total),
            totalMessages=total,
        ),
        averageMessageLength=total_words / total if total else 0.0,
        uniqueWordsCount=len(frequencies),
        totalWordsAnalyzed=total_words,
        messageArchitecture=analyze_message_architecture(texts),
    )
    return terms, metrics


def with_local_metrics(partial: PartialPersonalityRecord, texts: Sequence[str]) -> PartialPersonalityRecord:
    """Fill the vocabulary stage output with metrics computed from the posts themselves."""
    if partial.vocabulary is None or not texts:
        return partial
    terms, metrics = analyze_linguistic_metrics(texts)
    vocabulary = partial.vocabulary.model_copy(update={
        "commonTerms": terms or partial.vocabulary.commonTerms,
        "metrics": metrics,
    })
    return partial.model_copy(update={"vocabulary": vocabulary})
