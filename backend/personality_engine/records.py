"""
Accumulating stage outputs into one personality record.
"""
from __future__ import annotations
import logging
import re
from typing import Dict, List, Optional

from .models import (
    COLLECTION_FIELDS,
    RECORD_FIELDS,
    CommunicationStyle,
    ContextualVariations,
    EmotionalIntelligence,
    MessageStructure,
    PartialPersonalityRecord,
    PersonalityRecord,
    ThoughtProcess,
    Trait,
    WritingPatterns,
)
from .validator import validate

logger = logging.getLogger(__name__)


def default_record() -> PersonalityRecord:
    """Fully populated safe record returned when a job gives up."""
    return PersonalityRecord(
        summary="Analysis temporarily unavailable",
        traits=[Trait(name="Neutral", score=5,
                      explanation="Default trait due to analysis failure after multiple attempts")],
        interests=["General topics"],
        communicationStyle=CommunicationStyle(
            formality="low",
            enthusiasm="low",
            technicalLevel="low",
            emojiUsage="low",
            verbosity="low",
            description="Default communication style due to analysis failure after multiple attempts",
            patterns=WritingPatterns(messageStructure=MessageStructure()),
            contextualVariations=ContextualVariations(
                business="Standard professional communication",
                casual="Relaxed and approachable",
                technical="Clear and precise",
                crisis="Direct and solution-focused",
            ),
        ),
        emotionalIntelligence=EmotionalIntelligence(
            leadershipStyle="Standard",
            challengeResponse="Balanced",
            analyticalTone="Neutral",
            supportivePatterns=[],
        ),
        topicsAndThemes=["General themes"],
        emotionalTone="Neutral",
        thoughtProcess=ThoughtProcess(
            initialApproach="Standard",
            processingStyle="Balanced",
            expressionStyle="Neutral",
        ),
    )


def _is_placeholder(name: str, value) -> bool:
    """True when ``value`` would be reported missing for field ``name``."""
    report = validate(PartialPersonalityRecord(**{name: value}))
    return name in report.missing_fields


def _union(current: List, incoming: List, key=lambda item: item) -> List:
    seen = {key(item) for item in current}
    merged = list(current)
    for item in incoming:
        if key(item) not in seen:
            seen.add(key(item))
            merged.append(item)
    return merged


def merge_partial(acc: PartialPersonalityRecord, partial: PartialPersonalityRecord) -> PartialPersonalityRecord:
    """Merge one stage's output into the accumulator.

    Scalar fields are first-writer-wins: a populated value is only replaced when it is
    still a placeholder and the incoming value is not. Collection fields (traits,
    interests, topics) grow by union.
    """
    updates: Dict[str, object] = {}
    for name in RECORD_FIELDS:
        incoming = getattr(partial, name)
        if incoming is None:
            continue
        current = getattr(acc, name)
        if current is None:
            updates[name] = incoming
            continue

        current_placeholder = _is_placeholder(name, current)
        incoming_placeholder = _is_placeholder(name, incoming)
        if name in COLLECTION_FIELDS:
            if incoming_placeholder:
                continue
            if current_placeholder:
                updates[name] = incoming
            elif name == "traits":
                updates[name] = list(current) + list(incoming)
            else:
                updates[name] = _union(current, incoming, key=str.lower)
        elif current_placeholder and not incoming_placeholder:
            updates[name] = incoming

    return acc.model_copy(update=updates)


def _normalize_trait(name: str) -> str:
    return re.sub(r"[^a-z]", "", name.lower())


def traits_similar(a: str, b: str) -> bool:
    na, nb = _normalize_trait(a), _normalize_trait(b)
    if not na or not nb:
        return na == nb
    if na in nb or nb in na:
        return True
    return len(na) > 4 and len(nb) > 4 and (nb[:4] in na or na[:4] in nb)


def merge_similar_traits(traits: List[Trait]) -> List[Trait]:
    """Collapse lexically similar traits, keeping the highest scoring name and score."""
    groups: List[Dict[str, object]] = []
    for trait in traits:
        for group in groups:
            if traits_similar(trait.name, group["key"]):
                group["members"].append(trait)
                if trait.score > group["main"].score:
                    group["main"] = trait
                break
        else:
            groups.append({"key": trait.name, "main": trait, "members": [trait]})

    merged = []
    for group in groups:
        main: Trait = group["main"]
        explanations = []
        for member in group["members"]:
            text = member.explanation.strip().rstrip(".")
            if text and text not in explanations:
                explanations.append(text)
        merged.append(Trait(name=main.name, score=main.score, explanation=". ".join(explanations)))
    return sorted(merged, key=lambda t: t.score, reverse=True)


def consolidate_interests(interests: List[str]) -> List[str]:
    """Merge interests that contain one another (case-insensitive), keeping the longer string."""
    groups: List[List[str]] = []
    for interest in interests:
        lowered = interest.lower()
        for group in groups:
            key = group[0].lower()
            if lowered in key or key in lowered:
                group.append(interest)
                break
        else:
            groups.append([interest])
    return [max(group, key=len) for group in groups]


def finalize_record(acc: PartialPersonalityRecord) -> PersonalityRecord:
    """Turn the accumulator into a whole record with traits and interests consolidated."""
    record = PersonalityRecord(**acc.model_dump(exclude_none=True))
    return record.model_copy(update={
        "traits": merge_similar_traits(record.traits),
        "interests": consolidate_interests(record.interests),
        "topicsAndThemes": consolidate_interests(record.topicsAndThemes),
    })


def accumulate(payloads: List[Dict], acc: Optional[PartialPersonalityRecord] = None) -> PartialPersonalityRecord:
    """Rebuild an accumulator from persisted stage payloads."""
    acc = acc or PartialPersonalityRecord()
    for payload in payloads:
        acc = merge_partial(acc, PartialPersonalityRecord.model_validate(payload))
    return acc
