from __future__ import annotations
from typing import Dict, Optional, Sequence

from .models import AnalysisStage, Profile

SYSTEM_PROMPT = (
    "You are an expert in personality analysis and psychology, specializing in how people "
    "present themselves on social media. Base every observation on the posts you are given. "
    "Follow the requested section headings and line formats exactly; they are parsed by a program."
)

SYSTEM_CUSTOM = (
    "You are an expert in personality analysis. Answer the user's question about the profile "
    "using only the posts and context provided. Start with a line 'Summary:' followed by your answer."
)

STAGE_INSTRUCTIONS: Dict[AnalysisStage, str] = {
    AnalysisStage.BASIC_INFO: (
        "Summary: a 2-3 sentence overview of this person's personality on one line.\n\n"
        "Core Personality Traits:\n"
        "List 4-6 traits, one per line, formatted exactly as\n"
        "- **Trait Name** [score/10] - one sentence explanation grounded in the posts"
    ),
    AnalysisStage.INTERESTS: (
        "Primary Interests & Expertise:\n"
        "List 3-6 interests as bullets, formatted as\n"
        "- Interest: short evidence from the posts"
    ),
    AnalysisStage.SOCIAL_METRICS: (
        "Social Behavior Metrics:\n"
        "Score each behavior from 0 to 100, one per line, formatted as\n"
        "- Name: Score N - short explanation\n"
        "Behaviors: Oversharer, Reply Guy, Viral Chaser, Thread Maker, Retweeter, Hot Takes, "
        "Joker, Debater, Doom Poster, Early Adopter, Knowledge Dropper, Hype Beast"
    ),
    AnalysisStage.COMMUNICATION: (
        "Core Metrics:\n"
        "- Formality: N - explanation\n"
        "- Enthusiasm: N - explanation\n"
        "- Technical Level: N - explanation\n"
        "- Emoji Usage: N - explanation\n"
        "- Verbosity: N - explanation\n"
        "(N is 0-100)\n\n"
        "Writing Patterns:\n"
        "- Capitalization: mostly-lowercase, mostly-uppercase, mixed or standard\n"
        "- Punctuation: the marks this person favors\n"
        "- Line Breaks: frequent, moderate or minimal\n\n"
        "Opening Patterns:\n- bullets\n\n"
        "Framing Patterns:\n- bullets\n\n"
        "Closing Patterns:\n- bullets\n\n"
        "Contextual Variations:\n"
        "- Business: how they write in professional contexts\n"
        "- Casual: ...\n- Technical: ...\n- Crisis: ..."
    ),
    AnalysisStage.VOCABULARY: (
        "Common Terms:\n- term (count, percent%)\n\n"
        "Common Phrases:\n- phrase (count, percent%)\n\n"
        "Enthusiasm Markers:\n- marker\n\n"
        "Industry Terms:\n- term\n\n"
        "Bigrams:\n- two words (count, percent%)\n\n"
        "Trigrams:\n- three word phrase (count, percent%)"
    ),
    AnalysisStage.EMOTIONAL: (
        "Emotional Intelligence:\n"
        "- Leadership Style: ...\n"
        "- Challenge Response: ...\n"
        "- Analytical Tone: ...\n\n"
        "Supportive Patterns:\n- bullets\n\n"
        "Primary Themes:\n- Theme: short evidence\n\n"
        "Emotional Expression:\n"
        "One or two sentences on the emotional tone of the posts."
    ),
}


def _profile_block(profile: Optional[Profile]) -> str:
    if profile is None:
        return "Profile: unknown"
    lines = [f"Profile: {profile.name or 'unknown'}"]
    if profile.bio:
        lines.append(f"Bio: {profile.bio}")
    if profile.followersCount is not None or profile.followingCount is not None:
        lines.append(f"Followers: {profile.followersCount or 0} / Following: {profile.followingCount or 0}")
    return "\n".join(lines)


def _posts_block(title: str, texts: Sequence[str]) -> str:
    if not texts:
        return f"{title}\n(none)"
    return title + "\n" + "\n\n".join(f"[{i + 1}] {text}" for i, text in enumerate(texts))


def build_stage_prompt(stage: AnalysisStage, profile: Optional[Profile], post_texts: Sequence[str],
                       example_texts: Sequence[str] = ()) -> str:
    """User prompt for one analysis stage. The first line names the stage."""
    return "\n\n".join([
        f"Analysis stage: {stage.label}",
        _profile_block(profile),
        _posts_block("Posts:", post_texts),
        _posts_block("Representative examples:", example_texts),
        "Respond with exactly these sections:\n" + STAGE_INSTRUCTIONS[stage],
    ])


def build_custom_prompt(prompt: str, context: str, profile: Optional[Profile] = None,
                        post_texts: Sequence[str] = ()) -> str:
    return "\n\n".join([
        "Analysis stage: custom",
        _profile_block(profile),
        f"Context:\n{context}",
        _posts_block("Posts:", post_texts),
        f"Question:\n{prompt}",
    ])
