"""
Heuristic response quality scoring and regeneration sessions.

The score is a tunable heuristic in [0, 1], not a correctness contract. Callers pick the
cutoff (``MIN_RESPONSE_QUALITY`` by default).
"""
from __future__ import annotations
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence

from .config import settings

SHORT_RESPONSE_CHARS = 50
LONG_RESPONSE_CHARS = 500
SIMILARITY_CUTOFF = 0.7

# A run of 10+ characters immediately repeated
_REPEAT = re.compile(r"(.{10,})\1")
_WORD_SPLIT = re.compile(r"\W+")


def _words(text: str) -> List[str]:
    return [w for w in _WORD_SPLIT.split(text.lower()) if w]


def lexical_overlap(response: str, previous: str) -> float:
    """Share of the combined vocabulary made up of response words that also occur in ``previous``."""
    words = _words(response)
    vocabulary = set(words) | set(_words(previous))
    if not vocabulary:
        return 0.0
    prev_lower = previous.lower()
    common = sum(1 for w in words if w in prev_lower)
    return common / len(vocabulary)


def assess_response_quality(response: str, previous_responses: Optional[Sequence[str]] = None) -> float:
    score = 1.0
    if len(response) < SHORT_RESPONSE_CHARS:
        score *= 0.8
    if len(response) > LONG_RESPONSE_CHARS:
        score *= 0.9

    score -= 0.1 * sum(1 for _ in _REPEAT.finditer(response))

    if previous_responses:
        overlaps = [lexical_overlap(response, prev) for prev in previous_responses]
        if sum(overlaps) / len(overlaps) > SIMILARITY_CUTOFF:
            score *= 0.8

    return max(0.0, min(1.0, score))


@dataclass
class RetryContext:
    attempts: int = 0
    previous_responses: Deque[str] = field(default_factory=deque)
    style_variation: float = 0.0


class RetryContextRegistry:
    """Regeneration sessions keyed by caller-chosen key. Lives as long as the process."""

    def __init__(self, step: Optional[float] = None, cap: Optional[float] = None,
                 history: Optional[int] = None):
        self.step = settings.STYLE_VARIATION_STEP if step is None else step
        self.cap = settings.MAX_STYLE_VARIATION if cap is None else cap
        self.history = history or settings.MAX_PREVIOUS_RESPONSES
        self._contexts: Dict[str, RetryContext] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> RetryContext:
        with self._lock:
            ctx = self._contexts.get(key)
            if ctx is None:
                ctx = RetryContext(previous_responses=deque(maxlen=self.history))
                self._contexts[key] = ctx
            return ctx

    def register_attempt(self, key: str) -> float:
        """Count one generation attempt and return the style variation to add to temperature."""
        ctx = self.get(key)
        with self._lock:
            ctx.attempts += 1
            ctx.style_variation = min(self.cap, ctx.attempts * self.step)
            return ctx.style_variation

    def previous(self, key: str) -> List[str]:
        return list(self.get(key).previous_responses)

    def record_response(self, key: str, text: str) -> None:
        ctx = self.get(key)
        with self._lock:
            ctx.previous_responses.append(text)

    def drop(self, key: str) -> None:
        with self._lock:
            self._contexts.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._contexts
