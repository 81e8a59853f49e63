"""
Metrics collection for the analysis pipeline.
Tracks model usage, stage attempts and dispatcher retries.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

@dataclass
class MetricsCollector:
    """Thread-safe metrics collector. One instance is owned by the hosting process."""

    # LLM metrics
    llm_calls_total: int = 0
    llm_tokens_in: int = 0
    llm_tokens_out: int = 0
    llm_timeouts: int = 0
    quality_rejections: int = 0

    # Stage metrics
    stage_attempts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    stage_failures: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    stage_timings: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    # Dispatcher metrics
    items_completed: int = 0
    items_failed: int = 0
    items_requeued: int = 0

    _lock: Lock = field(default_factory=Lock)

    def record_llm_call(self, tokens_in: int, tokens_out: int, model: str, timeout: bool = False):
        with self._lock:
            self.llm_calls_total += 1
            self.llm_tokens_in += tokens_in
            self.llm_tokens_out += tokens_out
            if timeout:
                self.llm_timeouts += 1

    def record_quality_rejection(self, stage: str, score: float):
        with self._lock:
            self.quality_rejections += 1
        logger.debug(f"Rejected {stage} response with quality {score:.2f}")

    def record_stage_attempt(self, stage: str):
        with self._lock:
            self.stage_attempts[stage] += 1

    def record_stage_result(self, stage: str, duration: float, success: bool):
        with self._lock:
            self.stage_timings[stage].append(duration)
            if not success:
                self.stage_failures[stage] += 1

    def record_item(self, outcome: str):
        """Record a dispatcher item outcome: completed, failed or requeued."""
        with self._lock:
            if outcome == "completed":
                self.items_completed += 1
            elif outcome == "failed":
                self.items_failed += 1
            elif outcome == "requeued":
                self.items_requeued += 1

    def get_metrics_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "llm": {
                    "calls_total": self.llm_calls_total,
                    "tokens_in": self.llm_tokens_in,
                    "tokens_out": self.llm_tokens_out,
                    "timeouts": self.llm_timeouts,
                    "quality_rejections": self.quality_rejections,
                },
                "stages": {
                    "attempts": dict(self.stage_attempts),
                    "failures": dict(self.stage_failures),
                    "avg_duration": {
                        stage: sum(times) / max(len(times), 1)
                        for stage, times in self.stage_timings.items()
                    },
                },
                "dispatcher": {
                    "completed": self.items_completed,
                    "failed": self.items_failed,
                    "requeued": self.items_requeued,
                },
            }
