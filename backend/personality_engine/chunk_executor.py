"""
Chunk executor: drives one analysis stage to a tagged outcome.

One executor is created per analysis run. It owns the run's timeout policy, so a
timeout escalation on a mobile or tablet device carries over to every later stage.
Failures are never raised from ``execute_stage``; they come back as ``StageOutcome``.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from .cancellation import CancellationToken, CancelledOperation
from .config import settings
from .errors import (
    ErrorKind,
    LowQualityResponseError,
    StageOutcome,
    TRANSIENT_KINDS,
    TextGenerationError,
    classify_error,
    kind_for_missing_fields,
)
from .linguistics import with_local_metrics
from .llm_client import TextGenerationClient, TimeoutPolicy
from .models import STAGE_FIELDS, AnalysisStage, DeviceClass, Profile
from .observability import MetricsCollector
from .parsers.patterns import SUMMARY_PATTERNS, first_match
from .parsers.stages import parse
from .prompts import SYSTEM_CUSTOM, SYSTEM_PROMPT, build_custom_prompt, build_stage_prompt
from .quality import RetryContextRegistry, assess_response_quality
from .utils.io import write_raw_response
from .validator import validate

logger = logging.getLogger(__name__)


@dataclass
class StageInputs:
    profile: Optional[Profile] = None
    texts: List[str] = field(default_factory=list)
    examples: List[str] = field(default_factory=list)
    regeneration_key: Optional[str] = None


class ChunkExecutor:
    def __init__(self, client: TextGenerationClient, *,
                 device_class: Union[DeviceClass, str] = DeviceClass.DESKTOP,
                 max_attempts: Optional[int] = None,
                 base_delay: Optional[float] = None,
                 min_quality: Optional[float] = None,
                 retry_contexts: Optional[RetryContextRegistry] = None,
                 metrics: Optional[MetricsCollector] = None,
                 raw_response_dir: Optional[Union[str, Path]] = None,
                 timeout_policy: Optional[TimeoutPolicy] = None):
        self.client = client
        self.max_attempts = max_attempts or settings.STAGE_MAX_ATTEMPTS
        self.base_delay = settings.RETRY_BASE_DELAY_S if base_delay is None else base_delay
        self.min_quality = settings.MIN_RESPONSE_QUALITY if min_quality is None else min_quality
        self.retry_contexts = retry_contexts or RetryContextRegistry()
        self.metrics = metrics or MetricsCollector()
        self.raw_response_dir = raw_response_dir if raw_response_dir is not None else settings.RAW_RESPONSE_DIR
        self.timeouts = timeout_policy or TimeoutPolicy(DeviceClass(device_class))

    def _backoff(self, attempt: int) -> float:
        # attempt is the 0-based index of the retry about to run
        return self.base_delay * (2 ** attempt)

    def _capture(self, stage: str, text: str, attempt: int) -> None:
        if not self.raw_response_dir:
            return
        try:
            write_raw_response(self.raw_response_dir, stage, text, attempt=attempt)
        except OSError as e:
            logger.warning(f"Could not save raw {stage} response: {e}")

    async def _call(self, system: str, prompt: str, token: CancellationToken,
                    regeneration_key: Optional[str]) -> str:
        variation = self.retry_contexts.register_attempt(regeneration_key) if regeneration_key else 0.0
        result = await token.guard(self.client.generate(
            system,
            prompt,
            timeout=self.timeouts.current,
            temperature=settings.LLM_TEMPERATURE + variation,
        ))
        return result.text

    def _score(self, text: str, regeneration_key: Optional[str]) -> float:
        previous = self.retry_contexts.previous(regeneration_key) if regeneration_key else []
        score = assess_response_quality(text, previous)
        if regeneration_key:
            self.retry_contexts.record_response(regeneration_key, text)
        return score

    async def execute_stage(self, stage: AnalysisStage, inputs: StageInputs,
                            token: CancellationToken) -> StageOutcome:
        """Run one stage until its own fields validate or the attempt budget is spent."""
        stage = AnalysisStage(stage)
        prompt = build_stage_prompt(stage, inputs.profile, inputs.texts, inputs.examples)
        owned = STAGE_FIELDS[stage]
        last_kind: Optional[ErrorKind] = None
        last_error: Optional[BaseException] = None
        last_missing: List[str] = []
        started = time.time()

        for attempt in range(self.max_attempts):
            if attempt and await token.sleep(self._backoff(attempt - 1)):
                return self._aborted(stage, token, attempt, started)
            if token.cancelled:
                return self._aborted(stage, token, attempt, started)

            self.metrics.record_stage_attempt(stage.label)
            logger.info(f"Stage {stage.label} attempt {attempt + 1}/{self.max_attempts}")
            try:
                text = await self._call(SYSTEM_PROMPT, prompt, token, inputs.regeneration_key)
            except CancelledOperation:
                return self._aborted(stage, token, attempt + 1, started)
            except TextGenerationError as e:
                kind = classify_error(e)
                if kind is ErrorKind.TIMEOUT:
                    self.timeouts.escalate()
                if kind not in TRANSIENT_KINDS:
                    logger.error(f"Stage {stage.label} failed with unrecoverable error: {e}")
                    self.metrics.record_stage_result(stage.label, time.time() - started, False)
                    return StageOutcome.failure(stage, ErrorKind.CRITICAL, error=e, attempts=attempt + 1)
                logger.warning(f"Stage {stage.label} attempt {attempt + 1} failed ({kind.value}): {e}")
                last_kind, last_error, last_missing = kind, e, []
                continue
            except Exception as e:
                logger.error(f"Stage {stage.label} failed with unexpected error: {e}")
                self.metrics.record_stage_result(stage.label, time.time() - started, False)
                return StageOutcome.failure(stage, ErrorKind.CRITICAL, error=e, attempts=attempt + 1)

            logger.debug(f"Stage {stage.label} raw response: {text[:200]!r}")
            score = self._score(text, inputs.regeneration_key)
            if score < self.min_quality:
                self.metrics.record_quality_rejection(stage.label, score)
                logger.warning(f"Stage {stage.label} response quality {score:.2f} below {self.min_quality:.2f}")
                last_kind = ErrorKind.LOW_QUALITY
                last_error = LowQualityResponseError(score, self.min_quality)
                last_missing = []
                continue

            self._capture(stage.label, text, attempt + 1)
            partial = parse(stage, text)
            if stage is AnalysisStage.VOCABULARY:
                partial = with_local_metrics(partial, inputs.texts)

            report = validate(partial)
            missing = [name for name in report.missing_fields if name in owned]
            if missing:
                logger.warning(f"Stage {stage.label} attempt {attempt + 1} missing fields: {missing}")
                last_kind, last_error, last_missing = kind_for_missing_fields(missing), None, missing
                continue

            self.metrics.record_stage_result(stage.label, time.time() - started, True)
            return StageOutcome.success(stage, partial, attempts=attempt + 1)

        logger.error(f"Stage {stage.label} exhausted {self.max_attempts} attempts ({last_kind.value})")
        self.metrics.record_stage_result(stage.label, time.time() - started, False)
        return StageOutcome.failure(stage, last_kind, error=last_error, missing_fields=last_missing,
                                    attempts=self.max_attempts)

    def _aborted(self, stage: AnalysisStage, token: CancellationToken, attempts: int,
                 started: float) -> StageOutcome:
        logger.info(f"Stage {stage.label} aborted: {token.reason}")
        self.metrics.record_stage_result(stage.label, time.time() - started, False)
        error = CancelledOperation(token.reason or "cancelled", token.origin)
        return StageOutcome.failure(stage, ErrorKind.ABORTED, error=error, attempts=attempts)

    async def execute_custom(self, prompt: str, context: str, inputs: StageInputs,
                             token: CancellationToken) -> str:
        """Free-form question about the profile. Returns the answer text.

        Transient failures are retried like a stage; anything else, including
        ``CancelledOperation``, propagates.
        """
        full_prompt = build_custom_prompt(prompt, context, inputs.profile, inputs.texts)
        last_error: Optional[BaseException] = None
        for attempt in range(self.max_attempts):
            if attempt and await token.sleep(self._backoff(attempt - 1)):
                break
            token.raise_if_cancelled()
            try:
                text = await self._call(SYSTEM_CUSTOM, full_prompt, token, inputs.regeneration_key)
            except TextGenerationError as e:
                kind = classify_error(e)
                if kind is ErrorKind.TIMEOUT:
                    self.timeouts.escalate()
                if kind not in TRANSIENT_KINDS:
                    raise
                logger.warning(f"Custom prompt attempt {attempt + 1} failed ({kind.value}): {e}")
                last_error = e
                continue

            score = self._score(text, inputs.regeneration_key)
            if score < self.min_quality:
                self.metrics.record_quality_rejection("custom", score)
                last_error = LowQualityResponseError(score, self.min_quality)
                continue

            self._capture("custom", text, attempt + 1)
            m = first_match(SUMMARY_PATTERNS, text)
            return m.group("value").strip() if m else text.strip()

        token.raise_if_cancelled()
        raise last_error
