"""
Pipeline orchestrator: walks the analysis stages in order for one profile.

Each stage is executed by a ``ChunkExecutor``, merged into the accumulating record and
checkpointed in the Job Store. A run resumes from ``processed_stages + 1`` when given an
existing job. Internal aborts (``abort_current_stage`` or the per-stage watchdog) resume
the interrupted stage; a cancelled caller signal ends the run with ``AnalysisAborted``.
"""
from __future__ import annotations
import asyncio
import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .cancellation import CancellationToken, CancelledOperation
from .chunk_executor import ChunkExecutor, StageInputs
from .config import settings
from .errors import (
    AnalysisAborted,
    ErrorKind,
    FIELD_SPECIFIC_KINDS,
    PersonalityAnalysisTimeoutError,
    StageAborted,
    StageOutcome,
    classify_error,
    error_for_missing_fields,
)
from .job_store import JobStore, JobStoreError
from .linguistics import filter_posts, select_representative_posts
from .llm_client import TextGenerationClient
from .models import (
    STAGE_FIELDS,
    STAGE_PROGRESS,
    TOTAL_STAGES,
    AnalysisStage,
    DeviceClass,
    JobStatus,
    PartialPersonalityRecord,
    PersonalityRecord,
    Post,
    Profile,
    ProgressUpdate,
)
from .observability import MetricsCollector
from .quality import RetryContextRegistry
from .records import accumulate, default_record, finalize_record, merge_partial
from .utils.id_gen import short_id
from .validator import validate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Any]


@dataclass
class AnalysisOptions:
    identity: Optional[str] = None
    job_id: Optional[str] = None
    run_id: Optional[str] = None
    regeneration_key: Optional[str] = None
    prompt: Optional[str] = None
    context: Optional[str] = None
    signal: Optional[CancellationToken] = None
    on_progress: Optional[ProgressCallback] = None
    # called with the id of a newly created job
    on_job: Optional[Callable[[str], Any]] = None


@dataclass
class RunState:
    """Cursor over the stage sequence for one run."""

    run_id: str
    caller: CancellationToken
    job_id: Optional[str] = None
    acc: PartialPersonalityRecord = field(default_factory=PartialPersonalityRecord)
    cursor: Optional[AnalysisStage] = AnalysisStage.BASIC_INFO
    completed: Set[AnalysisStage] = field(default_factory=set)
    counted: Set[AnalysisStage] = field(default_factory=set)
    stage_attempts: Dict[AnalysisStage, int] = field(default_factory=dict)
    job_attempts: int = 0

    @property
    def all_completed(self) -> bool:
        return len(self.completed) == TOTAL_STAGES


class PipelineOrchestrator:
    """Runs analyses. One instance may serve many concurrent runs."""

    def __init__(self, client: TextGenerationClient, job_store: Optional[JobStore] = None, *,
                 device_class: Union[DeviceClass, str, None] = None,
                 stage_retry_limit: Optional[int] = None,
                 job_retry_limit: Optional[int] = None,
                 base_delay: Optional[float] = None,
                 inter_stage_delay: Optional[float] = None,
                 stage_deadline: Optional[float] = None,
                 max_attempts: Optional[int] = None,
                 min_quality: Optional[float] = None,
                 retry_contexts: Optional[RetryContextRegistry] = None,
                 metrics: Optional[MetricsCollector] = None,
                 raw_response_dir: Optional[Union[str, Path]] = None,
                 rng: Optional[random.Random] = None):
        self.client = client
        self.job_store = job_store
        self.device_class = DeviceClass(device_class or settings.DEVICE_CLASS)
        self.stage_retry_limit = stage_retry_limit or settings.STAGE_RETRY_LIMIT
        self.job_retry_limit = job_retry_limit or settings.JOB_RETRY_LIMIT
        self.base_delay = settings.RETRY_BASE_DELAY_S if base_delay is None else base_delay
        self.inter_stage_delay = settings.INTER_STAGE_DELAY_S if inter_stage_delay is None else inter_stage_delay
        self.stage_deadline = stage_deadline or settings.STAGE_DEADLINE_S
        self.max_attempts = max_attempts
        self.min_quality = min_quality
        self.retry_contexts = retry_contexts or RetryContextRegistry()
        self.metrics = metrics or MetricsCollector()
        self.raw_response_dir = raw_response_dir
        self.rng = rng or random.Random()
        self._stage_tokens: Dict[str, CancellationToken] = {}

    def new_executor(self) -> ChunkExecutor:
        """Executor for one run; it owns that run's timeout escalation."""
        return ChunkExecutor(
            self.client,
            device_class=self.device_class,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            min_quality=self.min_quality,
            retry_contexts=self.retry_contexts,
            metrics=self.metrics,
            raw_response_dir=self.raw_response_dir,
        )

    def abort_current_stage(self, run_id: str, reason: str = "stage aborted") -> bool:
        """Interrupt the stage a run is executing. The run resumes at that stage."""
        token = self._stage_tokens.get(run_id)
        if token is None:
            return False
        return token.cancel(reason)

    # ---- Caller-facing entry point ----
    async def run_analysis(self, posts: List[Post], profile: Optional[Profile] = None,
                           options: Optional[AnalysisOptions] = None) -> Union[PersonalityRecord, Dict[str, str]]:
        options = options or AnalysisOptions()
        caller = options.signal or CancellationToken("caller")
        posts = filter_posts(posts)
        if not posts:
            logger.warning("No posts with enough text to analyze")
        self._report(options, "initial", 0)

        executor = self.new_executor()
        texts = [p.text for p in posts]

        if options.prompt and options.context:
            inputs = StageInputs(profile=profile, texts=texts, regeneration_key=options.regeneration_key)
            try:
                response = await executor.execute_custom(options.prompt, options.context, inputs, caller)
            except CancelledOperation as e:
                raise AnalysisAborted(e.reason)
            return {"response": response}

        state = self._open_run(options, caller)
        while True:
            try:
                record = await self._drive(state, executor, posts, profile, options)
            except StageAborted as e:
                logger.info(f"Resuming run {state.run_id} at {e.stage.label} after internal abort: {e.reason}")
                state.cursor = e.stage
                state.completed = set(e.completed)
                continue
            except AnalysisAborted as e:
                logger.info(f"Run {state.run_id} aborted by caller: {e.reason}")
                self._set_status(state, JobStatus.PROCESSING, str(e))
                raise
            except Exception as e:
                kind = classify_error(e)
                if kind not in FIELD_SPECIFIC_KINDS:
                    logger.error(f"Run {state.run_id} failed ({kind.value}): {e}")
                    self._set_status(state, JobStatus.FAILED, str(e))
                    raise
                state.job_attempts += 1
                if state.job_attempts >= self.job_retry_limit:
                    logger.error(f"Run {state.run_id} gave up after {state.job_attempts} attempts, "
                                 f"returning default analysis: {e}")
                    self._set_status(state, JobStatus.FAILED, str(e))
                    return default_record()
                logger.warning(f"Run {state.run_id} attempt {state.job_attempts} incomplete ({kind.value}), retrying")
                self._rewind(state, getattr(e, "missing_fields", []))
                if await caller.sleep(self.base_delay * (2 ** (state.job_attempts - 1))):
                    self._set_status(state, JobStatus.PROCESSING, f"Analysis aborted: {caller.reason}")
                    raise AnalysisAborted(caller.reason or "cancelled")
                continue
            finally:
                self._stage_tokens.pop(state.run_id, None)
            return record

    # ---- Run setup ----
    def _open_run(self, options: AnalysisOptions, caller: CancellationToken) -> RunState:
        state = RunState(run_id=options.run_id or short_id("run"), caller=caller)
        if self.job_store is None:
            return state

        if options.job_id:
            job = self.job_store.get_job(options.job_id)
            if job is None:
                raise JobStoreError(f"Unknown analysis job {options.job_id}")
            if job.status is JobStatus.COMPLETED:
                raise JobStoreError(f"Analysis job {job.id} is already {job.status.value}")
            if job.status is JobStatus.FAILED:
                self.job_store.reopen_job(job.id)
            state.job_id = job.id
            processed = min(job.processedStages, TOTAL_STAGES)
            state.completed = {AnalysisStage(i) for i in range(1, processed + 1)}
            state.counted = set(state.completed)
            state.cursor = AnalysisStage(processed + 1) if processed < TOTAL_STAGES else None
            results = [r for r in self.job_store.load_stage_results(job.id) if r.stage in state.completed]
            state.acc = accumulate([r.payload for r in results])
            logger.info(f"Resuming job {job.id} at stage {processed + 1} of {job.totalStages}")
        elif options.identity:
            state.job_id = self.job_store.create_job(options.identity, TOTAL_STAGES)
            if options.on_job is not None:
                options.on_job(state.job_id)
        return state

    def _rewind(self, state: RunState, missing_fields: List[str]) -> None:
        """Prepare a job-level retry after a field-specific failure."""
        state.stage_attempts.clear()
        if not state.all_completed:
            return
        # Whole-record validation failed: re-run the stages that own the missing fields
        owners = {stage for stage, owned in STAGE_FIELDS.items() if owned & set(missing_fields)}
        if not owners:
            owners = set(AnalysisStage)
        state.completed -= owners
        state.cursor = min(owners)

    # ---- Stage loop ----
    async def _drive(self, state: RunState, executor: ChunkExecutor, posts: List[Post],
                     profile: Optional[Profile], options: AnalysisOptions) -> PersonalityRecord:
        texts = [p.text for p in posts]
        self._set_status(state, JobStatus.PROCESSING)
        executed = 0

        stage = state.cursor
        while stage is not None:
            if stage in state.completed:
                stage = stage.next()
                continue
            if state.caller.cancelled:
                raise AnalysisAborted(state.caller.reason or "cancelled")
            if executed and await state.caller.sleep(self.inter_stage_delay):
                raise AnalysisAborted(state.caller.reason or "cancelled")

            state.cursor = stage
            examples = select_representative_posts(
                posts, analysis=state.acc if state.acc.traits else None, rng=self.rng)
            inputs = StageInputs(profile=profile, texts=texts, examples=[p.text for p in examples],
                                 regeneration_key=options.regeneration_key)
            outcome = await self._run_stage(state, executor, stage, inputs)
            executed += 1

            if outcome.ok:
                self._complete_stage(state, stage, outcome, len(texts))
                self._report(options, stage.label, STAGE_PROGRESS[stage])
                stage = stage.next()
                continue

            if outcome.kind is ErrorKind.ABORTED:
                if state.caller.cancelled:
                    raise AnalysisAborted(state.caller.reason or "cancelled")
                self._count_stage_attempt(state, stage, timeout_on_limit=True)
                raise StageAborted(stage, state.completed, reason=str(outcome.error))

            n = state.stage_attempts.get(stage, 0)
            if n + 1 >= self.stage_retry_limit:
                error = outcome.to_exception()
                self._save_failed_stage(state, stage, error, len(texts))
                raise error
            state.stage_attempts[stage] = n + 1
            logger.warning(f"Stage {stage.label} failed ({outcome.kind.value}), "
                           f"retry {n + 1}/{self.stage_retry_limit - 1}")
            if await state.caller.sleep(self.base_delay * (2 ** n)):
                raise AnalysisAborted(state.caller.reason or "cancelled")

        record = finalize_record(state.acc)
        report = validate(record)
        if not report.is_valid:
            logger.warning(f"Run {state.run_id} final record missing {report.missing_fields}")
            raise error_for_missing_fields(report.missing_fields)
        self._set_status(state, JobStatus.COMPLETED)
        logger.info(f"Run {state.run_id} completed")
        return record

    async def _run_stage(self, state: RunState, executor: ChunkExecutor, stage: AnalysisStage,
                         inputs: StageInputs) -> StageOutcome:
        token = CancellationToken.link(state.caller, name=f"{state.run_id}:{stage.label}")
        self._stage_tokens[state.run_id] = token
        watchdog = asyncio.get_running_loop().call_later(
            self.stage_deadline, token.cancel, f"stage {stage.label} exceeded {self.stage_deadline:.0f}s")
        try:
            logger.info(f"Run {state.run_id} starting stage {stage.label}")
            return await executor.execute_stage(stage, inputs, token)
        finally:
            watchdog.cancel()
            token.release()
            if self._stage_tokens.get(state.run_id) is token:
                del self._stage_tokens[state.run_id]

    def _count_stage_attempt(self, state: RunState, stage: AnalysisStage, timeout_on_limit: bool = False) -> None:
        n = state.stage_attempts.get(stage, 0) + 1
        state.stage_attempts[stage] = n
        if timeout_on_limit and n >= self.stage_retry_limit:
            raise PersonalityAnalysisTimeoutError(f"Stage {stage.label} aborted {n} times")

    def _complete_stage(self, state: RunState, stage: AnalysisStage, outcome: StageOutcome, item_count: int) -> None:
        state.acc = merge_partial(state.acc, outcome.record)
        state.completed.add(stage)
        state.stage_attempts.pop(stage, None)
        if state.job_id is None:
            return
        self.job_store.save_stage_result(state.job_id, stage, outcome.record.to_payload(), item_count)
        if stage not in state.counted:
            self.job_store.increment_processed_stages(state.job_id)
            state.counted.add(stage)

    def _save_failed_stage(self, state: RunState, stage: AnalysisStage, error: BaseException, item_count: int) -> None:
        if state.job_id is None:
            return
        try:
            self.job_store.save_stage_result(state.job_id, stage, {}, item_count,
                                             status=JobStatus.FAILED, error=str(error))
        except JobStoreError as e:
            logger.warning(f"Could not record failed stage {stage.label} for job {state.job_id}: {e}")

    def _set_status(self, state: RunState, status: JobStatus, error_message: Optional[str] = None) -> None:
        if state.job_id is None:
            return
        try:
            self.job_store.update_status(state.job_id, status, error_message)
        except JobStoreError as e:
            logger.warning(f"Could not set job {state.job_id} to {status.value}: {e}")

    def _report(self, options: AnalysisOptions, stage: str, percent: int) -> None:
        if options.on_progress is None:
            return
        try:
            options.on_progress(ProgressUpdate(stage=stage, percentComplete=percent))
        except Exception as e:
            logger.warning(f"Progress callback failed at {stage}: {e}")
