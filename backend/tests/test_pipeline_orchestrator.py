"""
End-to-end runs of the stage pipeline against a scripted model and an in-memory job store.
"""
import asyncio
import random

import pytest
from sqlalchemy import select

from personality_engine.cancellation import CancellationToken
from personality_engine.database import AnalysisJobRow
from personality_engine.errors import AnalysisAborted, TextGenerationError
from personality_engine.job_store import JobStoreError
from personality_engine.models import AnalysisStage, JobStatus, PersonalityRecord, Post
from personality_engine.parsers.stages import parse
from personality_engine.pipeline_orchestrator import AnalysisOptions, PipelineOrchestrator
from personality_engine.quality import RetryContextRegistry
from personality_engine.records import default_record
from personality_engine.validator import validate

from fakes import CANNED, HASHTAG_POSTS, FakeClient, Hang, memory_job_store, sample_posts, sample_profile

STAGE_LABELS = [stage.label for stage in AnalysisStage]
NO_INTERESTS = "Primary Interests & Expertise:\nThe posts do not reveal any clear interests or areas of expertise."


def make_orchestrator(client, store=None, **kwargs):
    kwargs.setdefault("base_delay", 0)
    kwargs.setdefault("inter_stage_delay", 0)
    kwargs.setdefault("max_attempts", 10)
    kwargs.setdefault("min_quality", 0.7)
    kwargs.setdefault("stage_deadline", 60)
    kwargs.setdefault("retry_contexts", RetryContextRegistry(step=0.1, cap=0.3, history=5))
    kwargs.setdefault("raw_response_dir", "")
    kwargs.setdefault("rng", random.Random(0))
    return PipelineOrchestrator(client, store, device_class="desktop", **kwargs)


def run(orchestrator, options):
    return asyncio.run(orchestrator.run_analysis(sample_posts(), sample_profile(), options))


def job_ids(store):
    with store.session_factory() as session:
        return list(session.execute(select(AnalysisJobRow.id)).scalars())


def seed_job(store, stages):
    """A job with ``stages`` already checkpointed from canned responses."""
    job_id = store.create_job("maya")
    store.update_status(job_id, JobStatus.PROCESSING)
    for stage in stages:
        store.save_stage_result(job_id, stage, parse(stage, CANNED[stage.label]).to_payload(), 6)
        store.increment_processed_stages(job_id)
    return job_id


class TestFullRun:
    def test_all_stages_run_in_order(self):
        client = FakeClient()
        store = memory_job_store()
        progress = []
        options = AnalysisOptions(identity="maya", on_progress=progress.append)

        record = run(make_orchestrator(client, store), options)

        assert isinstance(record, PersonalityRecord)
        assert validate(record).is_valid
        assert client.stages_called == STAGE_LABELS
        assert [(p.stage, p.percentComplete) for p in progress] == [
            ("initial", 0),
            ("basic_info", 20),
            ("interests", 40),
            ("social_metrics", 60),
            ("communication", 80),
            ("vocabulary", 90),
            ("emotional", 100),
        ]

    def test_job_is_checkpointed(self):
        store = memory_job_store()
        run(make_orchestrator(FakeClient(), store), AnalysisOptions(identity="maya"))

        [job_id] = job_ids(store)
        job = store.get_job(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.processedStages == 6
        assert [r.stage for r in store.load_stage_results(job_id)] == list(AnalysisStage)

    def test_without_job_store(self):
        record = run(make_orchestrator(FakeClient()), AnalysisOptions())
        assert validate(record).is_valid

    def test_failing_progress_callback_is_ignored(self):
        def explode(update):
            raise RuntimeError("listener gone")

        record = run(make_orchestrator(FakeClient()), AnalysisOptions(on_progress=explode))
        assert validate(record).is_valid

    def test_posts_without_recognizable_structure_complete(self):
        store = memory_job_store()
        posts = [Post(text=text) for text in HASHTAG_POSTS]
        record = asyncio.run(make_orchestrator(FakeClient(), store).run_analysis(
            posts, sample_profile(), AnalysisOptions(identity="maya")))

        assert validate(record).is_valid
        [job_id] = job_ids(store)
        assert store.get_job(job_id).status is JobStatus.COMPLETED


class TestResume:
    def test_resume_runs_only_remaining_stages(self):
        store = memory_job_store()
        job_id = seed_job(store, [AnalysisStage.BASIC_INFO, AnalysisStage.INTERESTS, AnalysisStage.SOCIAL_METRICS])
        client = FakeClient()

        record = run(make_orchestrator(client, store), AnalysisOptions(job_id=job_id))

        assert client.stages_called == ["communication", "vocabulary", "emotional"]
        assert record.summary.startswith("Maya")
        assert record.socialBehaviorMetrics.knowledgeDropper == 85
        job = store.get_job(job_id)
        assert job.processedStages == 6
        assert job.status is JobStatus.COMPLETED

    def test_resume_reruns_owner_of_missing_field(self):
        store = memory_job_store()
        job_id = store.create_job("maya")
        store.save_stage_result(job_id, AnalysisStage.BASIC_INFO, parse(AnalysisStage.BASIC_INFO, CANNED["basic_info"]).to_payload(), 6)
        store.increment_processed_stages(job_id)
        # a checkpoint that only holds the interests placeholder
        store.save_stage_result(job_id, AnalysisStage.INTERESTS, parse(AnalysisStage.INTERESTS, NO_INTERESTS).to_payload(), 6)
        store.increment_processed_stages(job_id)
        client = FakeClient()

        record = run(make_orchestrator(client, store), AnalysisOptions(job_id=job_id))

        assert client.stages_called == ["social_metrics", "communication", "vocabulary", "emotional", "interests"]
        assert "Developer tooling" in record.interests
        assert store.get_job(job_id).processedStages == 6

    def test_failed_job_is_reopened_and_resumed(self):
        store = memory_job_store()
        job_id = seed_job(store, [AnalysisStage.BASIC_INFO, AnalysisStage.INTERESTS])
        store.update_status(job_id, JobStatus.FAILED, "connection reset")
        client = FakeClient()

        run(make_orchestrator(client, store), AnalysisOptions(job_id=job_id))

        assert client.stages_called == ["social_metrics", "communication", "vocabulary", "emotional"]
        assert store.get_job(job_id).status is JobStatus.COMPLETED

    def test_new_job_is_reported(self):
        store = memory_job_store()
        opened = []
        run(make_orchestrator(FakeClient(), store), AnalysisOptions(identity="maya", on_job=opened.append))
        assert opened == job_ids(store)

    def test_closed_job_cannot_resume(self):
        store = memory_job_store()
        job_id = store.create_job("maya")
        store.update_status(job_id, JobStatus.COMPLETED)
        with pytest.raises(JobStoreError):
            run(make_orchestrator(FakeClient(), store), AnalysisOptions(job_id=job_id))

    def test_unknown_job_cannot_resume(self):
        with pytest.raises(JobStoreError):
            run(make_orchestrator(FakeClient(), memory_job_store()), AnalysisOptions(job_id="job_missing"))


class TestFailures:
    def test_field_failures_return_default_record_after_job_budget(self):
        store = memory_job_store()
        client = FakeClient(canned={**CANNED, "interests": NO_INTERESTS})
        orchestrator = make_orchestrator(client, store, max_attempts=1, stage_retry_limit=1, job_retry_limit=2)

        record = run(orchestrator, AnalysisOptions(identity="maya"))

        assert record == default_record()
        assert client.calls_for("interests") == 2
        assert client.calls_for("basic_info") == 1
        [job_id] = job_ids(store)
        assert store.get_job(job_id).status is JobStatus.FAILED

    def test_critical_error_fails_job(self):
        store = memory_job_store()
        job_id = seed_job(store, [])
        client = FakeClient(script={"basic_info": [TextGenerationError("bad request", status=400)] * 2})
        orchestrator = make_orchestrator(client, store, stage_retry_limit=2)

        with pytest.raises(TextGenerationError):
            run(orchestrator, AnalysisOptions(job_id=job_id))

        job = store.get_job(job_id)
        assert job.status is JobStatus.FAILED
        assert "bad request" in job.errorMessage
        assert client.calls_for("basic_info") == 2


class TestAborts:
    def test_caller_abort_leaves_job_resumable(self):
        store = memory_job_store()
        job_id = seed_job(store, [AnalysisStage.BASIC_INFO])
        client = FakeClient(script={"interests": [Hang]})
        orchestrator = make_orchestrator(client, store)

        async def scenario():
            signal = CancellationToken("caller")
            task = asyncio.ensure_future(orchestrator.run_analysis(
                sample_posts(), sample_profile(), AnalysisOptions(job_id=job_id, signal=signal)))
            await asyncio.sleep(0.01)
            signal.cancel("user left")
            await task

        with pytest.raises(AnalysisAborted):
            asyncio.run(scenario())

        job = store.get_job(job_id)
        assert job.status is JobStatus.PROCESSING
        assert job.processedStages == 1

        record = run(make_orchestrator(FakeClient(), store), AnalysisOptions(job_id=job_id))
        assert validate(record).is_valid

    def test_internal_abort_resumes_same_stage(self):
        client = FakeClient(script={"social_metrics": [Hang]})
        orchestrator = make_orchestrator(client)

        async def scenario():
            task = asyncio.ensure_future(orchestrator.run_analysis(
                sample_posts(), sample_profile(), AnalysisOptions(run_id="run_1")))
            for _ in range(200):
                await asyncio.sleep(0.005)
                if client.calls_for("social_metrics"):
                    break
            assert orchestrator.abort_current_stage("run_1", "operator abort")
            return await task

        record = asyncio.run(scenario())
        assert validate(record).is_valid
        assert client.calls_for("social_metrics") == 2
        assert client.calls_for("basic_info") == 1
        assert not orchestrator.abort_current_stage("run_1")

    def test_stage_watchdog_resumes_stage(self):
        client = FakeClient(script={"basic_info": [Hang]})
        record = run(make_orchestrator(client, stage_deadline=0.05), AnalysisOptions())
        assert validate(record).is_valid
        assert client.calls_for("basic_info") == 2


class TestCustomPrompt:
    def test_custom_prompt_returns_response(self):
        store = memory_job_store()
        client = FakeClient()
        options = AnalysisOptions(identity="maya", prompt="What event would they enjoy?", context="Meetup planning")

        result = run(make_orchestrator(client, store), options)

        assert result == {"response": "Maya would most enjoy a hands-on workshop about build performance."}
        assert client.stages_called == ["custom"]
        assert job_ids(store) == []

    def test_cancelled_custom_prompt_is_aborted(self):
        signal = CancellationToken("caller")
        signal.cancel("gone")
        options = AnalysisOptions(prompt="Question?", context="ctx", signal=signal)
        with pytest.raises(AnalysisAborted):
            run(make_orchestrator(FakeClient()), options)
