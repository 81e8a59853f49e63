"""
Tests for single-stage execution: retries, validation-driven regeneration, timeouts and aborts.
"""
import asyncio
import json

import pytest

from personality_engine.cancellation import CancellationToken, CancelledOperation
from personality_engine.chunk_executor import ChunkExecutor, StageInputs
from personality_engine.config import settings
from personality_engine.errors import (
    EmptyResponseError,
    ErrorKind,
    LowQualityResponseError,
    MissingInterestsError,
    NetworkError,
    PersonalityAnalysisTimeoutError,
    TextGenerationError,
)
from personality_engine.llm_client import TimeoutPolicy
from personality_engine.models import AnalysisStage, DeviceClass
from personality_engine.quality import RetryContextRegistry

from fakes import POST_TEXTS, FakeClient, Hang, sample_profile

NO_INTERESTS = "Primary Interests & Expertise:\nThe posts do not reveal any clear interests or areas of expertise."


def make_executor(client, device_class=DeviceClass.DESKTOP, **kwargs):
    kwargs.setdefault("max_attempts", 10)
    kwargs.setdefault("base_delay", 0)
    kwargs.setdefault("min_quality", 0.7)
    kwargs.setdefault("retry_contexts", RetryContextRegistry(step=0.1, cap=0.3, history=5))
    kwargs.setdefault("raw_response_dir", "")
    kwargs.setdefault("timeout_policy", TimeoutPolicy(device_class, factor=1.5, initial=10))
    return ChunkExecutor(client, device_class=device_class, **kwargs)


def inputs(**kwargs):
    return StageInputs(profile=sample_profile(), texts=list(POST_TEXTS), **kwargs)


def run_stage(executor, stage, stage_inputs=None, token=None):
    async def scenario():
        return await executor.execute_stage(stage, stage_inputs or inputs(), token or CancellationToken())
    return asyncio.run(scenario())


def test_stage_succeeds_first_attempt():
    client = FakeClient()
    outcome = run_stage(make_executor(client), AnalysisStage.BASIC_INFO)
    assert outcome.ok
    assert outcome.attempts == 1
    assert outcome.record.present_fields() == {"summary", "traits"}
    assert client.calls_for("basic_info") == 1


def test_missing_interests_exhausts_attempts():
    client = FakeClient(script={"interests": [NO_INTERESTS] * 10})
    outcome = run_stage(make_executor(client), AnalysisStage.INTERESTS)

    assert not outcome.ok
    assert client.calls_for("interests") == 10
    assert outcome.kind is ErrorKind.MISSING_INTERESTS
    assert outcome.missing_fields == ["interests"]
    assert isinstance(outcome.to_exception(), MissingInterestsError)


def test_missing_fields_regenerate_until_valid():
    client = FakeClient(script={"interests": [NO_INTERESTS, NO_INTERESTS]})
    outcome = run_stage(make_executor(client), AnalysisStage.INTERESTS)
    assert outcome.ok
    assert outcome.attempts == 3


def test_transient_errors_are_retried():
    client = FakeClient(script={"basic_info": [NetworkError("connection reset"), EmptyResponseError()]})
    outcome = run_stage(make_executor(client), AnalysisStage.BASIC_INFO)
    assert outcome.ok
    assert outcome.attempts == 3


def test_exhausted_transient_error_surfaces_last_error():
    client = FakeClient(script={"social_metrics": [NetworkError("down")] * 3})
    outcome = run_stage(make_executor(client, max_attempts=3), AnalysisStage.SOCIAL_METRICS)
    assert outcome.kind is ErrorKind.NETWORK
    assert isinstance(outcome.to_exception(), NetworkError)


def test_timeout_escalates_on_mobile():
    client = FakeClient(script={"basic_info": [PersonalityAnalysisTimeoutError()] * 2})
    executor = make_executor(client, DeviceClass.MOBILE)
    assert run_stage(executor, AnalysisStage.BASIC_INFO).ok
    assert [c["timeout"] for c in client.calls] == pytest.approx([10, 15, 22.5])

    # the escalated timeout carries over to later stages of the run
    run_stage(executor, AnalysisStage.INTERESTS)
    assert client.calls[-1]["timeout"] == pytest.approx(22.5)


def test_timeout_never_escalates_on_desktop():
    client = FakeClient(script={"basic_info": [PersonalityAnalysisTimeoutError()]})
    run_stage(make_executor(client), AnalysisStage.BASIC_INFO)
    assert [c["timeout"] for c in client.calls] == [10, 10]


def test_low_quality_responses_are_rejected():
    client = FakeClient(script={"basic_info": ["Too short."] * 2})
    outcome = run_stage(make_executor(client, max_attempts=2, min_quality=0.85), AnalysisStage.BASIC_INFO)
    assert outcome.kind is ErrorKind.LOW_QUALITY
    assert isinstance(outcome.to_exception(), LowQualityResponseError)
    assert client.calls_for("basic_info") == 2


def test_unrecoverable_error_is_critical_without_retry():
    client = FakeClient(script={"basic_info": [TextGenerationError("bad request", status=400)]})
    outcome = run_stage(make_executor(client), AnalysisStage.BASIC_INFO)
    assert outcome.kind is ErrorKind.CRITICAL
    assert client.calls_for("basic_info") == 1


def test_unexpected_exception_is_critical():
    client = FakeClient(script={"basic_info": [ValueError("boom")]})
    outcome = run_stage(make_executor(client), AnalysisStage.BASIC_INFO)
    assert outcome.kind is ErrorKind.CRITICAL
    assert isinstance(outcome.to_exception(), ValueError)


def test_cancellation_interrupts_call():
    client = FakeClient(script={"basic_info": [Hang]})
    executor = make_executor(client)

    async def scenario():
        token = CancellationToken("caller")
        task = asyncio.ensure_future(executor.execute_stage(AnalysisStage.BASIC_INFO, inputs(), token))
        await asyncio.sleep(0.01)
        token.cancel("user cancelled")
        return token, await task

    token, outcome = asyncio.run(scenario())
    assert outcome.kind is ErrorKind.ABORTED
    assert isinstance(outcome.error, CancelledOperation)
    assert outcome.error.origin is token
    assert client.calls_for("basic_info") == 1


def test_cancelled_token_makes_no_calls():
    client = FakeClient()

    async def scenario():
        token = CancellationToken()
        token.cancel("already gone")
        return await make_executor(client).execute_stage(AnalysisStage.BASIC_INFO, inputs(), token)

    assert asyncio.run(scenario()).kind is ErrorKind.ABORTED
    assert client.calls == []


def test_regeneration_key_raises_temperature():
    client = FakeClient()
    executor = make_executor(client)
    run_stage(executor, AnalysisStage.BASIC_INFO, inputs(regeneration_key="maya"))
    run_stage(executor, AnalysisStage.BASIC_INFO, inputs(regeneration_key="maya"))
    assert [c["temperature"] for c in client.calls] == pytest.approx(
        [settings.LLM_TEMPERATURE + 0.1, settings.LLM_TEMPERATURE + 0.2])


def test_vocabulary_gets_local_metrics():
    outcome = run_stage(make_executor(FakeClient()), AnalysisStage.VOCABULARY)
    assert outcome.ok
    assert outcome.record.vocabulary.metrics.totalWordsAnalyzed > 0


def test_raw_responses_are_captured(tmp_path):
    run_stage(make_executor(FakeClient(), raw_response_dir=tmp_path), AnalysisStage.BASIC_INFO)
    files = list(tmp_path.glob("*_basic_info_1_*.json"))
    assert len(files) == 1
    saved = json.loads(files[0].read_text())
    assert saved["stage"] == "basic_info"
    assert saved["response"].startswith("Summary:")
    assert saved["timestamp"].endswith("+00:00")


class TestCustomPrompt:
    def run_custom(self, executor, token=None):
        async def scenario():
            return await executor.execute_custom("What event would they enjoy?", "Planning a meetup",
                                                 inputs(), token or CancellationToken())
        return asyncio.run(scenario())

    def test_summary_line_is_returned(self):
        answer = self.run_custom(make_executor(FakeClient()))
        assert answer == "Maya would most enjoy a hands-on workshop about build performance."

    def test_plain_answer_is_returned_whole(self):
        text = "  They would enjoy a small hands-on workshop about build tooling and coffee.  "
        client = FakeClient(script={"custom": [text]})
        assert self.run_custom(make_executor(client)) == text.strip()

    def test_transient_failures_are_retried(self):
        client = FakeClient(script={"custom": [NetworkError("reset")]})
        assert self.run_custom(make_executor(client)).startswith("Maya")
        assert client.calls_for("custom") == 2

    def test_unrecoverable_error_propagates(self):
        client = FakeClient(script={"custom": [TextGenerationError("bad request", status=400)]})
        with pytest.raises(TextGenerationError):
            self.run_custom(make_executor(client))

    def test_exhausted_retries_raise_last_error(self):
        client = FakeClient(script={"custom": [NetworkError("reset")] * 2})
        with pytest.raises(NetworkError):
            self.run_custom(make_executor(client, max_attempts=2))
