import asyncio

import pytest

from personality_engine.cancellation import CancellationToken, CancelledOperation
from personality_engine.errors import (
    AnalysisAborted,
    EmptyResponseError,
    ErrorKind,
    GenerationTimeoutError,
    LowQualityResponseError,
    MissingInterestsError,
    MissingPsychoanalysisError,
    ModelUnavailableError,
    PersonalityAnalysisError,
    StageOutcome,
    classify_error,
    error_for_missing_fields,
    is_critical,
    kind_for_missing_fields,
)
from personality_engine.models import AnalysisStage


@pytest.mark.parametrize("exc,kind", [
    (GenerationTimeoutError(), ErrorKind.TIMEOUT),
    (ModelUnavailableError(), ErrorKind.MODEL_UNAVAILABLE),
    (EmptyResponseError(), ErrorKind.EMPTY_RESPONSE),
    (LowQualityResponseError(0.5, 0.7), ErrorKind.LOW_QUALITY),
    (MissingInterestsError(missing_fields=["interests"]), ErrorKind.MISSING_INTERESTS),
    (PersonalityAnalysisError(), ErrorKind.INCOMPLETE_ANALYSIS),
    (AnalysisAborted(), ErrorKind.ABORTED),
    (KeyError("x"), ErrorKind.CRITICAL),
])
def test_classify_error(exc, kind):
    assert classify_error(exc) is kind


def test_only_field_specific_errors_are_tolerated():
    assert not is_critical(MissingInterestsError())
    assert is_critical(PersonalityAnalysisError())
    assert is_critical(ModelUnavailableError())


def test_missing_field_precedence():
    assert kind_for_missing_fields(["communicationStyle", "interests"]) is ErrorKind.MISSING_INTERESTS
    assert kind_for_missing_fields(["thoughtProcess", "emotionalTone"]) is ErrorKind.MISSING_PSYCHOANALYSIS
    assert kind_for_missing_fields(["summary"]) is ErrorKind.INCOMPLETE_ANALYSIS
    assert kind_for_missing_fields(["messageArchitecture"]) is ErrorKind.MISSING_VOCABULARY_PATTERNS

    error = error_for_missing_fields(["emotionalIntelligence", "summary", "summary"])
    assert isinstance(error, MissingPsychoanalysisError)
    assert error.missing_fields == ["emotionalIntelligence", "summary"]


def test_stage_outcome_exceptions():
    timeout = GenerationTimeoutError()
    outcome = StageOutcome.failure(AnalysisStage.INTERESTS, ErrorKind.TIMEOUT, error=timeout, attempts=3)
    assert outcome.to_exception() is timeout

    outcome = StageOutcome.failure(AnalysisStage.INTERESTS, ErrorKind.LOW_QUALITY)
    assert isinstance(outcome.to_exception(), PersonalityAnalysisError)

    with pytest.raises(ValueError):
        StageOutcome.success(AnalysisStage.INTERESTS, None, attempts=1).to_exception()


class TestCancellationToken:
    def test_cancel_once_and_propagate_to_linked(self):
        async def scenario():
            root = CancellationToken("root")
            child = CancellationToken.link(root, name="child")
            assert root.cancel("stop")
            assert not root.cancel("again")
            return root, child

        root, child = asyncio.run(scenario())
        assert child.cancelled
        assert child.reason == "stop"
        assert child.fired_by(root)
        with pytest.raises(CancelledOperation):
            child.raise_if_cancelled()

    def test_child_cancel_does_not_reach_parent(self):
        async def scenario():
            root = CancellationToken("root")
            child = CancellationToken.link(root)
            child.cancel("internal")
            return root, child

        root, child = asyncio.run(scenario())
        assert not root.cancelled
        assert child.fired_by(child)
        assert not child.fired_by(root)

    def test_released_token_is_detached(self):
        async def scenario():
            root = CancellationToken("root")
            child = CancellationToken.link(root)
            child.release()
            root.cancel()
            return child

        assert not asyncio.run(scenario()).cancelled

    def test_link_to_cancelled_parent(self):
        async def scenario():
            root = CancellationToken("root")
            root.cancel("early")
            return CancellationToken.link(root, None)

        child = asyncio.run(scenario())
        assert child.cancelled
        assert child.reason == "early"

    def test_sleep_returns_early_when_cancelled(self):
        async def scenario():
            token = CancellationToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel, "wake")
            return await token.sleep(5)

        assert asyncio.run(scenario()) is True

    def test_guard(self):
        async def scenario():
            token = CancellationToken()
            assert await token.guard(asyncio.sleep(0, result="done")) == "done"
            asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")
            await token.guard(asyncio.sleep(5))

        with pytest.raises(CancelledOperation):
            asyncio.run(scenario())
