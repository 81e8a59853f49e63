import pytest

from personality_engine.quality import RetryContextRegistry, assess_response_quality, lexical_overlap

PLAIN = "The person writes short practical notes about tooling and coffee every week."


def test_plain_response_scores_full():
    assert assess_response_quality(PLAIN) == pytest.approx(1.0)


def test_short_response_is_penalized():
    assert assess_response_quality("Too short.") == pytest.approx(0.8)


def test_long_response_is_penalized():
    text = " ".join(f"word{i}" for i in range(120))
    assert len(text) > 500
    assert assess_response_quality(text) == pytest.approx(0.9)


def test_repeated_runs_are_penalized():
    text = "abcdefghijabcdefghij followed by a normal sentence about tools."
    assert assess_response_quality(text) == pytest.approx(0.9)


def test_similar_to_previous_is_penalized():
    assert lexical_overlap(PLAIN, PLAIN) == pytest.approx(1.0)
    assert assess_response_quality(PLAIN, [PLAIN]) == pytest.approx(0.8)


def test_dissimilar_previous_is_not_penalized():
    other = "Completely unrelated zebra quartz nebula output."
    assert assess_response_quality(PLAIN, [other]) == pytest.approx(1.0)


def test_score_is_clamped_to_zero():
    text = "".join(f"{c * 10}{c * 10}" for c in "abcdefghijkl")
    assert assess_response_quality(text) == 0.0


class TestRetryContextRegistry:
    def test_style_variation_grows_to_cap(self):
        registry = RetryContextRegistry(step=0.1, cap=0.3, history=5)
        variations = [registry.register_attempt("k") for _ in range(4)]
        assert variations == pytest.approx([0.1, 0.2, 0.3, 0.3])

    def test_previous_responses_are_bounded(self):
        registry = RetryContextRegistry(step=0.1, cap=0.3, history=2)
        for text in ("one", "two", "three"):
            registry.record_response("k", text)
        assert registry.previous("k") == ["two", "three"]

    def test_keys_are_independent_and_droppable(self):
        registry = RetryContextRegistry(step=0.1, cap=0.3, history=2)
        registry.record_response("a", "text")
        assert registry.previous("b") == []
        assert "a" in registry
        registry.drop("a")
        assert "a" not in registry
