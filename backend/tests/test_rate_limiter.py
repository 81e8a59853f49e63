import pytest

from personality_engine.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_window_limit(clock):
    limiter = RateLimiter(max_requests=2, max_concurrent=10, window_s=60, clock=clock)
    for _ in range(2):
        assert limiter.is_allowed("a")
        limiter.add_request("a")
        limiter.remove_request("a")
    assert not limiter.is_allowed("a")
    assert limiter.remaining("a") == 0
    assert limiter.is_allowed("b")


def test_requests_age_out_of_window(clock):
    limiter = RateLimiter(max_requests=1, max_concurrent=10, window_s=60, clock=clock)
    limiter.add_request("a")
    limiter.remove_request("a")

    clock.now += 30
    assert not limiter.is_allowed("a")
    assert limiter.time_until_reset("a") == pytest.approx(30)

    clock.now += 30
    assert limiter.is_allowed("a")
    assert limiter.time_until_reset("a") == 0.0


def test_concurrency_cap(clock):
    limiter = RateLimiter(max_requests=100, max_concurrent=2, window_s=60, clock=clock)
    limiter.add_request("a")
    limiter.add_request("a")
    assert limiter.active("a") == 2
    assert not limiter.is_allowed("a")

    limiter.remove_request("a")
    assert limiter.is_allowed("a")
    assert limiter.remaining("a") == 98


def test_remove_never_goes_negative(clock):
    limiter = RateLimiter(max_requests=5, max_concurrent=1, window_s=60, clock=clock)
    limiter.remove_request("a")
    assert limiter.active("a") == 0
    assert limiter.is_allowed("a")


def test_clear(clock):
    limiter = RateLimiter(max_requests=1, max_concurrent=1, window_s=60, clock=clock)
    limiter.add_request("a")
    limiter.add_request("b")
    limiter.clear_identity("a")
    assert limiter.is_allowed("a")
    assert not limiter.is_allowed("b")
    limiter.clear_all()
    assert limiter.is_allowed("b")
