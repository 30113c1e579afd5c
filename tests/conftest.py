import pytest

from resilient_fetch.settings import FetchConfig


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config() -> FetchConfig:
    """
    Config tuned for tests: generous rate limits, a 10-call breaker window
    with a 50% threshold, no retry delays.
    """
    return FetchConfig(
        rate_limit_capacity=100.0,
        rate_limit_refill_per_s=100.0,
        breaker_failure_threshold=0.5,
        breaker_window_size=10,
        breaker_min_calls=5,
        breaker_cooldown_s=30.0,
        retry_base_delay_s=0.0,
        retry_jitter_s=0.0,
        escalation_min_bytes=0,
        cache_ttl_s=60.0,
    )
