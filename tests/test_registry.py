from dataclasses import replace

import pytest

from resilient_fetch.models import FetchStatus
from resilient_fetch.registry import (
    CircuitBreaker,
    CircuitState,
    HostResilienceRegistry,
    Permit,
    Rejected,
    TokenBucket,
)
from resilient_fetch.settings import FetchConfig, HostRateLimit


def make_registry(config: FetchConfig, clock) -> HostResilienceRegistry:
    return HostResilienceRegistry(config, clock=clock)


def fail(registry: HostResilienceRegistry, host: str, times: int) -> None:
    for _ in range(times):
        assert isinstance(registry.acquire(host), Permit)
        registry.record_outcome(host, success=False, latency_s=0.1)


# ---------------------------------------------------------------------------
# Token bucket
# ---------------------------------------------------------------------------


def test_bucket_allows_burst_up_to_capacity(clock):
    bucket = TokenBucket(capacity=3, refill_per_s=1.0, clock=clock)
    assert [bucket.try_consume() for _ in range(4)] == [True, True, True, False]


def test_bucket_refills_continuously(clock):
    bucket = TokenBucket(capacity=2, refill_per_s=2.0, clock=clock)
    bucket.try_consume()
    bucket.try_consume()
    assert not bucket.try_consume()

    clock.advance(0.5)
    assert bucket.try_consume()
    assert not bucket.try_consume()


def test_bucket_stays_within_bounds(clock):
    bucket = TokenBucket(capacity=5, refill_per_s=3.0, clock=clock)
    steps = [0.0, 0.1, 10.0, 0.0, 0.3, 0.0, 100.0, 0.05]
    for dt in steps:
        clock.advance(dt)
        for _ in range(3):
            bucket.try_consume()
            assert 0.0 <= bucket.tokens <= 5.0

    clock.advance(1000)
    assert bucket.tokens == 5.0


# ---------------------------------------------------------------------------
# Circuit breaker state machine
# ---------------------------------------------------------------------------


def test_breaker_needs_min_calls_before_opening(clock):
    breaker = CircuitBreaker(failure_threshold=0.5, window_size=10, min_calls=5, clock=clock)
    for _ in range(4):
        breaker.record(False)
    assert breaker.state is CircuitState.CLOSED

    breaker.record(False)
    assert breaker.state is CircuitState.OPEN


def test_breaker_threshold_is_strict(clock):
    breaker = CircuitBreaker(failure_threshold=0.5, window_size=10, min_calls=10, clock=clock)
    for success in [True, False] * 5:
        breaker.record(success)
    # exactly 50% does not exceed the threshold
    assert breaker.state is CircuitState.CLOSED


def test_breaker_window_rolls(clock):
    breaker = CircuitBreaker(failure_threshold=0.5, window_size=4, min_calls=4, clock=clock)
    for success in [False, False, True, True]:
        breaker.record(success)
    assert breaker.state is CircuitState.CLOSED

    breaker.record(True)
    breaker.record(True)
    assert breaker.failure_rate == 0.0


def test_failing_window_opens_circuit_and_rejects_following_calls(config, clock):
    registry = make_registry(config, clock)

    fail(registry, "x.example", 5)
    outcomes = [registry.acquire("x.example") for _ in range(2)]

    assert all(isinstance(o, Rejected) for o in outcomes)
    assert all(o.reason is FetchStatus.CIRCUIT_OPEN for o in outcomes)


def test_open_circuit_scenario_with_ten_call_window(clock):
    cfg = FetchConfig(
        rate_limit_capacity=100, rate_limit_refill_per_s=0,
        breaker_failure_threshold=0.5, breaker_window_size=10, breaker_min_calls=6,
    )
    registry = make_registry(cfg, clock)

    fail(registry, "x.example", 6)
    seventh = registry.acquire("x.example")

    assert seventh == Rejected(host="x.example", reason=FetchStatus.CIRCUIT_OPEN)


def test_open_circuit_rejects_until_cooldown(config, clock):
    registry = make_registry(config, clock)
    fail(registry, "a.example", 5)

    for _ in range(3):
        clock.advance(9)
        assert isinstance(registry.acquire("a.example"), Rejected)
    assert registry.circuit_state("a.example") is CircuitState.OPEN


def test_half_open_allows_exactly_one_trial(config, clock):
    registry = make_registry(config, clock)
    fail(registry, "a.example", 5)
    clock.advance(config.breaker_cooldown_s)

    first = registry.acquire("a.example")
    others = [registry.acquire("a.example") for _ in range(5)]

    assert first == Permit(host="a.example", trial=True)
    assert registry.circuit_state("a.example") is CircuitState.HALF_OPEN
    assert all(o == Rejected("a.example", FetchStatus.CIRCUIT_OPEN) for o in others)


def test_half_open_success_closes_and_resets_window(config, clock):
    registry = make_registry(config, clock)
    fail(registry, "a.example", 5)
    clock.advance(config.breaker_cooldown_s)

    registry.acquire("a.example")
    registry.record_outcome("a.example", success=True)

    assert registry.circuit_state("a.example") is CircuitState.CLOSED
    assert registry.snapshot("a.example").samples == 0
    assert isinstance(registry.acquire("a.example"), Permit)


def test_half_open_failure_reopens_and_restarts_cooldown(config, clock):
    registry = make_registry(config, clock)
    fail(registry, "a.example", 5)
    clock.advance(config.breaker_cooldown_s)

    registry.acquire("a.example")
    registry.record_outcome("a.example", success=False)
    assert registry.circuit_state("a.example") is CircuitState.OPEN

    clock.advance(config.breaker_cooldown_s - 1)
    assert isinstance(registry.acquire("a.example"), Rejected)
    clock.advance(1)
    assert registry.acquire("a.example") == Permit("a.example", trial=True)


def test_released_trial_permit_frees_the_slot(config, clock):
    registry = make_registry(config, clock)
    fail(registry, "a.example", 5)
    clock.advance(config.breaker_cooldown_s)

    permit = registry.acquire("a.example")
    registry.release(permit)

    assert registry.acquire("a.example") == Permit("a.example", trial=True)


# ---------------------------------------------------------------------------
# Registry: rate limiting and host isolation
# ---------------------------------------------------------------------------


def test_rate_limited_before_circuit_is_consulted(clock):
    cfg = FetchConfig(rate_limit_capacity=2, rate_limit_refill_per_s=0)
    registry = make_registry(cfg, clock)

    assert isinstance(registry.acquire("r.example"), Permit)
    assert isinstance(registry.acquire("r.example"), Permit)
    rejected = registry.acquire("r.example")

    assert rejected == Rejected("r.example", FetchStatus.RATE_LIMITED)
    assert registry.circuit_state("r.example") is CircuitState.CLOSED


def test_rate_limited_does_not_take_half_open_trial(clock):
    cfg = FetchConfig(
        rate_limit_capacity=5, rate_limit_refill_per_s=0,
        breaker_min_calls=5, breaker_cooldown_s=10,
    )
    registry = make_registry(cfg, clock)
    fail(registry, "r.example", 5)
    clock.advance(10)

    assert registry.acquire("r.example") == Rejected("r.example", FetchStatus.RATE_LIMITED)
    # circuit was never asked, so it is still waiting for its first post-cooldown request
    assert registry.circuit_state("r.example") is CircuitState.OPEN


def test_per_host_rate_limit_override(clock):
    cfg = FetchConfig(
        rate_limit_capacity=10, rate_limit_refill_per_s=0,
        host_rate_limits={"slow.example": HostRateLimit(capacity=1, refill_per_s=0)},
    )
    registry = make_registry(cfg, clock)

    assert isinstance(registry.acquire("slow.example"), Permit)
    assert isinstance(registry.acquire("slow.example"), Rejected)
    assert all(isinstance(registry.acquire("fast.example"), Permit) for _ in range(10))


def test_hosts_are_isolated(config, clock):
    registry = make_registry(config, clock)
    fail(registry, "bad.example", 5)

    assert isinstance(registry.acquire("bad.example"), Rejected)
    assert isinstance(registry.acquire("good.example"), Permit)
    assert registry.circuit_state("good.example") is CircuitState.CLOSED


def test_snapshot_tracks_calls_and_latency(config, clock):
    registry = make_registry(config, clock)
    registry.acquire("s.example")
    registry.record_outcome("s.example", success=True, latency_s=0.2)
    registry.acquire("s.example")
    registry.record_outcome("s.example", success=False, latency_s=0.4)

    snap = registry.snapshot("s.example")

    assert snap.calls == 2
    assert snap.failures == 1
    assert snap.failure_rate == 0.5
    assert snap.avg_latency_s == pytest.approx(0.3)
    assert registry.hosts() == ["s.example"]


def test_prune_forgets_only_idle_hosts(config, clock):
    registry = make_registry(config, clock)
    registry.acquire("ok.example")
    registry.record_outcome("ok.example", success=True)
    fail(registry, "flaky.example", 1)
    fail(registry, "down.example", 5)
    clock.advance(1)

    assert registry.prune() == 1
    assert registry.hosts() == ["down.example", "flaky.example"]
    assert registry.circuit_state("down.example") is CircuitState.OPEN


def test_registry_prunes_when_tracking_too_many_hosts(config, clock):
    registry = make_registry(replace(config, registry_prune_threshold=2), clock)
    registry.acquire("a.example")
    registry.acquire("b.example")
    fail(registry, "b.example", 1)
    clock.advance(1)

    registry.acquire("c.example")

    assert registry.hosts() == ["b.example", "c.example"]
