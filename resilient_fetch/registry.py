"""
Per-host failure isolation and throughput shaping.

Each host gets one token bucket and one circuit breaker. `acquire` checks
them in that order: a rate-limited caller never touches the breaker, and a
caller that got a token is then subject to the breaker state machine:

    CLOSED --failure rate exceeded--> OPEN
    OPEN --cooldown elapsed, next acquire--> HALF_OPEN (one trial permit)
    HALF_OPEN --success--> CLOSED
    HALF_OPEN --failure--> OPEN

All methods are synchronous and never suspend, so every call is atomic with
respect to the asyncio tasks sharing the registry. Host states are fully
independent of each other.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .models import FetchStatus
from .settings import FetchConfig

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class Permit:
    host: str
    trial: bool = False


@dataclass(frozen=True)
class Rejected:
    host: str
    reason: FetchStatus  # RATE_LIMITED or CIRCUIT_OPEN


class TokenBucket:
    """Continuously refilling token bucket; tokens stay within [0, capacity]."""

    def __init__(self, capacity: float, refill_per_s: float, clock: Clock = time.monotonic):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if refill_per_s < 0:
            raise ValueError("refill_per_s must be >= 0")
        self.capacity = float(capacity)
        self.refill_per_s = float(refill_per_s)
        self._clock = clock
        self._tokens = self.capacity
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_s)
        self._last_refill = now

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def try_consume(self) -> bool:
        self._refill()
        if self._tokens < 1.0:
            return False
        self._tokens -= 1.0
        return True


class CircuitBreaker:
    """
    Rolling-window circuit breaker for one host.

    The window holds the outcomes of the last `window_size` calls. Once at
    least `min_calls` outcomes are recorded and the failure fraction is
    strictly greater than `failure_threshold`, the circuit opens.
    """

    def __init__(
        self,
        failure_threshold: float = 0.5,
        window_size: int = 10,
        min_calls: int = 5,
        cooldown_s: float = 30.0,
        clock: Clock = time.monotonic,
    ):
        if not 0.0 <= failure_threshold < 1.0:
            raise ValueError("failure_threshold must be in [0, 1)")
        if window_size < 1 or min_calls < 1:
            raise ValueError("window_size and min_calls must be >= 1")
        self.failure_threshold = failure_threshold
        self.min_calls = min(min_calls, window_size)
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._window: deque[bool] = deque(maxlen=window_size)
        self.state = CircuitState.CLOSED
        self.last_transition = clock()
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return self._window.count(False) / len(self._window)

    @property
    def samples(self) -> int:
        return len(self._window)

    @property
    def idle(self) -> bool:
        """Closed with no failures in the window."""
        return self.state is CircuitState.CLOSED and False not in self._window

    def _transition(self, state: CircuitState) -> None:
        self.state = state
        self.last_transition = self._clock()
        if state is CircuitState.OPEN:
            self._opened_at = self.last_transition

    def try_acquire(self) -> tuple[bool, bool]:
        """Return (allowed, is_trial)."""
        if self.state is CircuitState.CLOSED:
            return True, False

        if self.state is CircuitState.OPEN:
            if self._clock() - self._opened_at < self.cooldown_s:
                return False, False
            self._transition(CircuitState.HALF_OPEN)
            self._trial_in_flight = False

        # HALF_OPEN: a single probe at a time
        if self._trial_in_flight:
            return False, False
        self._trial_in_flight = True
        return True, True

    def release_trial(self) -> None:
        """Give back an unused trial slot without recording an outcome."""
        if self.state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False

    def record(self, success: bool) -> None:
        if self.state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            if success:
                self._window.clear()
                self._transition(CircuitState.CLOSED)
            else:
                self._transition(CircuitState.OPEN)
            return

        if self.state is CircuitState.OPEN:
            # late outcome of a call permitted before the circuit opened
            return

        self._window.append(success)
        if len(self._window) >= self.min_calls and self.failure_rate > self.failure_threshold:
            self._transition(CircuitState.OPEN)


@dataclass(frozen=True)
class HostSnapshot:
    host: str
    circuit: CircuitState
    failure_rate: float
    samples: int
    tokens: float
    last_transition: float
    calls: int
    failures: int
    avg_latency_s: float


class _HostState:
    def __init__(self, bucket: TokenBucket, breaker: CircuitBreaker):
        self.bucket = bucket
        self.breaker = breaker
        self.calls = 0
        self.failures = 0
        self.total_latency_s = 0.0


class HostResilienceRegistry:
    """Owns one TokenBucket and one CircuitBreaker per target host."""

    def __init__(self, config: FetchConfig, clock: Clock = time.monotonic):
        self.config = config
        self._clock = clock
        self._hosts: dict[str, _HostState] = {}

    def _state(self, host: str) -> _HostState:
        state = self._hosts.get(host)
        if state is None:
            if len(self._hosts) >= self.config.registry_prune_threshold:
                self.prune()
            limit = self.config.rate_limit_for(host)
            state = _HostState(
                bucket=TokenBucket(limit.capacity, limit.refill_per_s, clock=self._clock),
                breaker=CircuitBreaker(
                    failure_threshold=self.config.breaker_failure_threshold,
                    window_size=self.config.breaker_window_size,
                    min_calls=self.config.breaker_min_calls,
                    cooldown_s=self.config.breaker_cooldown_s,
                    clock=self._clock,
                ),
            )
            self._hosts[host] = state
        return state

    def acquire(self, host: str) -> Permit | Rejected:
        state = self._state(host)

        if not state.bucket.try_consume():
            logger.debug("registry: %s rate limited", host)
            return Rejected(host=host, reason=FetchStatus.RATE_LIMITED)

        before = state.breaker.state
        allowed, trial = state.breaker.try_acquire()
        if state.breaker.state is not before:
            logger.info("registry: circuit for %s %s -> %s", host, before.value, state.breaker.state.value)
        if not allowed:
            logger.debug("registry: %s circuit open, rejecting", host)
            return Rejected(host=host, reason=FetchStatus.CIRCUIT_OPEN)
        return Permit(host=host, trial=trial)

    def release(self, permit: Permit) -> None:
        """Return a permit whose call never produced an outcome (e.g. cancelled)."""
        if permit.trial:
            self._state(permit.host).breaker.release_trial()

    def record_outcome(self, host: str, success: bool, latency_s: float = 0.0) -> None:
        state = self._state(host)
        state.calls += 1
        state.total_latency_s += latency_s
        if not success:
            state.failures += 1

        before = state.breaker.state
        state.breaker.record(success)
        after = state.breaker.state
        if after is not before:
            log = logger.warning if after is CircuitState.OPEN else logger.info
            log(
                "registry: circuit for %s %s -> %s (failure rate %.0f%%)",
                host, before.value, after.value, state.breaker.failure_rate * 100,
            )

    def prune(self) -> int:
        """
        Forget hosts that hold no state worth keeping: circuit closed with no
        recorded failures and a full token bucket. A pruned host starts over
        from defaults on its next call.
        """
        idle = [
            host for host, state in self._hosts.items()
            if state.breaker.idle and state.bucket.tokens >= state.bucket.capacity
        ]
        for host in idle:
            del self._hosts[host]
        if idle:
            logger.debug("registry: pruned %d idle hosts", len(idle))
        return len(idle)

    def circuit_state(self, host: str) -> CircuitState:
        return self._state(host).breaker.state

    def hosts(self) -> list[str]:
        return sorted(self._hosts)

    def snapshot(self, host: str) -> HostSnapshot:
        state = self._state(host)
        return HostSnapshot(
            host=host,
            circuit=state.breaker.state,
            failure_rate=state.breaker.failure_rate,
            samples=state.breaker.samples,
            tokens=state.bucket.tokens,
            last_transition=state.breaker.last_transition,
            calls=state.calls,
            failures=state.failures,
            avg_latency_s=state.total_latency_s / state.calls if state.calls else 0.0,
        )
