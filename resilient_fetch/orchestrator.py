"""
Top-level "fetch one target" operation.

FetchOrchestrator.fetch_one composes the pieces:

    StrategySelector (cache check, initial plan)
      -> HostResilienceRegistry.acquire (rate limit, circuit breaker)
      -> HttpScraper.fetch | BrowserScraper.render
      -> extract()
      -> CacheStore.put

Retryable failures are handled here; the caller only ever sees one terminal
FetchResult per call. Concurrent calls for the same target collapse onto a
single in-flight fetch whose result is shared.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from .browser_scraper import BrowserScraper
from .cache import CacheStore
from .extractor import ExtractionFailed, RuleBook, RuleSet, extract
from .http_scraper import HttpScraper
from .models import (
    ErrorKind,
    FetchError,
    FetchResult,
    FetchStatus,
    RawPage,
    RenderHint,
    Strategy,
    Target,
)
from .policy import CachedHit, StrategySelector, should_escalate
from .registry import HostResilienceRegistry, Rejected
from .settings import FetchConfig
from .utils import cached_result, rejected_result

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-call retry parameters.

    Backoff before retry n (1-based) is
    min(max_delay_s, base_delay_s * 2**(n-1)) + uniform(0, jitter_s).
    """
    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 10.0
    jitter_s: float = 0.2
    auto_escalate: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_config(cls, config: FetchConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_s=config.retry_base_delay_s,
            max_delay_s=config.retry_max_delay_s,
            jitter_s=config.retry_jitter_s,
            auto_escalate=config.auto_escalate,
        )

    def backoff(self, retry: int, rng: random.Random) -> float:
        delay = min(self.max_delay_s, self.base_delay_s * 2 ** (retry - 1))
        if self.jitter_s > 0:
            delay += rng.uniform(0, self.jitter_s)
        return delay


class FetchOrchestrator:
    def __init__(
        self,
        config: FetchConfig,
        registry: HostResilienceRegistry,
        cache: CacheStore,
        http: HttpScraper,
        browser: BrowserScraper | None,
        rulebook: RuleBook,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.registry = registry
        self.cache = cache
        self.selector = StrategySelector(cache)
        self.http = http
        self.browser = browser
        self.rulebook = rulebook
        self.policy = policy or RetryPolicy.from_config(config)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._inflight: dict[str, asyncio.Future] = {}

    async def fetch_one(self, target: Target, policy: RetryPolicy | None = None) -> FetchResult:
        """
        Fetch, extract and cache one target.

        Always returns exactly one terminal FetchResult. Cancelling the call
        aborts the in-flight fetcher call and propagates CancelledError.
        """
        policy = policy or self.policy
        t0 = time.perf_counter()

        try:
            rules = self.rulebook.get(target.rules)
        except KeyError as e:
            return FetchResult(
                url=target.url,
                status=FetchStatus.PERMANENT_FAILURE,
                strategy=Strategy.HTTP,
                error=str(e.args[0]),
            )

        while True:
            pending = self._inflight.get(target.cache_key)
            if pending is None:
                break
            logger.debug("orchestrator: joining in-flight fetch for %s", target.url)
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # the leading call was cancelled; take over

        resolution = self.selector.resolve(target)
        if isinstance(resolution, CachedHit):
            return cached_result(target, resolution.data, latency_s=time.perf_counter() - t0)

        future = asyncio.get_running_loop().create_future()
        self._inflight[target.cache_key] = future
        try:
            result = await self._fetch(target, rules, resolution.strategy, policy, t0)
        except BaseException:
            future.cancel()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._inflight.get(target.cache_key) is future:
                del self._inflight[target.cache_key]

    async def _invoke(self, strategy: Strategy, target: Target) -> RawPage | FetchError:
        if strategy is Strategy.BROWSER:
            if self.browser is None:
                return FetchError(
                    ErrorKind.SESSION_UNAVAILABLE, FetchStatus.SESSION_UNAVAILABLE,
                    "browser rendering is not enabled",
                )
            return await self.browser.render(
                target.url, timeout=self.config.browser_timeout_s, wait=target.wait,
            )
        return await self.http.fetch(
            target.url, timeout=self.config.http_timeout_s,
            method=target.method, payload=target.payload,
        )

    def _can_escalate(self, target: Target, policy: RetryPolicy, strategy: Strategy) -> bool:
        return (
            strategy is Strategy.HTTP
            and target.render is RenderHint.AUTO
            and target.method == "GET"
            and policy.auto_escalate
            and self.browser is not None
        )

    async def _fetch(
        self,
        target: Target,
        rules: RuleSet,
        strategy: Strategy,
        policy: RetryPolicy,
        t0: float,
    ) -> FetchResult:
        attempts = 0
        escalated = False
        last: FetchResult | None = None
        # HTTP page that triggered a content escalation; used if the browser fails
        http_page: RawPage | None = None

        def elapsed() -> float:
            return time.perf_counter() - t0

        while attempts < policy.max_attempts:
            decision = self.registry.acquire(target.host)
            if isinstance(decision, Rejected):
                logger.info("orchestrator: %s rejected (%s)", target.url, decision.reason.value)
                rejected = rejected_result(target, decision.reason, strategy, attempts, elapsed())
                return self._fall_back(target, rules, rejected, http_page)

            attempts += 1
            call_start = time.perf_counter()
            try:
                outcome = await self._invoke(strategy, target)
            except BaseException:
                self.registry.release(decision)
                raise
            call_latency = time.perf_counter() - call_start

            if isinstance(outcome, FetchError):
                if outcome.status is FetchStatus.SESSION_UNAVAILABLE:
                    # resource limit on our side, not the host's fault
                    self.registry.release(decision)
                    unavailable = self._failure(target, outcome, strategy, attempts, elapsed())
                    return self._fall_back(target, rules, unavailable, http_page)

                self.registry.record_outcome(target.host, success=False, latency_s=call_latency)
                last = self._failure(target, outcome, strategy, attempts, elapsed())
                if outcome.status is FetchStatus.PERMANENT_FAILURE:
                    return self._fall_back(target, rules, last, http_page)

                remaining = policy.max_attempts - attempts
                if remaining <= 0:
                    break
                if not escalated and self._can_escalate(target, policy, strategy) and remaining == 1:
                    # keep the last attempt for the browser
                    logger.info("orchestrator: HTTP retries exhausted for %s, escalating to browser", target.url)
                    strategy = Strategy.BROWSER
                    escalated = True
                    continue

                delay = policy.backoff(attempts, self._rng)
                logger.info(
                    "orchestrator: %s attempt %d/%d failed (%s), retrying in %.2fs",
                    target.url, attempts, policy.max_attempts, outcome.kind.value, delay,
                )
                await self._sleep(delay)
                continue

            self.registry.record_outcome(target.host, success=True, latency_s=call_latency)

            if (
                not escalated
                and attempts < policy.max_attempts
                and self._can_escalate(target, policy, strategy)
                and should_escalate(outcome, rules, self.config)
            ):
                logger.info("orchestrator: %s lacks expected content over HTTP, escalating to browser", target.url)
                http_page = outcome
                strategy = Strategy.BROWSER
                escalated = True
                continue

            return self._success(target, rules, outcome, strategy, attempts, elapsed())

        return self._fall_back(target, rules, last, http_page)

    def _fall_back(self, target: Target, rules: RuleSet, result: FetchResult, http_page: RawPage | None) -> FetchResult:
        """After a failed content escalation, settle for what HTTP returned."""
        if http_page is None:
            return result
        logger.info(
            "orchestrator: browser escalation for %s ended in %s, using the HTTP response",
            target.url, result.status.value,
        )
        return self._success(target, rules, http_page, Strategy.HTTP, result.attempts, result.latency_s)

    def _success(
        self,
        target: Target,
        rules: RuleSet,
        page: RawPage,
        strategy: Strategy,
        attempts: int,
        latency_s: float,
    ) -> FetchResult:
        try:
            extracted = extract(page.html, rules)
        except ExtractionFailed as e:
            logger.info("orchestrator: %s", e)
            return FetchResult(
                url=target.url,
                status=FetchStatus.EXTRACTION_FAILED,
                strategy=strategy,
                attempts=attempts,
                latency_s=latency_s,
                raw_content=page.body,
                error=str(e),
                status_code=page.status_code,
            )

        ttl_s = rules.ttl_s if rules.ttl_s is not None else self.config.cache_ttl_s
        self.cache.put(target.cache_key, extracted, ttl_s=ttl_s)
        return FetchResult(
            url=target.url,
            status=FetchStatus.SUCCESS,
            strategy=strategy,
            attempts=attempts,
            latency_s=latency_s,
            raw_content=page.body,
            extracted=extracted,
            status_code=page.status_code,
        )

    @staticmethod
    def _failure(target: Target, error: FetchError, strategy: Strategy, attempts: int, latency_s: float) -> FetchResult:
        return FetchResult(
            url=target.url,
            status=error.status,
            strategy=strategy,
            attempts=attempts,
            latency_s=latency_s,
            error_kind=error.kind,
            error=error.message,
            status_code=error.status_code,
        )
