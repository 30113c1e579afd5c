from typing import Any

from .models import FetchResult, FetchStatus, Strategy, Target


def rejected_result(target: Target, status: FetchStatus, strategy: Strategy, attempts: int = 0, latency_s: float = 0.0) -> FetchResult:
    """
    Convenience factory for a FetchResult representing a fast rejection
    (rate limited or circuit open) before any network call was made.
    """
    return FetchResult(
        url=target.url,
        status=status,
        strategy=strategy,
        attempts=attempts,
        latency_s=latency_s,
        error=f"{target.host}: {status.value}",
    )


def cached_result(target: Target, extracted: dict[str, Any], latency_s: float = 0.0) -> FetchResult:
    """FetchResult for a live cache entry; no fetcher was invoked."""
    return FetchResult(
        url=target.url,
        status=FetchStatus.SUCCESS,
        strategy=Strategy.CACHE,
        attempts=0,
        latency_s=latency_s,
        extracted=extracted,
    )
