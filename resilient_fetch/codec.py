"""
Encode/decode functions for the types that cross the service boundary.

Inbound requests are validated with pydantic and turned into a Target;
outbound results are plain JSON-ready dicts.
"""

import base64
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .cache import CacheStats
from .models import FetchResult, RenderHint, Target, WaitCondition, WaitKind
from .registry import HostSnapshot


class WaitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: WaitKind = WaitKind.NETWORK_IDLE
    selector: str | None = None
    delay_s: float = Field(default=0.0, ge=0.0)

    @model_validator(mode="after")
    def _selector_required(self):
        if self.kind is WaitKind.SELECTOR and not self.selector:
            raise ValueError("wait.selector is required when wait.kind is 'selector'")
        return self


class FetchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    render: RenderHint = RenderHint.AUTO
    rules: str = "page"
    wait: WaitRequest | None = None
    method: Literal["GET", "POST"] = "GET"
    payload: dict[str, Any] | None = None
    include_raw: bool = False


def decode_request(data: Any) -> FetchRequest:
    """Validate a decoded JSON body; raises pydantic.ValidationError."""
    return FetchRequest.model_validate(data)


def decode_target(data: Any) -> Target:
    """
    Build a Target from a decoded JSON body.

    Raises:
        pydantic.ValidationError: malformed request fields.
        ValueError: URL is not an absolute http(s) URL, or payload without POST.
    """
    return request_to_target(decode_request(data))


def request_to_target(req: FetchRequest) -> Target:
    wait = None
    if req.wait is not None:
        wait = WaitCondition(kind=req.wait.kind, selector=req.wait.selector, delay_s=req.wait.delay_s)
    return Target.build(
        req.url,
        render=req.render,
        rules=req.rules,
        wait=wait,
        method=req.method,
        payload=req.payload,
    )


def encode_result(result: FetchResult, include_raw: bool = False) -> dict[str, Any]:
    data = {
        "url": result.url,
        "status": result.status.value,
        "ok": result.ok,
        "retry_later": result.retry_later,
        "strategy": result.strategy.value,
        "attempts": result.attempts,
        "latency_s": round(result.latency_s, 4),
        "extracted": result.extracted,
        "error_kind": result.error_kind.value if result.error_kind else None,
        "error": result.error,
        "status_code": result.status_code,
    }
    if include_raw:
        raw = result.raw_content
        data["raw_content_b64"] = base64.b64encode(raw).decode("ascii") if raw is not None else None
    return data


def encode_cache_stats(stats: CacheStats) -> dict[str, Any]:
    return {
        "size": stats.size,
        "capacity": stats.capacity,
        "hits": stats.hits,
        "misses": stats.misses,
        "hit_rate": round(stats.hit_rate, 4),
        "miss_rate": round(stats.miss_rate, 4),
        "evictions": stats.evictions,
        "expirations": stats.expirations,
    }


def encode_host_snapshot(snapshot: HostSnapshot) -> dict[str, Any]:
    return {
        "host": snapshot.host,
        "circuit": snapshot.circuit.value,
        "failure_rate": round(snapshot.failure_rate, 4),
        "samples": snapshot.samples,
        "tokens": round(snapshot.tokens, 3),
        "calls": snapshot.calls,
        "failures": snapshot.failures,
        "avg_latency_s": round(snapshot.avg_latency_s, 4),
    }
