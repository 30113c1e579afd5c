"""
Value objects passed between the fetch components.

Nothing here is mutated after construction: a Target is built once per
incoming request, fetchers hand back either a RawPage or a FetchError, and
the orchestrator turns those into exactly one FetchResult per call.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .urls import host_of, normalize_url


class RenderHint(str, Enum):
    AUTO = "auto"
    HTTP = "http"
    BROWSER = "browser"


class Strategy(str, Enum):
    HTTP = "http"
    BROWSER = "browser"
    CACHE = "cache"


class FetchStatus(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    EXTRACTION_FAILED = "extraction_failed"
    SESSION_UNAVAILABLE = "session_unavailable"


# Statuses after which the caller may reasonably try again later.
RETRY_LATER_STATUSES = frozenset({
    FetchStatus.TRANSIENT_FAILURE,
    FetchStatus.RATE_LIMITED,
    FetchStatus.CIRCUIT_OPEN,
    FetchStatus.SESSION_UNAVAILABLE,
})


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    DNS_FAILURE = "dns_failure"
    HTTP_ERROR = "http_error"
    MALFORMED = "malformed"
    SESSION_UNAVAILABLE = "session_unavailable"
    RENDER_TIMEOUT = "render_timeout"
    SESSION_CRASHED = "session_crashed"


class WaitKind(str, Enum):
    NETWORK_IDLE = "network_idle"
    SELECTOR = "selector"
    DELAY = "delay"


@dataclass(frozen=True)
class WaitCondition:
    """What signals that a browser-rendered page is ready to be read."""

    kind: WaitKind = WaitKind.NETWORK_IDLE
    selector: str | None = None
    delay_s: float = 0.0

    def __post_init__(self):
        if self.kind is WaitKind.SELECTOR and not self.selector:
            raise ValueError("selector wait condition needs a selector")
        if self.delay_s < 0:
            raise ValueError("delay_s must be >= 0")


@dataclass(frozen=True)
class Target:
    """
    A request to fetch one URL.

    Fields:
        url     : Normalized absolute URL (scheme, host, path, sorted query).
        host    : Host derived from `url`; key into the resilience registry.
        render  : Strategy hint (forced HTTP, forced browser, or auto-detect).
        rules   : Name of the extraction ruleset to apply.
        wait    : Browser readiness condition, or None for the configured default.
        method  : "GET" or "POST".
        payload : JSON body sent with POST requests.
    """
    url: str
    host: str
    render: RenderHint = RenderHint.AUTO
    rules: str = "page"
    wait: WaitCondition | None = None
    method: str = "GET"
    payload: dict[str, Any] | None = field(default=None, hash=False, compare=False)

    @classmethod
    def build(
        cls,
        url: str,
        render: RenderHint | str = RenderHint.AUTO,
        rules: str = "page",
        wait: WaitCondition | None = None,
        method: str = "GET",
        payload: dict[str, Any] | None = None,
    ) -> "Target":
        method = method.upper()
        if method not in {"GET", "POST"}:
            raise ValueError(f"unsupported method: {method}")
        if payload is not None and method != "POST":
            raise ValueError("payload is only allowed with POST")

        normalized = normalize_url(url)
        return cls(
            url=normalized,
            host=host_of(normalized),
            render=RenderHint(render),
            rules=rules,
            wait=wait,
            method=method,
            payload=payload,
        )

    @property
    def cache_key(self) -> str:
        """Key shared by the cache and in-flight deduplication."""
        key = f"{self.rules}|{self.method}|{self.url}"
        if self.payload is not None:
            body = json.dumps(self.payload, sort_keys=True, separators=(",", ":"))
            key += "|" + hashlib.sha256(body.encode("utf-8")).hexdigest()[:16]
        return key


@dataclass(frozen=True)
class RawPage:
    """Successful response from either fetcher."""

    body: bytes
    status_code: int
    headers: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    final_url: str | None = None
    encoding: str = "utf-8"

    @property
    def html(self) -> str:
        try:
            return self.body.decode(self.encoding, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class FetchError:
    """
    Failed fetcher call, classified for the orchestrator.

    `status` is either TRANSIENT_FAILURE (worth retrying), PERMANENT_FAILURE
    (never retried) or SESSION_UNAVAILABLE (browser pool exhausted).
    """
    kind: ErrorKind
    status: FetchStatus
    message: str = ""
    status_code: int | None = None

    @property
    def retryable(self) -> bool:
        return self.status is FetchStatus.TRANSIENT_FAILURE


@dataclass(frozen=True)
class FetchResult:
    """
    Terminal outcome of one `fetch_one` call.

    Fields:
        url          : Normalized URL of the target.
        status       : Terminal FetchStatus.
        strategy     : Strategy that produced the result (http, browser, cache).
        attempts     : Number of fetcher invocations performed.
        latency_s    : Wall time spent in the call, in seconds.
        raw_content  : Fetched body (success only; absent on cache hits).
        extracted    : Structured data (success only).
        error_kind   : ErrorKind of the last failure, if any.
        error        : Human-readable failure description.
        status_code  : HTTP status of the last response, if any.
    """
    url: str
    status: FetchStatus
    strategy: Strategy
    attempts: int = 0
    latency_s: float = 0.0
    raw_content: bytes | None = field(default=None, repr=False)
    extracted: dict[str, Any] | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.SUCCESS

    @property
    def retry_later(self) -> bool:
        """True for backpressure or availability problems; False for do-not-retry outcomes."""
        return self.status in RETRY_LATER_STATUSES
