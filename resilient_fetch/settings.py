import logging
from pathlib import Path
from dataclasses import dataclass, field, fields
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]

logger = logging.getLogger(__name__)


@dataclass
class HostRateLimit:
    """Token-bucket parameters for a single host."""

    capacity: float
    refill_per_s: float


@dataclass
class FetchConfig:
    """
    Central configuration for fetch orchestration.

    Values can be overridden via fetch_config.yaml at the project root.
    """

    # General
    user_agent: str = "Mozilla/5.0 (compatible; resilient-fetch/0.1)"
    log_level: str = "INFO"

    # HTTP client tuning
    http_concurrency: int = 20
    http_timeout_s: float = 20.0
    http_connect_timeout_s: float = 10.0

    # Retries
    max_attempts: int = 3
    retry_base_delay_s: float = 0.5
    retry_max_delay_s: float = 10.0
    retry_jitter_s: float = 0.2
    auto_escalate: bool = True

    # Per-host rate limiting (token bucket)
    rate_limit_capacity: float = 10.0
    rate_limit_refill_per_s: float = 2.0
    host_rate_limits: dict[str, HostRateLimit] = field(default_factory=dict)

    # Per-host circuit breaker
    breaker_failure_threshold: float = 0.5
    breaker_window_size: int = 10
    breaker_min_calls: int = 5
    breaker_cooldown_s: float = 30.0
    # idle hosts are pruned once this many are tracked
    registry_prune_threshold: int = 1024

    # Cache
    cache_ttl_s: float = 300.0
    cache_capacity: int = 1000

    # Browser tuning
    browser_timeout_s: float = 30.0
    browser_headless: bool = True
    browser_block_heavy: bool = True
    browser_locale: str = "en-US"
    browser_pool_size: int = 2
    browser_acquire_timeout_s: float = 10.0
    browser_wait: str = "network_idle"

    # Escalation tuning
    escalation_min_bytes: int = 512

    # Extraction
    rulesets_path: str | None = None

    # Server
    server_host: str = "127.0.0.1"
    server_port: int = 8080

    def rate_limit_for(self, host: str) -> HostRateLimit:
        """Bucket parameters for `host`, falling back to the global defaults."""
        override = self.host_rate_limits.get(host)
        if override is not None:
            return override
        return HostRateLimit(
            capacity=self.rate_limit_capacity,
            refill_per_s=self.rate_limit_refill_per_s,
        )


def _parse_host_rate_limits(raw) -> dict[str, HostRateLimit]:
    if not isinstance(raw, dict):
        logger.warning("[config] host_rate_limits must be a mapping, ignoring %r", raw)
        return {}

    limits = {}
    for host, values in raw.items():
        if not isinstance(values, dict):
            logger.warning("[config] host_rate_limits[%s] must be a mapping, ignoring", host)
            continue
        limits[str(host).lower()] = HostRateLimit(
            capacity=float(values.get("capacity", FetchConfig.rate_limit_capacity)),
            refill_per_s=float(values.get("refill_per_s", FetchConfig.rate_limit_refill_per_s)),
        )
    return limits


def load_fetch_config(path: str | Path | None = None) -> FetchConfig:
    """
    Load FetchConfig from YAML if present; otherwise use defaults.

    By default, looks for `fetch_config.yaml` at the project root.
    """

    if path is None:
        path = PROJECT_ROOT / "fetch_config.yaml"

    path = Path(path)

    if not path.exists():
        logger.info("[config] YAML not found at %s, using defaults", path)
        return FetchConfig()

    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}

    if not isinstance(data, dict):
        logger.warning("[config] Expected mapping in %s, got %s, using defaults", path, type(data))
        return FetchConfig()

    allowed_keys = {f.name for f in fields(FetchConfig)}
    filtered = {k: v for k, v in data.items() if k in allowed_keys}

    ignored = sorted(str(k) for k in set(data) - allowed_keys)
    if ignored:
        logger.warning("[config] Ignoring unknown keys in %s: %s", path, ", ".join(ignored))

    if "host_rate_limits" in filtered:
        filtered["host_rate_limits"] = _parse_host_rate_limits(filtered["host_rate_limits"])

    return FetchConfig(**filtered)


def configure_logging(level: str | int = "INFO") -> None:
    """Process-wide logging setup; only the entry point calls this."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
