"""
Policy module: picks the initial fetch strategy for a target and decides
whether an HTTP page should escalate to the heavier browser renderer.

The logic is:
- explicit
- configurable
- easily auditable
"""

import logging
from dataclasses import dataclass
from typing import Any

from .cache import CacheStore
from .extractor import ExtractionFailed, RuleSet, extract, missing_markers
from .models import RawPage, RenderHint, Strategy, Target
from .settings import FetchConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedHit:
    data: dict[str, Any]


@dataclass(frozen=True)
class Plan:
    strategy: Strategy


class StrategySelector:
    """
    Resolves a target to either a live cache entry or an initial fetch plan.

    Auto-detect targets always start with HTTP; falling back to the browser
    is decided later by the orchestrator via `should_escalate`.
    """

    def __init__(self, cache: CacheStore):
        self.cache = cache

    def resolve(self, target: Target) -> CachedHit | Plan:
        data = self.cache.get(target.cache_key)
        if data is not None:
            return CachedHit(data)
        if target.render is RenderHint.BROWSER:
            return Plan(Strategy.BROWSER)
        return Plan(Strategy.HTTP)


def should_escalate(page: RawPage, rules: RuleSet, config: FetchConfig) -> bool:
    html = page.html

    # Tiny pages (might be partial, JS-reliant, or error stubs)
    if len(html.strip()) < config.escalation_min_bytes:
        logger.debug("policy: body below %d bytes, escalating", config.escalation_min_bytes)
        return True

    absent = missing_markers(html, rules)
    if absent:
        logger.debug("policy: content markers missing (%s), escalating", ", ".join(absent))
        return True

    try:
        extract(html, rules)
    except ExtractionFailed as e:
        logger.debug("policy: %s, escalating", e)
        return True

    return False
