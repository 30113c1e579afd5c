"""
Declarative, selector-based extraction of structured data from HTML.

A ruleset maps output field names to CSS selectors. Each field reads the
element text (or an attribute), optionally narrowed by a regular expression.
Optional fields that match nothing yield "" (or [] for `multiple` fields);
required fields that match nothing make the whole extraction fail.

Rulesets can be loaded from YAML::

    rulesets:
      - name: profile
        ttl_s: 3600
        markers: ["h1.profile-title"]
        fields:
          - {name: full_name, selector: "h1.profile-title", required: true}
          - {name: avatar, selector: "img.avatar", attribute: src}
          - {name: badges, selector: ".badge", multiple: true}
"""

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field, field_validator

from .settings import PROJECT_ROOT

logger = logging.getLogger(__name__)

DEFAULT_RULESET = "page"


class ExtractionFailed(Exception):
    """Required fields could not be satisfied by the document."""

    def __init__(self, ruleset: str, missing: list[str]):
        self.ruleset = ruleset
        self.missing = missing
        super().__init__(f"ruleset {ruleset!r}: missing required fields {', '.join(missing)}")


class FieldRule(BaseModel):
    name: str
    selector: str
    attribute: str | None = None
    multiple: bool = False
    required: bool = False
    pattern: str | None = None

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid pattern {value!r}: {e}") from e
        return value


class RuleSet(BaseModel):
    name: str
    fields: list[FieldRule] = Field(default_factory=list)
    # CSS selectors whose presence shows the page carries real content
    markers: list[str] = Field(default_factory=list)
    # cache lifetime for data extracted with this ruleset; None uses cache_ttl_s
    ttl_s: float | None = Field(default=None, gt=0)

    @field_validator("fields")
    @classmethod
    def _unique_names(cls, value: list[FieldRule]) -> list[FieldRule]:
        names = [f.name for f in value]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate field names: {', '.join(duplicates)}")
        return value


PAGE_RULESET = RuleSet(
    name=DEFAULT_RULESET,
    fields=[
        FieldRule(name="title", selector="title"),
        FieldRule(name="description", selector='meta[name="description"]', attribute="content"),
        FieldRule(name="headings", selector="h1", multiple=True),
        FieldRule(name="text", selector="body"),
    ],
)


def _parse(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style", "noscript", "template"]):
        element.decompose()
    return soup


def _value(element, rule: FieldRule) -> str:
    if rule.attribute:
        raw = element.get(rule.attribute, "")
        if isinstance(raw, list):
            raw = " ".join(raw)
        value = str(raw).strip()
    else:
        value = " ".join(element.stripped_strings)

    if rule.pattern and value:
        m = re.search(rule.pattern, value)
        if m is None:
            return ""
        value = m.group(1) if m.groups() else m.group(0)
    return value


def extract(html: str, rules: RuleSet) -> dict[str, Any]:
    """
    Apply `rules` to `html` and return {field name: value}.

    Pure: the same (html, rules) always yields the same result.

    Raises:
        ExtractionFailed: if any required field has no non-empty match.
    """
    soup = _parse(html)
    data: dict[str, Any] = {}
    missing: list[str] = []

    for rule in rules.fields:
        elements = soup.select(rule.selector)
        values = [v for v in (_value(el, rule) for el in elements) if v]

        if rule.multiple:
            data[rule.name] = values
        else:
            data[rule.name] = values[0] if values else ""

        if rule.required and not values:
            missing.append(rule.name)

    if missing:
        raise ExtractionFailed(rules.name, missing)
    return data


def missing_markers(html: str, rules: RuleSet) -> list[str]:
    """Content markers of `rules` that match nothing in `html`."""
    if not rules.markers:
        return []
    soup = _parse(html)
    return [marker for marker in rules.markers if soup.select_one(marker) is None]


class RuleBook:
    """Registry of named rulesets; always contains the built-in `page` ruleset."""

    def __init__(self, rulesets: list[RuleSet] | None = None):
        self._rulesets: dict[str, RuleSet] = {PAGE_RULESET.name: PAGE_RULESET}
        for ruleset in rulesets or []:
            self.add(ruleset)

    def add(self, ruleset: RuleSet) -> None:
        self._rulesets[ruleset.name] = ruleset

    def get(self, name: str) -> RuleSet:
        try:
            return self._rulesets[name]
        except KeyError:
            raise KeyError(f"unknown extraction ruleset: {name!r}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._rulesets

    def names(self) -> list[str]:
        return sorted(self._rulesets)


def load_rulebook(path: str | Path | None) -> RuleBook:
    """
    Load rulesets from a YAML file with a top-level `rulesets` list.

    A missing path gives a RuleBook with only the built-in ruleset; a file
    that fails validation raises, since running without its rules would
    silently change extraction results.
    """
    if path is None:
        return RuleBook()

    path = Path(path)
    if not path.is_absolute():
        path = PROJECT_ROOT / path

    if not path.exists():
        logger.warning("[rules] %s not found, using built-in rulesets only", path)
        return RuleBook()

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    entries = data.get("rulesets", []) if isinstance(data, dict) else []
    rulesets = [RuleSet.model_validate(entry) for entry in entries]
    logger.info("[rules] loaded %d rulesets from %s", len(rulesets), path)
    return RuleBook(rulesets)
