"""Content filter rules and the engine that applies them.

Rules are pure predicates over ContentItem: a rule *matches* an item it
wants excluded.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable

from calmfeed.models import ContentItem, FilterKeyword, Preferences, SourceType


class FilterRule(ABC):
    """A single exclusion rule."""

    @abstractmethod
    def matches(self, item: ContentItem) -> bool:
        """True if the item should be filtered out."""
        pass

    @abstractmethod
    def reason(self) -> str:
        """Human-readable explanation shown for filtered items."""
        pass


class KeywordFilterRule(FilterRule):
    """Excludes items whose title or description contain a keyword.

    Plain keywords match whole words only, so "war" catches "Ukraine War
    Update" but not "Star Wars". Wildcard keywords ("*war*") match anywhere.
    """

    def __init__(self, keyword: str, is_wildcard: bool = False, case_sensitive: bool = False):
        self.keyword = keyword
        self.is_wildcard = is_wildcard
        self.case_sensitive = case_sensitive

        flags = 0 if case_sensitive else re.IGNORECASE
        if is_wildcard:
            self._pattern = re.compile(re.escape(keyword.replace("*", "")), flags)
        else:
            self._pattern = re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)", flags)

    def matches(self, item: ContentItem) -> bool:
        if not self.keyword.strip("* "):
            return False
        text = f"{item.title} {item.description or ''}"
        return self._pattern.search(text) is not None

    def reason(self) -> str:
        return f"Keyword: {self.keyword}"


def _format_minutes(seconds: int) -> str:
    return f"{seconds // 60}m"


class DurationFilterRule(FilterRule):
    """Keeps items inside [min_seconds, max_seconds]; either bound optional.

    Items with unknown duration always pass.
    """

    def __init__(self, min_seconds: int | None = None, max_seconds: int | None = None):
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds

    def matches(self, item: ContentItem) -> bool:
        if item.duration is None:
            return False
        if self.min_seconds is not None and item.duration < self.min_seconds:
            return True
        if self.max_seconds is not None and item.duration > self.max_seconds:
            return True
        return False

    def reason(self) -> str:
        if self.min_seconds is not None and self.max_seconds is not None:
            return (
                f"Duration not between {_format_minutes(self.min_seconds)} "
                f"and {_format_minutes(self.max_seconds)}"
            )
        if self.min_seconds is not None:
            return f"Duration less than {_format_minutes(self.min_seconds)}"
        if self.max_seconds is not None:
            return f"Duration more than {_format_minutes(self.max_seconds)}"
        return "Duration"


class SourceTypeFilterRule(FilterRule):
    """Excludes items from platforms outside an allowed set."""

    def __init__(self, allowed_types: Iterable[SourceType]):
        self.allowed_types = frozenset(allowed_types)

    def matches(self, item: ContentItem) -> bool:
        return item.source_type not in self.allowed_types

    def reason(self) -> str:
        return "Content type not in allowed list"


@dataclass
class FilterResult:
    is_filtered: bool
    matched_rules: list[FilterRule] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    @property
    def matched_rule(self) -> FilterRule | None:
        return self.matched_rules[0] if self.matched_rules else None


class FilterEngine:
    """Applies a set of rules to content."""

    def __init__(self, rules: list[FilterRule] | None = None):
        self.rules = list(rules or [])

    def evaluate(self, item: ContentItem) -> FilterResult:
        matched = [rule for rule in self.rules if rule.matches(item)]
        return FilterResult(
            is_filtered=bool(matched),
            matched_rules=matched,
            reasons=[rule.reason() for rule in matched],
        )

    def evaluate_batch(self, items: list[ContentItem]) -> list[ContentItem]:
        """Items that pass every rule, order preserved."""
        if not self.rules:
            return list(items)
        return [item for item in items if not self.evaluate(item).is_filtered]


def build_rules(
    keywords: Iterable[FilterKeyword],
    preferences: Preferences | None = None,
) -> list[FilterRule]:
    """Rules for a user's stored keywords and duration preferences."""
    rules: list[FilterRule] = [
        KeywordFilterRule(kw.keyword, kw.is_wildcard) for kw in keywords
    ]
    if preferences is not None and (
        preferences.min_duration is not None or preferences.max_duration is not None
    ):
        rules.append(DurationFilterRule(preferences.min_duration, preferences.max_duration))
    return rules
