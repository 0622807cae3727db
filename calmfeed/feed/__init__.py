"""Feed composition: filtering, mixing, diversity and generation."""

from calmfeed.feed.diversity import DiversityEnforcer
from calmfeed.feed.filtering import (
    FilterRule,
    KeywordFilterRule,
    DurationFilterRule,
    SourceTypeFilterRule,
    FilterEngine,
    FilterResult,
    build_rules,
)
from calmfeed.feed.generator import FeedGenerator
from calmfeed.feed.mixer import BacklogMixer
from calmfeed.feed.service import FeedService

__all__ = [
    "DiversityEnforcer",
    "FilterRule",
    "KeywordFilterRule",
    "DurationFilterRule",
    "SourceTypeFilterRule",
    "FilterEngine",
    "FilterResult",
    "build_rules",
    "FeedGenerator",
    "BacklogMixer",
    "FeedService",
]
