"""Feed composition.

FeedGenerator turns already-loaded content, sources, interactions and
preferences into an ordered feed. It does no I/O.
"""

from __future__ import annotations

import logging
import math
import random
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from calmfeed.config import FeedSettings
from calmfeed.feed.diversity import DiversityEnforcer
from calmfeed.feed.mixer import BacklogMixer
from calmfeed.models import (
    EXCLUDING_INTERACTIONS, ContentItem, ContentSource, FeedItem,
    Interaction, InteractionType, Preferences, utcnow,
)

if TYPE_CHECKING:
    from calmfeed.feed.filtering import FilterEngine

logger = logging.getLogger(__name__)


class FeedGenerator:
    """Composes a feed: exclude, filter, mix, diversify, reintroduce.

    Usage:
        generator = FeedGenerator(settings=config.feed)
        feed = generator.generate(sources, items, prefs, interactions, engine)
    """

    def __init__(
        self,
        diversity_enforcer: DiversityEnforcer | None = None,
        backlog_mixer: BacklogMixer | None = None,
        settings: FeedSettings | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._rng = rng or random.Random()
        self.diversity_enforcer = diversity_enforcer or DiversityEnforcer()
        self.backlog_mixer = backlog_mixer or BacklogMixer(self._rng)
        self.settings = settings or FeedSettings()
        self._clock = clock or utcnow

    def generate(
        self,
        sources: list[ContentSource],
        items: list[ContentItem],
        preferences: Preferences | None,
        interactions: list[Interaction],
        filter_engine: FilterEngine | None = None,
    ) -> list[FeedItem]:
        if not items:
            return []

        user_id = preferences.user_id if preferences else ""
        prefs = (preferences or Preferences.defaults(user_id, self.settings)).clamped()
        now = self._clock()
        recency_cutoff = now - self.settings.recency_window

        # 1. Exclusion
        excluded_ids = {i.content_id for i in interactions if i.type in EXCLUDING_INTERACTIONS}
        not_now_ids = {
            i.content_id for i in interactions if i.type == InteractionType.NOT_NOW
        }
        unseen = [item for item in items if item.id not in excluded_ids]
        returning_pool = [item for item in unseen if item.id in not_now_ids]
        pool = [item for item in unseen if item.id not in not_now_ids]

        # 2. Filtering
        safe_sources = {s.key for s in sources if s.always_safe}
        pool = self._apply_filters(pool, filter_engine, safe_sources)
        returning_pool = self._apply_filters(returning_pool, filter_engine, safe_sources)

        # 3. Recency partition
        recent = [item for item in pool if item.published_at > recency_cutoff]
        backlog = [item for item in pool if item.published_at <= recency_cutoff]

        # 4. Mixing
        mixed = self.backlog_mixer.mix(
            recent, backlog, prefs.backlog_ratio, self.settings.max_items_in_feed
        )

        # 5. Diversity
        ordered = self.diversity_enforcer.enforce(mixed, prefs.max_consecutive_from_source)

        # 6. NOT_NOW reintegration
        ordered, returning_ids = self._reintegrate(ordered, returning_pool)

        logger.debug(
            f"Composed feed: {len(items)} items in, {len(excluded_ids)} excluded, "
            f"{len(recent)} recent, {len(backlog)} backlog, "
            f"{len(returning_ids)} returning, {len(ordered)} out"
        )

        # 7. Position assignment
        names = {s.key: s.display_name for s in sources}
        return [
            FeedItem(
                content=item,
                position=position,
                source_display_name=names.get(item.source_key, "Unknown"),
                is_new=item.published_at > recency_cutoff,
                is_returning=item.id in returning_ids,
            )
            for position, item in enumerate(ordered)
        ]

    @staticmethod
    def _apply_filters(
        items: list[ContentItem],
        filter_engine: FilterEngine | None,
        safe_sources: set,
    ) -> list[ContentItem]:
        if filter_engine is None or not filter_engine.rules:
            return items
        return [
            item for item in items
            if item.source_key in safe_sources
            or not filter_engine.evaluate(item).is_filtered
        ]

    def _reintegrate(
        self, feed: list[ContentItem], returning_pool: list[ContentItem]
    ) -> tuple[list[ContentItem], set[str]]:
        """Insert a random handful of NOT_NOW items at random positions."""
        if not returning_pool:
            return feed, set()

        count = math.floor(len(feed) * self.settings.not_now_fraction)
        if not feed:
            count = 1
        count = min(count, len(returning_pool))
        if count <= 0:
            return feed, set()

        chosen = self._rng.sample(returning_pool, count)
        result = list(feed)
        for item in chosen:
            result.insert(self._rng.randint(0, len(result)), item)

        return result, {item.id for item in chosen}
