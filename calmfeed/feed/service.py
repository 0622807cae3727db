"""Loads a user's inputs from the store and composes their feed."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from calmfeed.config import FeedSettings
from calmfeed.feed.filtering import FilterEngine, build_rules
from calmfeed.feed.generator import FeedGenerator
from calmfeed.models import ContentItem, FeedItem, Preferences, SourceType

if TYPE_CHECKING:
    from calmfeed.cache import ResponseCache
    from calmfeed.store.base import Store

logger = logging.getLogger(__name__)

FEED_CACHE_OPERATION = "feed"


def feed_item_to_dict(feed_item: FeedItem) -> dict[str, Any]:
    """Serialize a FeedItem to a JSON-compatible dictionary."""
    item = feed_item.content
    return {
        "content": {
            "id": item.id,
            "source_type": item.source_type.value,
            "source_id": item.source_id,
            "original_id": item.original_id,
            "title": item.title,
            "description": item.description,
            "thumbnail_url": item.thumbnail_url,
            "url": item.url,
            "duration": item.duration,
            "published_at": item.published_at.isoformat(),
            "fetched_at": item.fetched_at.isoformat(),
            "last_seen_in_feed": item.last_seen_in_feed.isoformat(),
        },
        "position": feed_item.position,
        "source_display_name": feed_item.source_display_name,
        "is_new": feed_item.is_new,
        "is_returning": feed_item.is_returning,
    }


def feed_item_from_dict(d: dict[str, Any]) -> FeedItem:
    """Deserialize a dictionary to a FeedItem."""
    c = d["content"]
    content = ContentItem(
        id=c["id"],
        source_type=SourceType(c["source_type"]),
        source_id=c["source_id"],
        original_id=c["original_id"],
        title=c["title"],
        description=c.get("description"),
        thumbnail_url=c.get("thumbnail_url"),
        url=c["url"],
        duration=c.get("duration"),
        published_at=datetime.fromisoformat(c["published_at"]),
        fetched_at=datetime.fromisoformat(c["fetched_at"]),
        last_seen_in_feed=datetime.fromisoformat(c["last_seen_in_feed"]),
    )
    return FeedItem(
        content=content,
        position=d["position"],
        source_display_name=d["source_display_name"],
        is_new=d.get("is_new", False),
        is_returning=d.get("is_returning", False),
    )


class FeedService:
    """Feed generation with a short-lived per-user cache."""

    def __init__(
        self,
        store: Store,
        cache: ResponseCache | None = None,
        generator: FeedGenerator | None = None,
        settings: FeedSettings | None = None,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings or FeedSettings()
        self.generator = generator or FeedGenerator(settings=self.settings)

    def get_user_feed(self, user_id: str, use_cache: bool = True) -> list[FeedItem]:
        cache_params = {"user_id": user_id}
        if use_cache and self.cache is not None:
            cached = self.cache.get(FEED_CACHE_OPERATION, cache_params)
            if cached is not None:
                logger.info(f"Feed cache hit for {user_id}")
                return [feed_item_from_dict(d) for d in cached]

        logger.info(f"Generating fresh feed for {user_id}")

        sources = self.store.list_sources(user_id=user_id, include_muted=False)
        if not sources:
            logger.info(f"No sources configured for {user_id}, returning empty feed")
            return []

        preferences = self.store.get_preferences(user_id) or Preferences.defaults(
            user_id, self.settings
        )
        interactions = self.store.get_interactions(user_id)
        keywords = self.store.list_filter_keywords(user_id)

        items = self.store.get_items_for_sources(
            [s.key for s in sources], self.settings.max_items_in_feed * 2
        )
        if not items:
            logger.info(f"No content available for {user_id}, returning empty feed")
            return []

        engine = FilterEngine(build_rules(keywords, preferences))
        logger.debug(f"Filter configuration for {user_id}: {len(engine.rules)} rules")

        feed = self.generator.generate(sources, items, preferences, interactions, engine)
        feed = feed[:self.settings.max_items_in_feed]

        if self.cache is not None:
            self.cache.set(
                FEED_CACHE_OPERATION,
                cache_params,
                [feed_item_to_dict(f) for f in feed],
                ttl=self.settings.cache_ttl_seconds,
            )

        logger.info(f"Feed generated for {user_id}: {len(feed)} items")
        return feed

    def refresh_feed(self, user_id: str) -> None:
        """Drop the cached feed so the next request recomposes it."""
        logger.info(f"Feed refresh requested for {user_id}")
        if self.cache is not None:
            self.cache.invalidate(FEED_CACHE_OPERATION, {"user_id": user_id})
