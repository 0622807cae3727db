"""Recording what a user does with content."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from calmfeed.errors import ContentNotFoundError
from calmfeed.models import (
    ContentItem, FilterKeyword, Interaction, InteractionType, utcnow,
)

if TYPE_CHECKING:
    from calmfeed.feed.service import FeedService
    from calmfeed.store.base import Store

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "can", "this", "that", "these",
    "those", "what", "which", "who", "when", "where", "why", "how",
})

MAX_EXTRACTED_KEYWORDS = 5


def title_keywords(text: str, limit: int = MAX_EXTRACTED_KEYWORDS) -> list[str]:
    """Significant words of a title: lowercased, no stop words, 4+ characters.

    Order of first appearance is kept and repeats are dropped.
    """
    keywords: list[str] = []
    for word in re.split(r"\W+", text.lower()):
        if len(word) > 3 and word not in STOP_WORDS and word not in keywords:
            keywords.append(word)
    return keywords[:limit]


class InteractionService:
    """Appends interactions and keeps the user's cached feed honest.

    Every write invalidates the user's cached feed, so an item that was
    just watched or dismissed does not come back on the next request.
    """

    def __init__(self, store: Store, feed_service: FeedService | None = None):
        self.store = store
        self.feed_service = feed_service

    def record_watch(
        self,
        user_id: str,
        content_id: str,
        watch_duration: int | None = None,
        completion_rate: float | None = None,
    ) -> Interaction:
        if completion_rate is not None:
            completion_rate = min(1.0, max(0.0, completion_rate))
        return self._record(
            user_id,
            content_id,
            InteractionType.WATCHED,
            watch_duration=watch_duration,
            completion_rate=completion_rate,
        )

    def save_content(
        self, user_id: str, content_id: str, collection: str | None = None
    ) -> Interaction:
        return self._record(user_id, content_id, InteractionType.SAVED, collection=collection)

    def dismiss_content(
        self, user_id: str, content_id: str, reason: str | None = None
    ) -> Interaction:
        return self._record(
            user_id, content_id, InteractionType.DISMISSED, dismiss_reason=reason
        )

    def not_now(self, user_id: str, content_id: str) -> Interaction:
        """Defer an item; it may resurface in a later feed."""
        return self._record(user_id, content_id, InteractionType.NOT_NOW)

    def block_content(
        self, user_id: str, content_id: str, extract_keywords: bool = False
    ) -> list[str]:
        """Block an item, optionally turning its title into filter keywords.

        Returns the keywords that were added (empty unless requested).
        """
        item = self._require_item(content_id)
        keywords: list[str] = []

        with self.store.transaction():
            self._append(user_id, item, InteractionType.BLOCKED)
            if extract_keywords:
                keywords = title_keywords(item.title)
                for keyword in keywords:
                    self.store.add_filter_keyword(
                        FilterKeyword(id="", user_id=user_id, keyword=keyword)
                    )

        if keywords:
            logger.info(f"Blocked {content_id} for {user_id}, added keywords: {keywords}")
        self._invalidate(user_id)
        return keywords

    def get_history(
        self,
        user_id: str,
        type: InteractionType | None = None,
        limit: int | None = 50,
    ) -> list[Interaction]:
        """Most recent interactions first."""
        return self.store.get_interactions(user_id, type=type, limit=limit)

    def _record(
        self, user_id: str, content_id: str, type: InteractionType, **details
    ) -> Interaction:
        item = self._require_item(content_id)
        interaction = self._append(user_id, item, type, **details)
        self._invalidate(user_id)
        return interaction

    def _append(
        self, user_id: str, item: ContentItem, type: InteractionType, **details
    ) -> Interaction:
        logger.info(f"Recording {type.value} on {item.id} for {user_id}")
        return self.store.add_interaction(
            Interaction(
                id="",
                user_id=user_id,
                content_id=item.id,
                type=type,
                timestamp=utcnow(),
                **details,
            )
        )

    def _require_item(self, content_id: str) -> ContentItem:
        item = self.store.get_item(content_id)
        if item is None:
            raise ContentNotFoundError(content_id)
        return item

    def _invalidate(self, user_id: str) -> None:
        if self.feed_service is not None:
            self.feed_service.refresh_feed(user_id)
