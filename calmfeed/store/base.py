"""Abstract base class for storage backends."""

import functools
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Iterable

from calmfeed.models import (
    ContentSource, ContentItem, Interaction, InteractionType,
    Preferences, FilterKeyword, FetchStatus, SourceType,
)


# (source_type, original_id)
ItemKey = tuple[SourceType, str]
# (source_id, source_type)
SourceKey = tuple[str, SourceType]


def synchronized(method):
    """Run a store method under the store's `_lock`.

    The lock is reentrant and `transaction()` holds it until commit, so
    another thread's write waits instead of joining an open transaction.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class Store(ABC):
    """Abstract persistence layer for sources, items and user state."""

    # Sources
    @abstractmethod
    def add_source(self, source: ContentSource) -> ContentSource:
        """Add a new source. Returns the created source with its ID."""
        pass

    @abstractmethod
    def get_source(self, source_pk: str) -> ContentSource | None:
        """Get a source by internal ID."""
        pass

    @abstractmethod
    def get_source_by_key(
        self, user_id: str, source_type: SourceType, source_id: str
    ) -> ContentSource | None:
        """Get a user's subscription to an external source, if any."""
        pass

    @abstractmethod
    def list_sources(
        self, user_id: str | None = None, include_muted: bool = True
    ) -> list[ContentSource]:
        """List sources, newest first."""
        pass

    @abstractmethod
    def update_source(self, source: ContentSource) -> None:
        """Persist user-editable fields (name, avatar, mute, always-safe)."""
        pass

    @abstractmethod
    def delete_source(self, source_pk: str) -> None:
        """Remove a subscription. Items are kept; they are shared."""
        pass

    @abstractmethod
    def record_fetch_result(
        self,
        source_pk: str,
        status: FetchStatus,
        error_message: str | None,
        at: datetime,
    ) -> None:
        """Record the outcome of a fetch attempt."""
        pass

    @abstractmethod
    def update_backlog_state(
        self,
        source_pk: str,
        page_token: str | None,
        complete: bool,
        fetched_at: datetime,
        added_count: int = 0,
    ) -> None:
        """Advance the backlog cursor and bump the backlog item count."""
        pass

    @abstractmethod
    def get_sources_needing_backlog(
        self, cutoff: datetime, limit: int
    ) -> list[ContentSource]:
        """Unmuted sources with an incomplete backlog not crawled since cutoff.

        Ordered by backlog_video_count ascending, then added_at descending.
        """
        pass

    # Items
    @abstractmethod
    def find_items_by_keys(self, keys: Iterable[ItemKey]) -> dict[ItemKey, ContentItem]:
        """Bulk lookup of items by dedup key."""
        pass

    @abstractmethod
    def insert_items(self, items: list[ContentItem]) -> int:
        """Insert items, skipping dedup-key conflicts. Returns inserted count."""
        pass

    @abstractmethod
    def touch_items(self, keys: Iterable[ItemKey], seen_at: datetime) -> None:
        """Bump last_seen_in_feed for known items. Never moves it backwards."""
        pass

    @abstractmethod
    def get_item(self, item_id: str) -> ContentItem | None:
        """Get a single item by internal ID."""
        pass

    @abstractmethod
    def get_items_for_sources(
        self, keys: Iterable[SourceKey], limit: int
    ) -> list[ContentItem]:
        """Items belonging to the given sources, newest first."""
        pass

    @abstractmethod
    def count_items(
        self,
        source_type: SourceType | None = None,
        source_id: str | None = None,
    ) -> int:
        """Count items matching the filters."""
        pass

    # Interactions
    @abstractmethod
    def add_interaction(self, interaction: Interaction) -> Interaction:
        """Append an interaction. Returns it with its ID."""
        pass

    @abstractmethod
    def get_interactions(
        self,
        user_id: str,
        type: InteractionType | None = None,
        limit: int | None = None,
    ) -> list[Interaction]:
        """A user's interactions, newest first."""
        pass

    # Preferences
    @abstractmethod
    def get_preferences(self, user_id: str) -> Preferences | None:
        pass

    @abstractmethod
    def save_preferences(self, preferences: Preferences) -> None:
        pass

    # Filter keywords
    @abstractmethod
    def add_filter_keyword(self, keyword: FilterKeyword) -> FilterKeyword:
        pass

    @abstractmethod
    def list_filter_keywords(self, user_id: str) -> list[FilterKeyword]:
        pass

    @abstractmethod
    def delete_filter_keyword(self, user_id: str, keyword_id: str) -> bool:
        """Delete a keyword. Returns False if it did not exist."""
        pass

    # Lifecycle
    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Group writes so they commit together or not at all.

        Nested use joins the outer transaction.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the store and release resources."""
        pass

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
