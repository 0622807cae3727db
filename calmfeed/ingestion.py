"""Content ingestion: drive adapters, deduplicate, persist.

Sources are fetched one at a time with a jittered pause between them, so a
batch never bursts an external API. Within a source the recent window is
fetched first, then at most one backlog page; everything the source yields
is persisted in a single store transaction together with the advanced
backlog cursor.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from calmfeed.errors import (
    AdapterTransportError, CalmFeedError, PersistenceError,
    SourceNotFoundError, ValidationError,
)
from calmfeed.models import ContentItem, ContentSource, FetchStatus, utcnow

if TYPE_CHECKING:
    from calmfeed.config import IngestionSettings
    from calmfeed.sources.base import BacklogPage, ContentAdapter
    from calmfeed.sources.registry import AdapterRegistry
    from calmfeed.store.base import Store

logger = logging.getLogger(__name__)


@dataclass
class FetchStats:
    """Summary of a fetch-all run."""
    total_sources: int = 0
    success_count: int = 0
    error_count: int = 0
    new_items_count: int = 0
    duration_ms: int = 0
    cancelled: bool = False
    errors: list[tuple[str, str]] = field(default_factory=list)  # (source id, message)


class IngestionOrchestrator:
    """Fetches content for sources and feeds it through deduplication.

    Usage:
        orchestrator = IngestionOrchestrator(store, registry, config.ingestion)
        stats = orchestrator.fetch_all_sources()
    """

    def __init__(
        self,
        store: Store,
        registry: AdapterRegistry,
        settings: IngestionSettings,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.settings = settings
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock

    def fetch_all_sources(
        self,
        user_id: str | None = None,
        cancel: threading.Event | None = None,
    ) -> FetchStats:
        """Fetch every unmuted source, sequentially.

        A failing source is recorded and counted; the batch moves on.
        Setting `cancel` stops the batch before the next source.
        """
        started = time.monotonic()
        stats = FetchStats()

        sources = self.store.list_sources(user_id=user_id, include_muted=False)
        stats.total_sources = len(sources)

        if not sources:
            logger.info("No sources to fetch")
            return stats

        logger.info(f"Fetching {len(sources)} sources sequentially")

        for index, source in enumerate(sources):
            if cancel is not None and cancel.is_set():
                logger.info(f"Fetch cancelled after {index} of {len(sources)} sources")
                stats.cancelled = True
                break

            try:
                stats.new_items_count += self.fetch_source(source.id)
                stats.success_count += 1
            except CalmFeedError as e:
                stats.error_count += 1
                stats.errors.append((source.id, str(e)))
                logger.warning(
                    f"Failed to fetch {source.display_name} ({source.id}), "
                    f"continuing with others: {e}"
                )
            except Exception as e:
                stats.error_count += 1
                stats.errors.append((source.id, str(e)))
                logger.exception(f"Unexpected error fetching {source.id}, continuing with others")
                self._record_failure(source, e)

            if index < len(sources) - 1:
                self._sleep(self._rng.uniform(
                    self.settings.inter_source_delay_min,
                    self.settings.inter_source_delay_max,
                ))

        stats.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Content fetch completed: {stats.success_count}/{stats.total_sources} ok, "
            f"{stats.error_count} errors, {stats.new_items_count} new items "
            f"in {stats.duration_ms}ms"
        )
        return stats

    def fetch_source(self, source_pk: str, force_backlog: bool = False) -> int:
        """Fetch one source. Returns the number of new items stored.

        Raises:
            SourceNotFoundError: Unknown source.
            ValidationError: No adapter for the source type.
            AdapterError: The adapter failed; nothing was persisted.
            PersistenceError: The store failed while saving.
        """
        source = self.store.get_source(source_pk)
        if source is None:
            raise SourceNotFoundError(source_pk)

        logger.info(
            f"Fetching {source.source_type.value} source {source.display_name} "
            f"({source.id}, force_backlog={force_backlog})"
        )

        adapter = self.registry.get_adapter(source.source_type)
        if adapter is None:
            message = f"No adapter for source type: {source.source_type.value}"
            logger.error(f"{message} ({source.id})")
            self.store.record_fetch_result(source.id, FetchStatus.ERROR, message, self._clock())
            raise ValidationError(message)

        try:
            recent = adapter.fetch_recent(source.source_id, self.settings.fetch_recent_days)
            logger.debug(f"Fetched {len(recent)} recent items for {source.id}")

            page = None
            if self._should_fetch_backlog(source, force_backlog):
                page = adapter.fetch_backlog(
                    source.source_id,
                    self.settings.backlog_page_size,
                    source.backlog_page_token,
                )
                logger.debug(
                    f"Fetched {len(page.items)} backlog items for {source.id} "
                    f"(has_more={page.has_more})"
                )

            new_count = self._persist(source, recent, page)
        except CalmFeedError as e:
            self._record_failure(source, e)
            raise
        except Exception as e:
            error = AdapterTransportError(f"Unexpected error fetching {source.id}: {e}")
            self._record_failure(source, error)
            raise error from e

        logger.info(f"Fetched {source.display_name}: {new_count} new items")
        return new_count

    def fetch_backlog_page(
        self, source: ContentSource, adapter: ContentAdapter, limit: int
    ) -> tuple[BacklogPage, int]:
        """Fetch and persist one backlog page. Returns (page, new item count).

        Used by the backlog scheduler. Success clears the source's error.
        """
        try:
            page = adapter.fetch_backlog(source.source_id, limit, source.backlog_page_token)
            now = self._clock()
            try:
                with self.store.transaction():
                    new_count = self.save_content_batch(page.items)
                    self._advance_backlog(source, page, new_count, now)
                    self.store.record_fetch_result(source.id, FetchStatus.SUCCESS, None, now)
            except CalmFeedError:
                raise
            except Exception as e:
                raise PersistenceError(f"Failed to persist {source.id}: {e}") from e
        except CalmFeedError as e:
            self._record_failure(source, e)
            raise
        except Exception as e:
            error = AdapterTransportError(f"Unexpected error fetching {source.id}: {e}")
            self._record_failure(source, error)
            raise error from e
        return page, new_count

    def save_content_batch(self, items: list[ContentItem]) -> int:
        """Deduplicate and persist items. Returns the count of new items.

        Known items only get their last_seen_in_feed bumped.
        """
        if not items:
            return 0

        # Collapse duplicates inside the batch, first occurrence wins
        unique: dict[tuple, ContentItem] = {}
        for item in items:
            unique.setdefault(item.dedup_key, item)

        now = self._clock()
        try:
            with self.store.transaction():
                existing = self.store.find_items_by_keys(list(unique))
                new_items = [item for key, item in unique.items() if key not in existing]
                known_keys = [key for key in unique if key in existing]

                for item in new_items:
                    item.fetched_at = now
                    item.last_seen_in_feed = now

                inserted = self.store.insert_items(new_items) if new_items else 0
                if known_keys:
                    self.store.touch_items(known_keys, now)
        except CalmFeedError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to save content: {e}") from e

        logger.debug(f"Saved batch: {inserted} new, {len(known_keys)} already known")
        return inserted

    def _persist(
        self,
        source: ContentSource,
        recent: list[ContentItem],
        page: BacklogPage | None,
    ) -> int:
        """Save a source's items, cursor and status in one transaction."""
        now = self._clock()
        try:
            with self.store.transaction():
                new_count = self.save_content_batch(recent)
                if page is not None:
                    backlog_new = self.save_content_batch(page.items)
                    new_count += backlog_new
                    self._advance_backlog(source, page, backlog_new, now)
                self.store.record_fetch_result(source.id, FetchStatus.SUCCESS, None, now)
        except CalmFeedError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to persist {source.id}: {e}") from e
        return new_count

    def _should_fetch_backlog(self, source: ContentSource, force: bool) -> bool:
        if source.backlog_complete:
            return False
        if force or source.last_fetch_at is None:
            return True
        return self._clock() - source.last_fetch_at > self.settings.backlog_staleness

    def _advance_backlog(
        self, source: ContentSource, page: BacklogPage, new_count: int, now: datetime
    ) -> None:
        complete = page.exhausted
        self.store.update_backlog_state(
            source.id,
            None if complete else page.next_page_token,
            complete,
            now,
            new_count,
        )
        if complete:
            logger.info(f"Backlog complete for {source.display_name} ({source.id})")

    def _record_failure(self, source: ContentSource, error: Exception) -> None:
        logger.error(f"Failed to fetch {source.display_name} ({source.id}): {error}")
        try:
            self.store.record_fetch_result(
                source.id, FetchStatus.ERROR, str(error), self._clock()
            )
        except Exception as e:
            logger.warning(f"Could not record fetch failure for {source.id}: {e}")
