"""Scheduled backlog top-up.

Walks a handful of sources each run, one page each, so a large channel's
history arrives over days instead of in one burst. Sources with the least
backlog so far go first.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from calmfeed.errors import CalmFeedError
from calmfeed.models import utcnow

if TYPE_CHECKING:
    from calmfeed.config import IngestionSettings
    from calmfeed.ingestion import IngestionOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class BacklogSourceResult:
    source_id: str
    display_name: str
    fetched: int = 0
    total: int = 0
    complete: bool = False
    error: str | None = None


@dataclass
class BacklogRunResult:
    processed: int = 0
    total_fetched: int = 0
    completed: int = 0
    results: list[BacklogSourceResult] = field(default_factory=list)


class BacklogScheduler:
    """Debounced backlog crawler.

    The debounce is held in this object: a run is skipped while another is
    in progress or if the previous run started less than
    `backlog_min_run_interval` ago. Separate processes do not see each
    other's runs.
    """

    def __init__(
        self,
        orchestrator: IngestionOrchestrator,
        settings: IngestionSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orchestrator = orchestrator
        self.settings = settings
        self._clock = clock
        self._lock = threading.Lock()
        self._is_running = False
        self._last_run_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def last_run_at(self) -> datetime | None:
        return self._last_run_at

    def run(self, force: bool = False, limit: int | None = None) -> BacklogRunResult | None:
        """Run one top-up pass. Returns None if the run was skipped.

        Args:
            force: Ignore the minimum interval (a run in progress still wins).
            limit: Max sources this pass; defaults to backlog_batch_size.
        """
        now = self._clock()
        with self._lock:
            if self._is_running:
                logger.debug("Backlog run already in progress, skipping")
                return None
            if (
                not force
                and self._last_run_at is not None
                and now - self._last_run_at < self.settings.backlog_min_run_interval
            ):
                logger.debug(f"Backlog ran at {self._last_run_at.isoformat()}, skipping")
                return None
            self._is_running = True
            self._last_run_at = now

        try:
            return self._run(now, limit or self.settings.backlog_batch_size)
        finally:
            with self._lock:
                self._is_running = False

    def _run(self, now: datetime, limit: int) -> BacklogRunResult:
        store = self.orchestrator.store
        registry = self.orchestrator.registry
        cutoff = now - self.settings.backlog_cooldown

        sources = store.get_sources_needing_backlog(cutoff, limit)
        result = BacklogRunResult()

        if not sources:
            logger.info("No sources need backlog fetching")
            return result

        logger.info(f"Backlog top-up for {len(sources)} sources")

        for source in sources:
            entry = BacklogSourceResult(
                source_id=source.source_id,
                display_name=source.display_name,
                total=source.backlog_video_count,
            )
            result.results.append(entry)

            adapter = registry.get_adapter(source.source_type)
            if adapter is None:
                entry.error = f"No adapter for source type: {source.source_type.value}"
                logger.warning(f"{entry.error} ({source.id})")
                continue

            try:
                page, new_count = self.orchestrator.fetch_backlog_page(
                    source, adapter, self.settings.daily_backlog_limit
                )
            except CalmFeedError as e:
                entry.error = str(e)
                logger.warning(f"Backlog fetch failed for {source.display_name}: {e}")
                continue
            except Exception as e:
                entry.error = str(e)
                logger.exception(f"Unexpected backlog error for {source.display_name}")
                continue

            entry.fetched = new_count
            entry.total += new_count
            entry.complete = page.exhausted
            logger.info(
                f"Backlog batch for {source.display_name}: {new_count} new, "
                f"{entry.total} total, complete={entry.complete}"
            )

        result.processed = len(result.results)
        result.total_fetched = sum(r.fetched for r in result.results)
        result.completed = sum(1 for r in result.results if r.complete)

        logger.info(
            f"Backlog run complete: {result.processed} processed, "
            f"{result.total_fetched} fetched, {result.completed} completed"
        )
        return result
